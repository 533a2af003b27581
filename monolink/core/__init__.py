"""Core protocol layer: OSC codec, UDP transport, discovery and device sessions."""

from monolink.core.config import DiscoveryConfig, MonolinkConfig, SessionConfig
from monolink.core.device import DeviceDescriptor, DeviceKind
from monolink.core.discovery import SerialOscClient
from monolink.core.session import DeviceSession, SessionState

__all__ = [
    "DeviceDescriptor",
    "DeviceKind",
    "DeviceSession",
    "DiscoveryConfig",
    "MonolinkConfig",
    "SerialOscClient",
    "SessionConfig",
    "SessionState",
]
