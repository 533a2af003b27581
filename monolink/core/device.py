"""Device descriptors and typed device events.

A device's kind decides which application addresses a session subscribes
to under the device prefix. Kinds are a capability table, not a class
hierarchy.
"""

import re
from dataclasses import dataclass
from enum import Enum

# "monome arc", "monome arc 2", "monome arc4"
_ARC_MODEL = re.compile(r"monome arc ?(\d)?")

# Newer arcs identify as plain "monome arc" and have 4 encoders.
DEFAULT_ARC_ENCODERS = 4


class DeviceKind(str, Enum):
    """Device family as identified by its model string."""

    GRID = "grid"
    ARC = "arc"

    @property
    def subscriptions(self) -> dict[str, str]:
        """Logical event name -> address suffix under the device prefix."""
        return _SUBSCRIPTIONS[self]


_SUBSCRIPTIONS: dict[DeviceKind, dict[str, str]] = {
    DeviceKind.GRID: {"key": "/grid/key", "tilt": "/tilt"},
    DeviceKind.ARC: {"key": "/enc/key", "delta": "/enc/delta"},
}


def classify_model(model: str) -> tuple[DeviceKind, int | None]:
    """Classify a serialosc model string.

    Args:
        model: Model as announced (e.g., "monome 128", "monome arc 2").

    Returns:
        (kind, encoder count). Encoder count is None for grids.
    """
    match = _ARC_MODEL.search(model)
    if not match:
        return DeviceKind.GRID, None
    if match.group(1):
        return DeviceKind.ARC, int(match.group(1))
    return DeviceKind.ARC, DEFAULT_ARC_ENCODERS


@dataclass
class DeviceDescriptor:
    """A device announced by serialosc.

    Created on first announcement and updated in place afterwards.
    Identity is (id, device_port).
    """

    id: str
    model: str
    kind: DeviceKind
    daemon_host: str  # serialosc that announced it
    daemon_port: int
    device_host: str  # where the device itself listens
    device_port: int
    size: tuple[int, int] | None = None  # grids, known after handshake
    encoders: int | None = None  # arcs

    @property
    def key(self) -> tuple[str, int]:
        return (self.id, self.device_port)

    @classmethod
    def from_announcement(
        cls,
        device_id: str,
        model: str,
        device_port: int,
        daemon_host: str,
        daemon_port: int,
    ) -> "DeviceDescriptor":
        """Build a descriptor from a /serialosc/device announcement.

        serialosc serves every device from its own host, so the device
        host is the daemon host.
        """
        kind, encoders = classify_model(model)
        return cls(
            id=device_id,
            model=model,
            kind=kind,
            daemon_host=daemon_host,
            daemon_port=daemon_port,
            device_host=daemon_host,
            device_port=device_port,
            encoders=encoders,
        )


def _ints(args: tuple, count: int, what: str) -> tuple[int, ...]:
    if len(args) != count or not all(
        isinstance(a, int) and not isinstance(a, bool) for a in args
    ):
        raise ValueError(f"{what} expects {count} ints, got {args!r}")
    return tuple(args)


@dataclass(frozen=True)
class GridKey:
    """Grid key press or release."""

    x: int
    y: int
    state: int  # 1 = down, 0 = up

    @classmethod
    def from_args(cls, *args) -> "GridKey":
        return cls(*_ints(args, 3, "grid key"))


@dataclass(frozen=True)
class Tilt:
    """Tilt sensor reading."""

    n: int
    x: int
    y: int
    z: int

    @classmethod
    def from_args(cls, *args) -> "Tilt":
        return cls(*_ints(args, 4, "tilt"))


@dataclass(frozen=True)
class EncKey:
    """Arc encoder push."""

    n: int
    state: int

    @classmethod
    def from_args(cls, *args) -> "EncKey":
        return cls(*_ints(args, 2, "encoder key"))


@dataclass(frozen=True)
class EncDelta:
    """Arc encoder rotation."""

    n: int
    delta: int

    @classmethod
    def from_args(cls, *args) -> "EncDelta":
        return cls(*_ints(args, 2, "encoder delta"))


EVENT_TYPES: dict[DeviceKind, dict[str, type]] = {
    DeviceKind.GRID: {"key": GridKey, "tilt": Tilt},
    DeviceKind.ARC: {"key": EncKey, "delta": EncDelta},
}
