"""Configuration for the discovery client and device sessions.

Config is a closed schema: unknown keys are rejected instead of being
copied onto objects.
"""

import json
import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

SERIALOSC_PORT = 12002
DEFAULT_PREFIX = "/monome"


class ConfigValidationError(Exception):
    """Raised when config validation fails."""

    pass


class DiscoveryConfig(BaseModel):
    """Where the client listens and where serialosc is."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    host: str = "127.0.0.1"
    port: int = Field(default=0, ge=0, le=65535)  # 0 = ephemeral
    daemon_host: str = "127.0.0.1"
    daemon_port: int = Field(default=SERIALOSC_PORT, ge=1, le=65535)
    start_devices: bool = True  # open a DeviceSession for each new device
    trace: bool = False  # log all traffic at INFO


class SessionConfig(BaseModel):
    """Per-device session settings."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    host: str = "127.0.0.1"
    port: int = Field(default=0, ge=0, le=65535)
    prefix: str = DEFAULT_PREFIX
    # None waits forever for the device to answer.
    handshake_timeout: float | None = Field(default=None, gt=0)
    track_prefix: bool = False  # require /sys/prefix before initialized
    trace: bool = False

    @field_validator("prefix")
    @classmethod
    def _prefix_is_address(cls, v: str) -> str:
        if not v.startswith("/") or "\x00" in v:
            raise ValueError(f"prefix must be an OSC address, got {v!r}")
        return v


class MonolinkConfig(BaseModel):
    """Top-level config file schema."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)


def load_config(config_path: str | Path) -> MonolinkConfig:
    """Load and validate config from a JSON file.

    Args:
        config_path: Path to JSON config file.

    Returns:
        Validated config.

    Raises:
        ConfigValidationError: If config is invalid.
        FileNotFoundError: If config file doesn't exist.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigValidationError(f"Invalid JSON: {e}") from e

    try:
        config = MonolinkConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigValidationError(str(e)) from e

    logger.info(
        "Loaded config: %s (serialosc %s:%d)",
        path,
        config.discovery.daemon_host,
        config.discovery.daemon_port,
    )
    return config
