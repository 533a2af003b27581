"""monolink - scan for monome devices through serialosc.

Entry point that starts a discovery client, opens a session per device
and logs what it finds until interrupted.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from monolink.core.config import (
    ConfigValidationError,
    DiscoveryConfig,
    MonolinkConfig,
    load_config,
)
from monolink.core.device import DeviceDescriptor, DeviceKind
from monolink.core.discovery import SerialOscClient
from monolink.core.errors import TransportError

logger = logging.getLogger("monolink")


def setup_logging(debug: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if debug else logging.INFO
    format_str = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=format_str,
        datefmt="%H:%M:%S",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def describe(device: DeviceDescriptor) -> str:
    """One-line summary of a device."""
    if device.kind is DeviceKind.ARC:
        detail = f"{device.encoders} encoders"
    elif device.size:
        detail = f"{device.size[0]}x{device.size[1]}"
    else:
        detail = "size unknown"
    return f"{device.id} ({device.model}, {detail}) port {device.device_port}"


class Scanner:
    """Logs devices as serialosc reports them."""

    def __init__(self, config: MonolinkConfig):
        self._client = SerialOscClient(config.discovery, config.session)
        self._client.on("device:add", self._on_add)
        self._client.on("device:remove", self._on_remove)

    @property
    def client(self) -> SerialOscClient:
        return self._client

    def _on_add(self, device: DeviceDescriptor) -> None:
        logger.info("Device connected: %s", describe(device))
        session = self._client.sessions.get(device.key)
        if session is None:
            return

        def on_initialized() -> None:
            logger.info(
                "Device ready: %s, rotation %s, prefix %s",
                describe(device),
                session.rotation,
                session.prefix,
            )

        session.on("initialized", on_initialized)
        session.on("timeout", lambda: logger.warning("No handshake reply from %s", device.id))

    def _on_remove(self, device: DeviceDescriptor) -> None:
        logger.info("Device disconnected: %s", device.id)

    async def run(self, stop: asyncio.Event) -> int:
        """Scan until ``stop`` is set.

        Returns:
            Exit code (0 for success).
        """
        try:
            await self._client.start()
        except TransportError as e:
            logger.error("Could not reach serialosc: %s", e)
            return 1

        logger.info("Scanning for monome devices (Ctrl+C to quit)...")
        try:
            await stop.wait()
        finally:
            await self._client.stop()
        return 0


def build_config(args: argparse.Namespace) -> MonolinkConfig:
    """Merge CLI flags over the config file (or defaults)."""
    config = load_config(args.config) if args.config else MonolinkConfig()

    overrides: dict = {}
    if args.daemon_host is not None:
        overrides["daemon_host"] = args.daemon_host
    if args.daemon_port is not None:
        overrides["daemon_port"] = args.daemon_port
    if args.no_start_devices:
        overrides["start_devices"] = False
    if args.trace:
        overrides["trace"] = True

    if overrides:
        try:
            discovery = DiscoveryConfig.model_validate(
                {**config.discovery.model_dump(), **overrides}
            )
        except ValidationError as e:
            raise ConfigValidationError(str(e)) from e
        config = MonolinkConfig(discovery=discovery, session=config.session)
    return config


async def _run(config: MonolinkConfig) -> int:
    stop = asyncio.Event()
    return await Scanner(config).run(stop)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="monolink - discover monome grids and arcs via serialosc"
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=None,
        help="Path to config JSON file",
    )
    parser.add_argument("--daemon-host", default=None, help="serialosc host")
    parser.add_argument("--daemon-port", type=int, default=None, help="serialosc port")
    parser.add_argument(
        "--no-start-devices",
        action="store_true",
        help="Only list devices, don't open device sessions",
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Log every OSC message sent and received",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)

    setup_logging(args.debug)

    try:
        config = build_config(args)
    except (ConfigValidationError, FileNotFoundError) as e:
        logger.error("Failed to load config: %s", e)
        return 2

    try:
        return asyncio.run(_run(config))
    except KeyboardInterrupt:
        logger.info("monolink stopped")
        return 0


if __name__ == "__main__":
    sys.exit(main())
