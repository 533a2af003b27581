"""serialosc discovery client.

Registers with the serialosc daemon for hot-plug notifications, asks it
to enumerate attached devices, and keeps the set of known devices.
Optionally opens a DeviceSession for each device it finds.

serialosc forgets a notify registration once it has sent a notification,
so the client re-sends /serialosc/notify after every add and remove.

Events (register with ``client.on(name, handler)``):
    device:add(DeviceDescriptor)      new device announced
    device:remove(DeviceDescriptor)   known device unplugged
    <id>:add / <id>:remove            same, for one device id
"""

import logging

from monolink.core.config import DiscoveryConfig, SessionConfig
from monolink.core.device import DeviceDescriptor
from monolink.core.dispatch import DispatchRegistry, Handler
from monolink.core.session import DeviceSession
from monolink.core.transport import OscReceiver, OscSender

logger = logging.getLogger(__name__)

DeviceKey = tuple[str, int]


def _is_announcement(args: tuple) -> bool:
    return (
        len(args) == 3
        and isinstance(args[0], str)
        and isinstance(args[1], str)
        and isinstance(args[2], int)
        and not isinstance(args[2], bool)
    )


class SerialOscClient:
    """Client for one serialosc daemon.

    Usage:
        client = SerialOscClient(DiscoveryConfig(daemon_port=12002))
        client.on("device:add", lambda device: print(device.id))
        await client.start()
        ...
        await client.stop()
    """

    def __init__(
        self,
        config: DiscoveryConfig | None = None,
        session_config: SessionConfig | None = None,
    ):
        """Initialize client. Nothing is bound or sent until ``start()``.

        Args:
            config: Listen address and daemon address. Uses defaults if None.
            session_config: Settings for sessions opened when
                ``config.start_devices`` is set.
        """
        self._config = config or DiscoveryConfig()
        self._session_config = session_config or SessionConfig()
        if self._session_config.port != 0:
            # One receiver per device, so they cannot share a fixed port.
            logger.warning(
                "Ignoring session port %d; each device session listens on its own port",
                self._session_config.port,
            )
            self._session_config = self._session_config.model_copy(update={"port": 0})

        self._receiver = OscReceiver(self._config.host, self._config.port, trace=self._config.trace)
        self._sender = OscSender(
            self._config.daemon_host, self._config.daemon_port, trace=self._config.trace
        )
        self.events = DispatchRegistry("serialosc")

        self._devices: dict[DeviceKey, DeviceDescriptor] = {}
        self._sessions: dict[DeviceKey, DeviceSession] = {}
        self._running = False

    @property
    def config(self) -> DiscoveryConfig:
        return self._config

    @property
    def receiver(self) -> OscReceiver:
        return self._receiver

    @property
    def host(self) -> str:
        return self._receiver.host

    @property
    def port(self) -> int:
        """Port serialosc sends notifications to."""
        return self._receiver.port

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def devices(self) -> list[DeviceDescriptor]:
        """Known devices, in announcement order."""
        return list(self._devices.values())

    @property
    def sessions(self) -> dict[DeviceKey, DeviceSession]:
        """Open sessions keyed by (id, device_port)."""
        return dict(self._sessions)

    def get_device(self, device_id: str, device_port: int) -> DeviceDescriptor | None:
        return self._devices.get((device_id, device_port))

    def on(self, event: str, handler: Handler) -> None:
        """Register handler for a client event."""
        self.events.on(event, handler)

    def off(self, event: str, handler: Handler | None = None) -> None:
        """Remove handlers for a client event."""
        self.events.off(event, handler)

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Listen for serialosc and request the device list.

        Raises:
            TransportError: If binding or sending to serialosc fails.
        """
        if self._running:
            return

        await self._receiver.listen()
        self._receiver.on("/serialosc/device", self._on_device)
        self._receiver.on("/serialosc/add", self._on_add)
        self._receiver.on("/serialosc/remove", self._on_remove)
        self._running = True

        logger.info(
            "serialosc client listening on %s:%d, daemon at %s:%d",
            self.host,
            self.port,
            self._sender.host,
            self._sender.port,
        )
        try:
            await self._notify()
            await self._list()
        except Exception:
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop all sessions, close sockets and forget devices. Idempotent."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.stop()

        was_running = self._running
        self._running = False
        await self._receiver.close()
        self._sender.close()
        self._devices.clear()
        if was_running:
            logger.info("serialosc client stopped")

    async def __aenter__(self) -> "SerialOscClient":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    # -- daemon requests ---------------------------------------------------

    async def _notify(self) -> None:
        await self._sender.send("/serialosc/notify", self.host, self.port)

    async def _list(self) -> None:
        await self._sender.send("/serialosc/list", self.host, self.port)

    # -- daemon messages ---------------------------------------------------

    async def _on_device(self, *args) -> None:
        """Handle /serialosc/device(id, model, port)."""
        if not _is_announcement(args):
            logger.warning("Ignoring malformed /serialosc/device %r", args)
            return
        device_id, model, device_port = args

        known = self._devices.get((device_id, device_port))
        if known is not None:
            known.model = model
            logger.debug("Device %s on port %d already known", device_id, device_port)
            return

        device = DeviceDescriptor.from_announcement(
            device_id,
            model,
            device_port,
            daemon_host=self._sender.host,
            daemon_port=self._sender.port,
        )
        self._devices[device.key] = device
        logger.info(
            "Device added: %s (%s, %s) on port %d",
            device.id,
            device.model,
            device.kind.value,
            device.device_port,
        )

        if self._config.start_devices:
            session = DeviceSession(device, self._session_config)
            self._sessions[device.key] = session
            try:
                await session.start()
            except Exception as e:
                logger.error("Failed to start session for %s: %s", device.id, e)
                self._sessions.pop(device.key, None)

        await self.events.dispatch(f"{device.id}:add", device)
        await self.events.dispatch("device:add", device)

    async def _on_add(self, *args) -> None:
        """Handle /serialosc/add: a device was plugged in."""
        await self._list()
        await self._notify()

    async def _on_remove(self, *args) -> None:
        """Handle /serialosc/remove(id, model, port)."""
        if _is_announcement(args):
            device_id, _, device_port = args
            device = self._devices.pop((device_id, device_port), None)
            if device is not None:
                session = self._sessions.pop(device.key, None)
                if session is not None:
                    await session.stop()
                logger.info("Device removed: %s on port %d", device.id, device.device_port)
                await self.events.dispatch(f"{device.id}:remove", device)
                await self.events.dispatch("device:remove", device)
        else:
            logger.warning("Ignoring malformed /serialosc/remove %r", args)

        await self._notify()

    def __repr__(self) -> str:
        return f"SerialOscClient({self.host}:{self.port}, {len(self._devices)} devices)"
