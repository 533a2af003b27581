"""Device Session - per-device handshake and message relay.

A device cannot send events to a client it doesn't know about. The
session binds its own receiver, tells the device where it listens
(/sys/port, then /sys/host), then asks for the remaining static fields
(/sys/info). Replies are UDP and may arrive in any order; the session
tracks which fields are still pending and becomes initialized exactly
once when none are.

Events (register with ``session.on(name, handler)``):
    initialized()           handshake finished
    connected()             device sent /sys/connect
    disconnected()          device sent /sys/disconnect
    timeout()               handshake_timeout elapsed before initialized
    key(GridKey | EncKey)   grid key / arc encoder push
    tilt(Tilt)              grid tilt sensor
    delta(EncDelta)         arc encoder rotation
"""

import asyncio
import contextlib
import logging
from enum import Enum

from monolink.core.config import SessionConfig
from monolink.core.device import EVENT_TYPES, DeviceDescriptor
from monolink.core.dispatch import DispatchRegistry, Handler
from monolink.core.transport import MessageHandler, OscReceiver, OscSender

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Coarse handshake progress."""

    AWAITING_PORT = "awaiting_port"
    AWAITING_HOST = "awaiting_host"
    AWAITING_INFO = "awaiting_info"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class HandshakeField(str, Enum):
    """Device fields that must be acknowledged before a session is usable."""

    PORT = "port"
    HOST = "host"
    SIZE = "size"
    ROTATION = "rotation"
    PREFIX = "prefix"


REQUIRED_FIELDS = frozenset(
    {HandshakeField.PORT, HandshakeField.HOST, HandshakeField.SIZE, HandshakeField.ROTATION}
)


def _check_args(address: str, args: tuple, *types: type) -> bool:
    """Check arity and types of /sys arguments, logging a mismatch."""
    ok = len(args) == len(types) and all(
        isinstance(a, t) and not isinstance(a, bool) for a, t in zip(args, types)
    )
    if not ok:
        logger.warning("Ignoring %s with unexpected arguments %r", address, args)
    return ok


class DeviceSession:
    """Handshake state machine and message relay for one device."""

    def __init__(self, descriptor: DeviceDescriptor, config: SessionConfig | None = None):
        """Initialize session. Nothing is bound or sent until ``start()``.

        Args:
            descriptor: Device to talk to. ``size`` is updated in place.
            config: Session settings. Uses defaults if None.
        """
        self._descriptor = descriptor
        self._config = config or SessionConfig()

        self._receiver = OscReceiver(self._config.host, self._config.port, trace=self._config.trace)
        self._sender = OscSender(
            descriptor.device_host, descriptor.device_port, trace=self._config.trace
        )
        self.events = DispatchRegistry(f"session:{descriptor.id}")

        self._prefix = self._config.prefix
        self._pending: set[HandshakeField] = set()
        self._running = False
        self._initialized = False
        self._connected = False
        self._sent_host = False
        self._sent_info = False
        self._watchdog: asyncio.Task | None = None

        # Values as reported back by the device
        self._device_id: str | None = None
        self._reported_port: int | None = None
        self._reported_host: str | None = None
        self._rotation: int | None = None

        self._kind_handlers: dict[str, Handler] = {
            name: self._make_kind_handler(name) for name in descriptor.kind.subscriptions
        }

    # -- properties --------------------------------------------------------

    @property
    def descriptor(self) -> DeviceDescriptor:
        return self._descriptor

    @property
    def receiver(self) -> OscReceiver:
        return self._receiver

    @property
    def state(self) -> SessionState:
        if not self._running:
            return SessionState.DISCONNECTED
        if self._initialized:
            return SessionState.CONNECTED if self._connected else SessionState.DISCONNECTED
        if HandshakeField.PORT in self._pending:
            return SessionState.AWAITING_PORT
        if HandshakeField.HOST in self._pending:
            return SessionState.AWAITING_HOST
        return SessionState.AWAITING_INFO

    @property
    def pending(self) -> frozenset[HandshakeField]:
        return frozenset(self._pending)

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def host(self) -> str:
        """Host this session listens on."""
        return self._receiver.host

    @property
    def port(self) -> int:
        """Port this session listens on."""
        return self._receiver.port

    @property
    def device_id(self) -> str:
        return self._device_id or self._descriptor.id

    @property
    def rotation(self) -> int | None:
        return self._rotation

    @property
    def size(self) -> tuple[int, int] | None:
        return self._descriptor.size

    @property
    def reported_destination(self) -> tuple[str | None, int | None]:
        """Where the device says it sends events, from /sys/host and /sys/port."""
        return self._reported_host, self._reported_port

    # -- events ------------------------------------------------------------

    def on(self, event: str, handler: Handler) -> None:
        """Register handler for a session event."""
        self.events.on(event, handler)

    def off(self, event: str, handler: Handler | None = None) -> None:
        """Remove handlers for a session event."""
        self.events.off(event, handler)

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Bind the receiver and begin the handshake.

        Raises:
            TransportError: If binding or the first send fails.
        """
        if self._running:
            return

        self._pending = set(REQUIRED_FIELDS)
        self._initialized = False
        self._sent_host = False
        self._sent_info = False
        if self._config.track_prefix:
            self._pending.add(HandshakeField.PREFIX)

        await self._receiver.listen()
        self._running = True

        self._receiver.on("/sys/port", self._on_sys_port)
        self._receiver.on("/sys/host", self._on_sys_host)
        self._receiver.on("/sys/id", self._on_sys_id)
        self._receiver.on("/sys/size", self._on_sys_size)
        self._receiver.on("/sys/rotation", self._on_sys_rotation)
        self._receiver.on("/sys/prefix", self._on_sys_prefix)
        self._receiver.on("/sys/connect", self._on_sys_connect)
        self._receiver.on("/sys/disconnect", self._on_sys_disconnect)
        self._subscribe_kind()

        if self._config.handshake_timeout is not None:
            self._watchdog = asyncio.create_task(
                self._watch_handshake(self._config.handshake_timeout),
                name=f"handshake-watchdog-{self._descriptor.id}",
            )

        logger.info(
            "Session for %s (%s) listening on %s:%d, device at %s:%d",
            self._descriptor.id,
            self._descriptor.kind.value,
            self.host,
            self.port,
            self._sender.host,
            self._sender.port,
        )
        try:
            await self._sender.send("/sys/port", self.port)
        except Exception:
            await self.stop()
            raise

    async def stop(self) -> None:
        """Mark disconnected and close the session sockets. Idempotent."""
        watchdog, self._watchdog = self._watchdog, None
        if watchdog is not None and watchdog is not asyncio.current_task():
            watchdog.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watchdog

        was_running = self._running
        self._running = False
        self._connected = False
        await self._receiver.close()
        self._sender.close()
        if was_running:
            logger.info("Session for %s stopped", self._descriptor.id)

    async def __aenter__(self) -> "DeviceSession":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    async def _watch_handshake(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if self._running and not self._initialized:
            logger.warning(
                "Device %s did not finish handshake within %.1fs (pending: %s)",
                self._descriptor.id,
                timeout,
                ", ".join(sorted(f.value for f in self._pending)),
            )
            await self.events.dispatch("timeout")

    # -- sending -----------------------------------------------------------

    async def send(self, address: str, *args) -> None:
        """Send a raw OSC message to the device.

        Raises:
            TransportError: If the send fails.
        """
        await self._sender.send(address, *args)

    async def send_prefixed(self, suffix: str, *args) -> None:
        """Send a message under the device prefix (e.g. "/grid/led/all")."""
        await self._sender.send(f"{self._prefix}{suffix}", *args)

    async def set_rotation(self, rotation: int) -> None:
        """Ask the device to rotate (0, 90, 180 or 270)."""
        await self._sender.send("/sys/rotation", rotation)

    async def set_prefix(self, prefix: str) -> None:
        """Ask the device to change its prefix.

        Handlers move to the new prefix when the device echoes /sys/prefix.
        """
        await self._sender.send("/sys/prefix", prefix)

    def subscribe(self, address: str, handler: Handler) -> None:
        """Register a raw handler for an exact inbound address."""
        self._receiver.on(address, handler)

    def unsubscribe(self, address: str, handler: Handler | None = None) -> None:
        """Remove raw handlers for an exact inbound address."""
        self._receiver.off(address, handler)

    def on_message(self, handler: MessageHandler) -> None:
        """Register ``handler(address, *values)`` for every inbound message."""
        self._receiver.on_message(handler)

    # -- handshake ---------------------------------------------------------

    async def _acknowledge(self, field: HandshakeField) -> None:
        """Mark a handshake field as received and advance the handshake."""
        if self._initialized or not self._running:
            return

        self._pending.discard(field)

        port_done = HandshakeField.PORT not in self._pending
        host_pending = HandshakeField.HOST in self._pending

        try:
            if port_done and host_pending and not self._sent_host:
                self._sent_host = True
                await self._sender.send("/sys/host", self.host)

            if port_done and not host_pending and not self._sent_info:
                self._sent_info = True
                await self._sender.send("/sys/info")
        finally:
            await self._complete_if_done()

    async def _complete_if_done(self) -> None:
        if not self._pending and not self._initialized and self._running:
            self._initialized = True
            self._connected = True
            if self._watchdog is not None:
                self._watchdog.cancel()
                self._watchdog = None
            logger.info(
                "Device %s initialized (prefix %s, rotation %s, size %s)",
                self.device_id,
                self._prefix,
                self._rotation,
                self._descriptor.size,
            )
            await self.events.dispatch("initialized")

    async def _on_sys_port(self, *args) -> None:
        if _check_args("/sys/port", args, int):
            self._reported_port = args[0]
            await self._acknowledge(HandshakeField.PORT)

    async def _on_sys_host(self, *args) -> None:
        if _check_args("/sys/host", args, str):
            self._reported_host = args[0]
            await self._acknowledge(HandshakeField.HOST)

    def _on_sys_id(self, *args) -> None:
        if _check_args("/sys/id", args, str):
            self._device_id = args[0]

    async def _on_sys_size(self, *args) -> None:
        if _check_args("/sys/size", args, int, int):
            self._descriptor.size = (args[0], args[1])
            await self._acknowledge(HandshakeField.SIZE)

    async def _on_sys_rotation(self, *args) -> None:
        if _check_args("/sys/rotation", args, int):
            self._rotation = args[0]
            await self._acknowledge(HandshakeField.ROTATION)

    async def _on_sys_prefix(self, *args) -> None:
        if not _check_args("/sys/prefix", args, str):
            return
        prefix = args[0]
        if not prefix.startswith("/"):
            logger.warning("Ignoring invalid prefix %r from %s", prefix, self.device_id)
            return

        # No await between unsubscribe and resubscribe.
        self._unsubscribe_kind()
        old, self._prefix = self._prefix, prefix
        self._subscribe_kind()
        if old != prefix:
            logger.debug("Device %s prefix %s -> %s", self.device_id, old, prefix)

        await self._acknowledge(HandshakeField.PREFIX)

    async def _on_sys_connect(self, *args) -> None:
        self._connected = True
        await self.events.dispatch("connected")

    async def _on_sys_disconnect(self, *args) -> None:
        self._connected = False
        await self.events.dispatch("disconnected")

    # -- application messages ----------------------------------------------

    def _subscribe_kind(self) -> None:
        for name, suffix in self._descriptor.kind.subscriptions.items():
            self._receiver.on(f"{self._prefix}{suffix}", self._kind_handlers[name])

    def _unsubscribe_kind(self) -> None:
        for name, suffix in self._descriptor.kind.subscriptions.items():
            self._receiver.off(f"{self._prefix}{suffix}", self._kind_handlers[name])

    def _make_kind_handler(self, name: str) -> Handler:
        event_type = EVENT_TYPES[self._descriptor.kind][name]

        async def handler(*args) -> None:
            try:
                event = event_type.from_args(*args)
            except ValueError as e:
                logger.warning("Dropping %s from %s: %s", name, self.device_id, e)
                return
            await self.events.dispatch(name, event)

        return handler

    def __repr__(self) -> str:
        return f"DeviceSession({self._descriptor.id}, {self.state.value})"
