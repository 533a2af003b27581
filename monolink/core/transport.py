"""UDP transport for OSC messages.

OscSender transmits to one fixed host:port from a lazily bound ephemeral
socket. OscReceiver binds host:port and runs a receive loop on the event
loop, decoding each datagram and dispatching it by exact address.

Both use non-blocking sockets driven by asyncio's ``sock_sendto`` and
``sock_recvfrom``. The receive wait is cancellable, so ``close()`` stops
dispatch immediately instead of after the next datagram.
"""

import asyncio
import contextlib
import logging
import socket
from collections.abc import Awaitable, Callable
from typing import Any

from monolink.core.dispatch import DispatchRegistry, Handler
from monolink.core.errors import (
    ProtocolError,
    TransportConnectionRefusedError,
    TransportError,
    TransportPermissionError,
)
from monolink.core.osc import OscMessage, TypedValue, decode_message, encode_message

logger = logging.getLogger(__name__)

RECV_BUFFER_SIZE = 65535

_LOOPBACK_NAMES = {
    "": "127.0.0.1",
    "localhost": "127.0.0.1",
    "ip6-localhost": "::1",
    "ip6-loopback": "::1",
}

MessageHandler = Callable[..., "Awaitable[Any] | Any"]


def resolve_host(host: str) -> str:
    """Map symbolic loopback names to their numeric literal.

    Other hosts (numeric literals or real names) are returned unchanged.
    """
    return _LOOPBACK_NAMES.get(host.strip().lower(), host)


def _family_for(host: str) -> socket.AddressFamily:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def _format_args(args: tuple) -> str:
    return " ".join(repr(a) for a in args)


class OscSender:
    """Sends OSC messages to a fixed host:port.

    Usage:
        sender = OscSender("localhost", 12002)
        await sender.send("/serialosc/list", "127.0.0.1", 13000)
    """

    def __init__(self, host: str, port: int, *, trace: bool = False) -> None:
        """Initialize sender. No socket is created until the first send.

        Args:
            host: Target hostname or IP. Loopback names are resolved.
            port: Target UDP port.
            trace: Log every message at INFO instead of DEBUG.
        """
        self._host = resolve_host(host)
        self._port = port
        self._trace = trace
        self._socket: socket.socket | None = None

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    def _ensure_socket(self) -> socket.socket:
        """Lazily create a non-blocking UDP socket on an ephemeral port."""
        if self._socket is None:
            family = _family_for(self._host)
            sock = socket.socket(family, socket.SOCK_DGRAM)
            try:
                sock.setblocking(False)
                sock.bind(("::" if family == socket.AF_INET6 else "0.0.0.0", 0))
            except OSError:
                sock.close()
                raise
            self._socket = sock
        return self._socket

    async def send(self, address: str, *args: "TypedValue | int | float | str") -> None:
        """Encode and send an OSC message.

        Args:
            address: OSC address (e.g., "/sys/port").
            *args: Message arguments.

        Raises:
            InvalidArgumentError: If the message cannot be encoded.
            TransportPermissionError: If the OS refused the socket or send.
            TransportConnectionRefusedError: If nothing listens at the target.
            TransportError: For any other OS-level failure.
        """
        data = encode_message(address, *args)
        target = (self._host, self._port)
        try:
            sock = self._ensure_socket()
            await asyncio.get_running_loop().sock_sendto(sock, data, target)
        except PermissionError as e:
            raise TransportPermissionError(
                f"Permission denied sending {address}: {e}", *target
            ) from e
        except ConnectionRefusedError as e:
            raise TransportConnectionRefusedError(
                f"Connection refused sending {address}. Is serialosc running? {e}",
                *target,
            ) from e
        except OSError as e:
            raise TransportError(f"Failed to send {address}: {e}", *target) from e

        logger.log(
            logging.INFO if self._trace else logging.DEBUG,
            "to %s:%d: %s %s",
            self._host,
            self._port,
            address,
            _format_args(args),
        )

    def close(self) -> None:
        """Close the UDP socket. Safe to call more than once."""
        if self._socket is not None:
            self._socket.close()
            self._socket = None

    def __repr__(self) -> str:
        return f"OscSender({self._host}:{self._port})"


class OscReceiver:
    """Receives OSC messages on host:port and dispatches them by address.

    Handlers are called with the message's plain argument values. Handlers
    registered through ``on_message`` are called with the address first.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0, *, trace: bool = False):
        """Initialize receiver. The socket is bound by ``listen()``.

        Args:
            host: Interface to bind. Loopback names are resolved.
            port: UDP port to bind, 0 for an ephemeral port.
            trace: Log every message at INFO instead of DEBUG.
        """
        self._host = resolve_host(host)
        self._port = port
        self._trace = trace
        self._socket: socket.socket | None = None
        self._task: asyncio.Task | None = None
        self._closes = 0
        self._listening = False
        self.registry = DispatchRegistry(f"receiver:{self._host}")
        self._any = DispatchRegistry(f"receiver:{self._host}:any")

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        """Bound port (the ephemeral one once listening on port 0)."""
        return self._port

    @property
    def is_listening(self) -> bool:
        return self._listening

    def on(self, address: str, handler: Handler) -> None:
        """Register handler for an exact address."""
        self.registry.on(address, handler)

    def off(self, address: str, handler: Handler | None = None) -> None:
        """Remove handlers for an exact address."""
        self.registry.off(address, handler)

    def on_message(self, handler: MessageHandler) -> None:
        """Register handler called as ``handler(address, *values)`` for every message."""
        self._any.on("*", handler)

    async def listen(self) -> None:
        """Bind the socket and start the receive loop.

        Raises:
            TransportError: If the socket cannot be bound.
        """
        if self._listening:
            return

        family = _family_for(self._host)
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.setblocking(False)
            sock.bind((self._host, self._port))
        except PermissionError as e:
            sock.close()
            raise TransportPermissionError(f"Cannot bind: {e}", self._host, self._port) from e
        except OSError as e:
            sock.close()
            raise TransportError(f"Cannot bind: {e}", self._host, self._port) from e

        self._socket = sock
        self._port = sock.getsockname()[1]
        self._listening = True
        self._task = asyncio.create_task(
            self._receive_loop(), name=f"osc-receiver-{self._port}"
        )
        logger.debug("OSC receiver listening on %s:%d", self._host, self._port)

    async def _receive_loop(self) -> None:
        """Await datagrams and dispatch them until closed."""
        loop = asyncio.get_running_loop()
        while self._listening and self._socket is not None:
            try:
                data, addr = await loop.sock_recvfrom(self._socket, RECV_BUFFER_SIZE)
            except OSError as e:
                if not self._listening:
                    break
                # e.g. ICMP unreachable from an earlier send on some platforms
                logger.warning("OSC receive error on port %d: %s", self._port, e)
                continue

            await self.deliver(data, addr)

    async def deliver(self, data: bytes, source: tuple | None = None) -> OscMessage | None:
        """Decode one datagram and dispatch it.

        Undecodable datagrams are logged and dropped. A close issued by a
        handler ends delivery of this datagram.

        Returns:
            The decoded message, or None if it was dropped.
        """
        try:
            message = decode_message(data)
        except ProtocolError as e:
            logger.warning(
                "Dropping malformed OSC datagram on port %d from %s: %s",
                self._port,
                source,
                e,
            )
            return None

        values = message.values
        logger.log(
            logging.INFO if self._trace else logging.DEBUG,
            "from %s: %s %s",
            source,
            message.address,
            _format_args(values),
        )

        closes = self._closes
        await self.registry.dispatch(message.address, *values)
        if self._closes == closes:
            await self._any.dispatch("*", message.address, *values)
        return message

    async def close(self) -> None:
        """Stop the receive loop, close the socket and drop all handlers.

        Safe to call more than once, and from inside a handler.
        """
        self._closes += 1
        self._listening = False
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if self._socket is not None:
            self._socket.close()
            self._socket = None
            logger.debug("OSC receiver on %s:%d closed", self._host, self._port)

        self.registry.remove_all()
        self._any.remove_all()

    def __repr__(self) -> str:
        return f"OscReceiver({self._host}:{self._port})"
