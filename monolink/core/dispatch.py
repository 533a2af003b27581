"""Dispatch Registry - exact-address handler table.

Maps an address (or event name) to an ordered set of handlers. Used both
for inbound OSC messages and for the events sessions and the discovery
client surface to their owners.

All mutation happens on the event loop thread, so no locking is needed.
A sequence of ``off``/``on`` calls made without an ``await`` in between
is atomic with respect to ``dispatch``.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[..., "Awaitable[Any] | Any"]


class DispatchRegistry:
    """Ordered handler sets keyed by exact address string."""

    def __init__(self, name: str = "registry"):
        """Initialize an empty registry.

        Args:
            name: Label used in log messages.
        """
        self._name = name
        # dict preserves insertion order; values are used as ordered sets
        self._handlers: dict[str, dict[Handler, None]] = {}

    def on(self, address: str, handler: Handler) -> None:
        """Register handler for an exact address.

        Handlers run in registration order. Registering the same handler
        twice for one address has no effect.
        """
        self._handlers.setdefault(address, {})[handler] = None

    def off(self, address: str, handler: Handler | None = None) -> None:
        """Remove handlers for an address.

        Args:
            address: Exact address to clear.
            handler: Only remove this handler. Removes all if None.
        """
        if handler is None:
            self._handlers.pop(address, None)
            return

        handlers = self._handlers.get(address)
        if handlers is None:
            return
        handlers.pop(handler, None)
        if not handlers:
            del self._handlers[address]

    def remove_all(self) -> None:
        """Remove every handler."""
        self._handlers.clear()

    def handlers(self, address: str) -> list[Handler]:
        """Snapshot of handlers registered for an address."""
        return list(self._handlers.get(address, ()))

    def addresses(self) -> list[str]:
        """Addresses with at least one handler."""
        return list(self._handlers)

    def __contains__(self, address: str) -> bool:
        return address in self._handlers

    def __len__(self) -> int:
        return sum(len(h) for h in self._handlers.values())

    async def dispatch(self, address: str, *args: Any) -> int:
        """Call every handler for address with args.

        Coroutine handlers are awaited before the next handler runs.
        A handler removed by an earlier handler is skipped. A failing
        handler is logged and does not stop delivery.

        Returns:
            Number of handlers invoked.
        """
        invoked = 0
        for handler in self.handlers(address):
            if handler not in self._handlers.get(address, ()):
                continue
            invoked += 1
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("%s: handler for %s failed", self._name, address)
        return invoked

    def __repr__(self) -> str:
        return f"DispatchRegistry({self._name}, {len(self._handlers)} addresses)"
