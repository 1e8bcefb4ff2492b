"""Subscription bookkeeping over a server-push transport.

The transport itself (SignalR, SSE, websockets...) lives outside this
package; anything matching PushTransportProtocol can be plugged in.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

from optrack.services.protocols import ConnectionListener, PushTransportProtocol

logger = logging.getLogger(__name__)


class PushChannel:
    """Owns one consumer's event handlers and connection listeners.

    Handlers are wrapped so an exception raised while handling an event is
    logged instead of propagating into the transport's dispatch loop.
    ``close()`` removes everything this channel registered.
    """

    def __init__(self, transport: PushTransportProtocol | None, name: str = "push"):
        self.transport = transport
        self.name = name
        self._handlers: list[tuple[str, Callable[[Any], Any]]] = []
        self._listeners: list[ConnectionListener] = []
        self._pending: set[asyncio.Task] = set()

    @property
    def is_connected(self) -> bool:
        """Connection flag; a channel without transport is never connected."""
        return bool(self.transport is not None and self.transport.is_connected)

    def _dispatch(self, label: str, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
        except Exception:
            logger.exception(f"[{self.name}] {label} handler failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.name}] async handler failed: {exc!r}")

    def subscribe(self, event: str, handler: Callable[[Any], Any]) -> None:
        """Register a handler for a named event."""
        if self.transport is None:
            return

        def wrapped(payload: Any) -> None:
            self._dispatch(event, handler, payload)

        self.transport.on(event, wrapped)
        self._handlers.append((event, wrapped))

    def add_connection_listener(self, listener: ConnectionListener) -> None:
        """Register a callback invoked with the new connected flag."""
        if self.transport is None:
            return

        def wrapped(connected: bool) -> None:
            self._dispatch("connection", listener, connected)

        self.transport.add_connection_listener(wrapped)
        self._listeners.append(wrapped)

    def close(self) -> None:
        """Unsubscribe every handler and listener registered through this channel."""
        if self.transport is not None:
            for event, handler in self._handlers:
                self.transport.off(event, handler)
            for listener in self._listeners:
                self.transport.remove_connection_listener(listener)
        self._handlers.clear()
        self._listeners.clear()
        for task in self._pending:
            task.cancel()
        self._pending.clear()
