"""
Typed publish/subscribe registry.

Handlers are called synchronously, in registration order, once per emitted
event. A failing handler is logged and does not stop delivery to the rest.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from inboxsync.events import EventKind

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


class Subscription:
    """
    Handle returned by ``EventDispatcher.on``.

    Unsubscribing is idempotent. Usable as a context manager so a listener
    lives exactly as long as the block that registered it:

        with dispatcher.on(EventKind.MESSAGE_RECEIVED, handler):
            ...
    """

    def __init__(self, dispatcher: "EventDispatcher", kind: EventKind, handler: Handler):
        self._dispatcher = dispatcher
        self.kind = kind
        self.handler = handler

    @property
    def active(self) -> bool:
        return self._dispatcher.is_subscribed(self.kind, self.handler)

    def unsubscribe(self) -> None:
        self._dispatcher.off(self.kind, self.handler)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *args: Any) -> None:
        self.unsubscribe()


class EventDispatcher:
    """Registry mapping event kind to an ordered list of handlers."""

    def __init__(self) -> None:
        self._handlers: dict[EventKind, list[Handler]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, kind: EventKind, handler: Handler) -> Subscription:
        """
        Register a handler for an event kind.

        Registering the same handler twice for one kind keeps a single entry,
        so repeated mount cycles cannot stack duplicate listeners.
        """
        kind = EventKind(kind)
        handlers = self._handlers.setdefault(kind, [])
        if handler not in handlers:
            handlers.append(handler)
        else:
            logger.debug(f"Handler {handler!r} already registered for {kind.value}")
        return Subscription(self, kind, handler)

    def off(self, kind: EventKind, handler: Optional[Handler] = None) -> None:
        """Remove one handler by reference, or every handler for ``kind``."""
        kind = EventKind(kind)
        if handler is None:
            self._handlers.pop(kind, None)
            return

        handlers = self._handlers.get(kind)
        if not handlers:
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            del self._handlers[kind]

    def is_subscribed(self, kind: EventKind, handler: Handler) -> bool:
        return handler in self._handlers.get(EventKind(kind), [])

    def handler_count(self, kind: Optional[EventKind] = None) -> int:
        if kind is not None:
            return len(self._handlers.get(EventKind(kind), []))
        return sum(len(handlers) for handlers in self._handlers.values())

    def emit(self, kind: EventKind, event: Any) -> int:
        """
        Deliver an event to every handler registered for ``kind``.

        Coroutine handlers are scheduled on the running loop; their failures
        are logged the same way as synchronous ones.

        Returns:
            Number of handlers the event was delivered to
        """
        kind = EventKind(kind)
        # Snapshot: handlers may unsubscribe themselves while running
        handlers = list(self._handlers.get(kind, []))
        for handler in handlers:
            try:
                result = handler(event)
            except Exception:
                logger.exception(f"Handler {handler!r} failed for {kind.value}")
                continue
            if inspect.isawaitable(result):
                self._schedule(kind, handler, result)
        return len(handlers)

    def clear(self) -> None:
        """Drop every handler and cancel outstanding coroutine handlers."""
        self._handlers.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _schedule(self, kind: EventKind, handler: Handler, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(t: "asyncio.Task[Any]") -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(
                    f"Async handler {handler!r} failed for {kind.value}",
                    exc_info=exc,
                )

        task.add_done_callback(_done)
