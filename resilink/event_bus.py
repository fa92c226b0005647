# =============================================================================
# Resilink -- Event Bus
# =============================================================================
#
# Publish/subscribe fan-out for socket frames and transport lifecycle events.
# =============================================================================

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable

from ._logging import logger

Callback = Callable[[Any], Any]
AsyncCallback = Callable[[Any], Awaitable[Any]]


class Subscription:
    """Handle returned by :meth:`EventBus.on`.  Unsubscribing twice is a no-op."""

    __slots__ = ("_bus", "event", "callback", "_active")

    def __init__(self, bus: EventBus, event: str, callback: Callback | AsyncCallback) -> None:
        self._bus = bus
        self.event = event
        self.callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if self._active:
            self._active = False
            self._bus._remove(self)


class EventBus:
    """Typed event fan-out.

    Callbacks run in subscription order.  A callback that raises is logged
    and skipped; it never stops later callbacks or reaches the emitter.
    Coroutine results are scheduled as tasks.

    Example::

        bus = EventBus()
        sub = bus.on("room_updated", lambda data: print(data))
        bus.emit("room_updated", {"id": 7})
        sub.unsubscribe()
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: str, callback: Callback | AsyncCallback) -> Subscription:
        """Register *callback* for *event* and return its handle."""
        sub = Subscription(self, event, callback)
        self._subscriptions[event].append(sub)
        return sub

    def off(self, event: str, callback: Callback | AsyncCallback | None = None) -> None:
        """Remove the first registration of *callback*, or every callback
        for *event* when *callback* is omitted."""
        subs = self._subscriptions.get(event)
        if not subs:
            return
        if callback is None:
            for sub in subs:
                sub._active = False
            subs.clear()
            return
        for sub in subs:
            if sub.callback == callback:
                sub.unsubscribe()
                return

    def emit(self, event: str, data: Any = None) -> int:
        """Invoke every callback for *event*.  Returns how many ran cleanly."""
        subs = list(self._subscriptions.get(event, ()))
        delivered = 0
        for sub in subs:
            if not sub.active:
                continue
            try:
                result = sub.callback(data)
                if asyncio.iscoroutine(result):
                    self._fire_task(event, result)
                delivered += 1
            except Exception:
                logger.exception("Subscriber error for '%s'", event)
        return delivered

    def listener_count(self, event: str) -> int:
        return len(self._subscriptions.get(event, ()))

    def clear(self) -> None:
        for subs in self._subscriptions.values():
            for sub in subs:
                sub._active = False
        self._subscriptions.clear()

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscriptions.get(sub.event)
        if subs and sub in subs:
            subs.remove(sub)

    def _fire_task(self, event: str, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        task.add_done_callback(lambda t: _log_task_failure(event, t))


def _log_task_failure(event: str, task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Async subscriber error for '%s': %s", event, exc)
