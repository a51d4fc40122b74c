from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E")

Listener = Callable[[Any], Awaitable[None]] | Callable[[Any], None]
_Waiter = tuple[Callable[[Any], bool] | None, "asyncio.Future[Any]"]


class EventBus:
    """
    Typed async-friendly publish/subscribe registry.

    - `on(EventType, fn)` registers a listener (sync or async) for one event class.
    - `emit(event)` dispatches on `type(event)` and awaits async listeners.
    - `wait_for(EventType, predicate, timeout_s)` waits for the next matching emission.

    A failing listener is logged and skipped; it never prevents delivery to the
    remaining listeners or propagates into the emitter.
    """

    def __init__(self) -> None:
        self._listeners: dict[type, list[Listener]] = defaultdict(list)
        self._waiters: dict[type, list[_Waiter]] = defaultdict(list)

    def wait_for_future(
        self, event_type: type[E], *, predicate: Callable[[E], bool] | None = None
    ) -> asyncio.Future[E]:
        """
        Register a waiter *synchronously* and return its Future.

        This avoids a race where the event could be emitted between
        constructing an awaitable and actually awaiting it.
        """
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[E] = loop.create_future()
        self._waiters[event_type].append((predicate, fut))
        return fut

    def _remove_waiter_future(self, event_type: type, fut: asyncio.Future[Any]) -> None:
        waiters = self._waiters.get(event_type)
        if not waiters:
            return
        self._waiters[event_type] = [(p, f) for (p, f) in waiters if f is not fut and not f.done()]
        if not self._waiters[event_type]:
            self._waiters.pop(event_type, None)

    def on(self, event_type: type[E], listener: Listener) -> Callable[[], None]:
        self._listeners[event_type].append(listener)

        def remove() -> None:
            self.off(event_type, listener)

        return remove

    def off(self, event_type: type, listener: Listener) -> None:
        listeners = self._listeners.get(event_type)
        if not listeners:
            return
        with contextlib.suppress(ValueError):
            listeners.remove(listener)

    def remove_all_listeners(self, event_type: type | None = None) -> None:
        if event_type is None:
            self._listeners.clear()
            self._waiters.clear()
            return
        self._listeners.pop(event_type, None)
        self._waiters.pop(event_type, None)

    async def emit(self, event: object) -> bool:
        event_type = type(event)
        any_triggered = False

        waiters = self._waiters.get(event_type)
        if waiters:
            remaining: list[_Waiter] = []
            for predicate, fut in waiters:
                if fut.done():
                    continue
                if predicate is None or predicate(event):
                    fut.set_result(event)
                    any_triggered = True
                else:
                    remaining.append((predicate, fut))
            if remaining:
                self._waiters[event_type] = remaining
            else:
                self._waiters.pop(event_type, None)

        for listener in list(self._listeners.get(event_type, [])):
            any_triggered = True
            try:
                res = listener(event)
                if asyncio.iscoroutine(res):
                    await res
            except Exception:
                logger.exception("listener for %s failed", event_type.__name__)

        return any_triggered

    async def wait_for(
        self,
        event_type: type[E],
        *,
        predicate: Callable[[E], bool] | None = None,
        timeout_s: float | None = None,
    ) -> E:
        fut = self.wait_for_future(event_type, predicate=predicate)
        try:
            if timeout_s is None:
                return await fut
            return await asyncio.wait_for(fut, timeout=timeout_s)
        finally:
            # Remove the future if it's still pending (timeout/cancellation).
            self._remove_waiter_future(event_type, fut)
