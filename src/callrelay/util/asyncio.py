from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def cancel_suppress(task: asyncio.Task[object] | None) -> None:
    if not task:
        return
    # Never cancel/await the current task: doing so can deadlock or raise
    # "Task cannot await on itself". Callers typically set a stop flag and then
    # return from the current task naturally.
    if task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def ensure_task(coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
    t: asyncio.Task[T] = asyncio.create_task(coro)
    if name:
        with contextlib.suppress(Exception):
            t.set_name(name)
    return t


Job = tuple[Callable[[], Awaitable[Any]], "asyncio.Future[Any] | None"]


class SerialExecutor:
    """
    Runs submitted coroutine functions one at a time, in submission order.

    This is the single writer for session and call state: socket reads, timers
    and media callbacks submit work here instead of mutating state directly.
    A job must not wait on another job of the same executor.
    """

    def __init__(self, *, name: str = "callrelay.serial") -> None:
        self._name = name
        self._queue: asyncio.Queue[Job] | None = None
        self._worker: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self.running:
            return
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._worker = ensure_task(self._work(), name=self._name)

    async def stop(self) -> None:
        await cancel_suppress(self._worker)
        self._worker = None
        if self._queue is None:
            return
        while True:
            try:
                _, fut = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if fut is not None and not fut.done():
                fut.cancel()
            self._queue.task_done()

    def submit(self, fn: Callable[..., Awaitable[T]], *args: Any) -> asyncio.Future[T]:
        """Queue `fn(*args)` and return a future for its result."""
        self.start()
        assert self._queue is not None
        fut: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((lambda: fn(*args), fut))
        return fut

    def post(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> None:
        """Queue `fn(*args)` without waiting; failures are logged."""
        self.start()
        assert self._queue is not None
        self._queue.put_nowait((lambda: fn(*args), None))

    @property
    def in_worker(self) -> bool:
        return self._worker is not None and asyncio.current_task() is self._worker

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        # Already on the worker (e.g. an event listener): queueing would deadlock.
        if self.in_worker:
            return await fn(*args)
        return await self.submit(fn, *args)

    async def join(self) -> None:
        """Wait until every job queued so far has finished."""
        if self._queue is not None and self.running:
            await self._queue.join()

    async def _work(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            job, fut = await queue.get()
            try:
                if fut is not None and fut.cancelled():
                    continue
                try:
                    result = await job()
                except Exception as e:
                    if fut is None:
                        logger.exception("serial job failed")
                    elif not fut.done():
                        fut.set_exception(e)
                else:
                    if fut is not None and not fut.done():
                        fut.set_result(result)
            finally:
                queue.task_done()
