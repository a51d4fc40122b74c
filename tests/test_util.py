from __future__ import annotations

import asyncio

import pytest

from callrelay.util.asyncio import SerialExecutor
from callrelay.util.events import EventBus


class _Ping:
    def __init__(self, n: int) -> None:
        self.n = n


@pytest.mark.asyncio
async def test_event_bus_isolates_failing_listeners() -> None:
    bus = EventBus()
    got: list[int] = []

    def broken(_ev: _Ping) -> None:
        raise RuntimeError("boom")

    async def good(ev: _Ping) -> None:
        got.append(ev.n)

    bus.on(_Ping, broken)
    remove = bus.on(_Ping, good)

    assert await bus.emit(_Ping(1)) is True
    remove()
    await bus.emit(_Ping(2))

    assert got == [1]
    assert await bus.emit(object()) is False


@pytest.mark.asyncio
async def test_event_bus_wait_for_predicate() -> None:
    bus = EventBus()
    fut = bus.wait_for_future(_Ping, predicate=lambda ev: ev.n == 2)
    await bus.emit(_Ping(1))
    assert not fut.done()
    await bus.emit(_Ping(2))
    assert (await fut).n == 2

    with pytest.raises(asyncio.TimeoutError):
        await bus.wait_for(_Ping, timeout_s=0.01)
    assert _Ping not in bus._waiters


@pytest.mark.asyncio
async def test_serial_executor_runs_in_submission_order() -> None:
    ex = SerialExecutor()
    order: list[int] = []

    async def job(n: int, delay: float) -> int:
        await asyncio.sleep(delay)
        order.append(n)
        return n

    futs = [ex.submit(job, 1, 0.02), ex.submit(job, 2, 0.0), ex.submit(job, 3, 0.01)]
    assert await asyncio.gather(*futs) == [1, 2, 3]
    assert order == [1, 2, 3]
    await ex.stop()


@pytest.mark.asyncio
async def test_serial_executor_propagates_errors_and_keeps_running() -> None:
    ex = SerialExecutor()

    async def bad() -> None:
        raise ValueError("nope")

    async def ok() -> str:
        return "ok"

    with pytest.raises(ValueError):
        await ex.run(bad)
    ex.post(bad)
    assert await ex.run(ok) == "ok"
    await ex.stop()


@pytest.mark.asyncio
async def test_serial_executor_runs_nested_calls_inline() -> None:
    ex = SerialExecutor()

    async def inner() -> bool:
        return ex.in_worker

    async def outer() -> bool:
        return await ex.run(inner)

    assert await asyncio.wait_for(ex.run(outer), timeout=1.0) is True
    assert ex.in_worker is False
    await ex.stop()


@pytest.mark.asyncio
async def test_serial_executor_join_waits_for_posted_jobs() -> None:
    ex = SerialExecutor()
    done: list[int] = []

    async def job(n: int) -> None:
        await asyncio.sleep(0)
        done.append(n)

    for n in range(5):
        ex.post(job, n)
    await ex.join()
    assert done == [0, 1, 2, 3, 4]
    await ex.stop()
