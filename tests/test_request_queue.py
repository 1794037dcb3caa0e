from __future__ import annotations

import asyncio

import pytest

from campussync.config import RetryPolicy
from campussync.exceptions import NetworkTransientError, TerminalConnectionError
from campussync.executor import ResilientExecutor
from campussync.request_queue import SerialRequestQueue


@pytest.mark.asyncio
async def test_requests_dispatch_in_order_one_at_a_time() -> None:
    events: list[str] = []
    gates = {name: asyncio.Event() for name in ("r1", "r2", "r3")}
    active = 0
    max_active = 0

    async def dispatch(name: str) -> str:
        nonlocal active, max_active
        active += 1
        max_active = max(max_active, active)
        events.append(f"start:{name}")
        await gates[name].wait()
        events.append(f"end:{name}")
        active -= 1
        return name.upper()

    queue: SerialRequestQueue[str, str] = SerialRequestQueue(dispatch)
    tasks = [asyncio.create_task(queue.enqueue(name)) for name in ("r1", "r2", "r3")]
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert events == ["start:r1"]
    assert queue.in_flight
    assert queue.pending_count == 2

    for name in ("r3", "r2", "r1"):
        gates[name].set()
    results = await asyncio.gather(*tasks)

    assert results == ["R1", "R2", "R3"]
    assert events == ["start:r1", "end:r1", "start:r2", "end:r2", "start:r3", "end:r3"]
    assert max_active == 1
    assert not queue.in_flight
    assert queue.pending_count == 0


@pytest.mark.asyncio
async def test_failure_settles_only_its_own_request() -> None:
    async def dispatch(value: int) -> int:
        if value == 2:
            raise ValueError("bad payload")
        return value * 10

    queue: SerialRequestQueue[int, int] = SerialRequestQueue(dispatch)
    results = await asyncio.gather(
        queue.enqueue(1),
        queue.enqueue(2),
        queue.enqueue(3),
        return_exceptions=True,
    )

    assert results[0] == 10
    assert isinstance(results[1], ValueError)
    assert results[2] == 30


@pytest.mark.asyncio
async def test_queue_resumes_after_going_idle() -> None:
    async def dispatch(value: int) -> int:
        return value + 1

    queue: SerialRequestQueue[int, int] = SerialRequestQueue(dispatch)

    assert await queue.enqueue(1) == 2
    await asyncio.sleep(0)
    assert await queue.enqueue(5) == 6


@pytest.mark.asyncio
async def test_offline_messages_wait_for_first_retry_sequence() -> None:
    timeline: list[str] = []
    sleeps: list[float] = []

    async def sleep(delay: float) -> None:
        sleeps.append(delay)
        timeline.append(f"sleep:{delay:g}")

    executor = ResilientExecutor(sleep=sleep)
    policy = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=4.0)

    def make_operation(name: str):
        async def operation() -> str:
            timeline.append(f"attempt:{name}")
            raise NetworkTransientError("offline")

        return operation

    async def dispatch(name: str) -> str:
        return await executor.execute(make_operation(name), policy=policy, label=name)

    queue: SerialRequestQueue[str, str] = SerialRequestQueue(dispatch, name="assistant")
    results = await asyncio.gather(
        queue.enqueue("m1"),
        queue.enqueue("m2"),
        queue.enqueue("m3"),
        return_exceptions=True,
    )

    assert all(isinstance(result, TerminalConnectionError) for result in results)
    first_sequence = ["attempt:m1", "sleep:1", "attempt:m1", "sleep:2", "attempt:m1", "sleep:4", "attempt:m1"]
    assert timeline[: len(first_sequence)] == first_sequence
    assert timeline[len(first_sequence)] == "attempt:m2"
    assert timeline.index("attempt:m3") > timeline.index("attempt:m2")
    assert sleeps == [1.0, 2.0, 4.0] * 3


@pytest.mark.asyncio
async def test_close_cancels_waiting_requests() -> None:
    gate = asyncio.Event()

    async def dispatch(value: int) -> int:
        await gate.wait()
        return value

    queue: SerialRequestQueue[int, int] = SerialRequestQueue(dispatch)
    first = asyncio.create_task(queue.enqueue(1))
    second = asyncio.create_task(queue.enqueue(2))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    await queue.close()

    with pytest.raises(asyncio.CancelledError):
        await first
    with pytest.raises(asyncio.CancelledError):
        await second
    with pytest.raises(RuntimeError):
        await queue.enqueue(3)
