"""Tests for the keyed work queue."""

import asyncio

import pytest

from flux_kcl.task import KeyedWorkQueue, QueueShutDown


async def test_add_deduplicates() -> None:
    """Test a key is queued at most once."""
    queue: KeyedWorkQueue[str] = KeyedWorkQueue()
    queue.add("a")
    queue.add("b")
    queue.add("a")
    assert len(queue) == 2

    assert await queue.get() == "a"
    assert await queue.get() == "b"
    assert len(queue) == 0
    assert not queue.idle


async def test_add_while_processing() -> None:
    """Test a key added while processed is handed out again after done."""
    queue: KeyedWorkQueue[str] = KeyedWorkQueue()
    queue.add("a")
    key = await queue.get()

    queue.add("a")
    queue.add("a")
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(queue.get(), timeout=0.05)

    queue.done(key)
    assert await asyncio.wait_for(queue.get(), timeout=1) == "a"
    queue.done("a")
    assert queue.idle


async def test_add_after() -> None:
    """Test delayed adds, the earliest deadline wins."""
    queue: KeyedWorkQueue[str] = KeyedWorkQueue()
    queue.add_after("a", 30)
    queue.add_after("a", 0.05)
    queue.add_after("a", 60)
    scheduled = queue.scheduled("a")
    assert scheduled is not None
    assert scheduled <= 0.05
    assert queue.idle

    assert await asyncio.wait_for(queue.get(), timeout=1) == "a"
    assert queue.scheduled("a") is None


async def test_add_rate_limited() -> None:
    """Test the backoff doubles per failure up to the maximum."""
    queue: KeyedWorkQueue[str] = KeyedWorkQueue(base_delay=1.0, max_delay=5.0)
    assert [queue.add_rate_limited("a") for _ in range(5)] == [
        1.0,
        2.0,
        4.0,
        5.0,
        5.0,
    ]
    assert queue.num_requeues("a") == 5

    queue.forget("a")
    assert queue.num_requeues("a") == 0
    assert queue.add_rate_limited("a") == 1.0
    queue.shutdown()


async def test_shutdown() -> None:
    """Test shutdown wakes every waiting worker and cancels delayed adds."""
    queue: KeyedWorkQueue[str] = KeyedWorkQueue()
    queue.add_after("a", 0.01)

    async def worker() -> None:
        with pytest.raises(QueueShutDown):
            await queue.get()

    workers = [asyncio.create_task(worker()) for _ in range(3)]
    await asyncio.sleep(0)
    queue.shutdown()
    await asyncio.wait_for(asyncio.gather(*workers), timeout=1)

    assert queue.shutting_down
    assert queue.scheduled("a") is None
    queue.add("b")
    assert len(queue) == 0
