#!/usr/bin/env python3
"""
Tests for the worker_pool module
"""

import asyncio
import time

import pytest

from panel_errors import FileNotFound
from worker_pool import WorkerConfig, WorkerPool


def sample_task(value: int) -> int:
    """Simple task for testing"""
    time.sleep(0.1)  # Simulate work
    return value * 2


async def test_worker_pool_basic():
    """Test basic worker pool functionality"""
    print("\n[TEST 1] Testing basic worker pool...")

    config = WorkerConfig(max_workers=4)
    pool = WorkerPool(config)
    await pool.start()

    result = await pool.submit_task("task1", sample_task, 5)

    assert result == 10, f"Expected 10, got {result}"
    print(f"  ✓ Single task completed: {result}")

    await pool.shutdown()


async def test_exception_propagates_without_retry():
    """Failures reach the caller unchanged, after a single call"""
    pool = WorkerPool(WorkerConfig(max_workers=2))
    calls = []

    def failing():
        calls.append(1)
        raise FileNotFound("gone")

    with pytest.raises(FileNotFound):
        await pool.submit_task("failing", failing)

    assert len(calls) == 1
    metrics = pool.get_metrics()
    assert metrics["failed"] == 1
    assert metrics["failures_by_task"] == {"failing": 1}
    await pool.shutdown()


async def test_pool_starts_on_first_submit():
    pool = WorkerPool(WorkerConfig(max_workers=2))
    assert not pool.started

    assert await pool.submit_task("lazy", sample_task, 1) == 2
    assert pool.started
    await pool.shutdown()


async def test_worker_pool_metrics():
    """Test worker pool metrics"""
    print("\n[TEST 2] Testing worker pool metrics...")

    config = WorkerConfig(max_workers=4)
    pool = WorkerPool(config)
    await pool.start()

    results = await asyncio.gather(*[
        pool.submit_task(f"task_{i}", sample_task, i) for i in range(20)
    ])
    assert results == [i * 2 for i in range(20)]

    metrics = pool.get_metrics()

    assert metrics["submitted"] == 20
    assert metrics["succeeded"] == 20
    assert metrics["failed"] == 0
    assert metrics["active"] == 0
    assert metrics["success_rate"] == 100.0
    assert metrics["max_workers"] == 4

    print(f"  ✓ Metrics collected: {metrics}")

    await pool.shutdown()


async def test_task_timeout():
    pool = WorkerPool(WorkerConfig(max_workers=2, task_timeout=0.05))

    with pytest.raises(asyncio.TimeoutError):
        await pool.submit_task("slow", time.sleep, 0.5)

    assert pool.get_metrics()["timed_out"] == 1
    await pool.shutdown()


async def test_submit_after_shutdown():
    pool = WorkerPool(WorkerConfig(max_workers=2))
    await pool.start()
    await pool.shutdown()

    with pytest.raises(RuntimeError):
        await pool.submit_task("late", sample_task, 1)


async def test_event_loop_not_blocked():
    """A blocking call on the pool leaves the loop free for other work"""
    pool = WorkerPool(WorkerConfig(max_workers=2))
    ticks = []

    async def ticker():
        for _ in range(5):
            ticks.append(time.monotonic())
            await asyncio.sleep(0.02)

    start = time.monotonic()
    await asyncio.gather(pool.submit_task("block", time.sleep, 0.3), ticker())

    assert len(ticks) == 5
    assert ticks[-1] - start < 0.25
    await pool.shutdown()


async def main():
    """Run the self-contained tests without pytest"""
    print("=" * 60)
    print("Worker Pool Module Test Suite")
    print("=" * 60)

    await test_worker_pool_basic()
    await test_worker_pool_metrics()

    print("\n" + "=" * 60)
    print("✓ All tests passed!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
