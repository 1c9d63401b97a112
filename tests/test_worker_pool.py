"""Tests for the in-process worker pool."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from courier.exceptions import NotFoundError, StorageError
from courier.queue import DeliveryTask, InMemoryQueue, InMemoryThroughputLimiter, WorkerPool


def make_task(delivery_id: str = "dlv_1", attempt: int = 1) -> DeliveryTask:
    return DeliveryTask(
        delivery_id=delivery_id,
        subscription_id="whk_1",
        event_id="evt_1",
        attempt=attempt,
    )


class TestWorkerPool:
    """Tests for WorkerPool."""

    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            WorkerPool(InMemoryQueue(), AsyncMock(), concurrency=0)

    @pytest.mark.asyncio
    async def test_processes_tasks(self):
        queue = InMemoryQueue()
        handler = AsyncMock()
        pool = WorkerPool(queue, handler, concurrency=2)
        await pool.start()

        for n in range(5):
            await queue.enqueue(make_task(f"dlv_{n}"))
        await asyncio.wait_for(queue.join(), timeout=2)
        await pool.stop()

        assert handler.await_count == 5
        assert pool.processed_count == 5
        assert pool.running is False

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        """No more than ``concurrency`` handlers should run at once."""
        queue = InMemoryQueue()
        active = 0
        peak = 0

        async def handler(task):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        pool = WorkerPool(queue, handler, concurrency=3)
        await pool.start()
        for n in range(12):
            await queue.enqueue(make_task(f"dlv_{n}"))
        await asyncio.wait_for(queue.join(), timeout=2)
        await pool.stop()

        assert peak == 3

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_stop_consumers(self):
        queue = InMemoryQueue()
        handler = AsyncMock(
            side_effect=[NotFoundError("delivery", "dlv_0"), RuntimeError("boom"), None]
        )
        pool = WorkerPool(queue, handler, concurrency=1)
        await pool.start()

        for n in range(3):
            await queue.enqueue(make_task(f"dlv_{n}"))
        await asyncio.wait_for(queue.join(), timeout=2)
        await pool.stop()

        assert handler.await_count == 3

    @pytest.mark.asyncio
    async def test_storage_error_redelivered(self):
        """A task that hit a storage error should be handed back and run again."""
        queue = InMemoryQueue()
        handler = AsyncMock(side_effect=[StorageError("db down"), None])
        pool = WorkerPool(queue, handler, concurrency=1, redelivery_delay_seconds=0.01)
        await pool.start()

        await queue.enqueue(make_task())
        await asyncio.wait_for(queue.join(), timeout=2)
        await pool.stop()

        assert handler.await_count == 2
        assert handler.await_args_list[1].args[0] == make_task()

    @pytest.mark.asyncio
    async def test_storage_error_redelivery_limit(self):
        queue = InMemoryQueue()
        handler = AsyncMock(side_effect=StorageError("db down"))
        pool = WorkerPool(
            queue, handler, concurrency=1, max_redeliveries=2, redelivery_delay_seconds=0.01
        )
        await pool.start()

        await queue.enqueue(make_task())
        await asyncio.wait_for(queue.join(), timeout=2)
        await pool.stop()

        # First run plus two redeliveries
        assert handler.await_count == 3

    @pytest.mark.asyncio
    async def test_uses_limiter(self):
        queue = InMemoryQueue()
        limiter = InMemoryThroughputLimiter(100)
        limiter.acquire = AsyncMock(wraps=limiter.acquire)
        pool = WorkerPool(queue, AsyncMock(), concurrency=2, limiter=limiter)
        await pool.start()

        for n in range(4):
            await queue.enqueue(make_task(f"dlv_{n}"))
        await asyncio.wait_for(queue.join(), timeout=2)
        await pool.stop()

        assert limiter.acquire.await_count == 4

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self):
        pool = WorkerPool(InMemoryQueue(), AsyncMock(), concurrency=2)
        await pool.start()
        await pool.start()

        assert pool.running is True
        await pool.stop()
