"""In-process worker pool over ``InMemoryQueue``.

Runs ``concurrency`` consumer coroutines. Each consumer takes a task, waits
for a throughput slot, and hands the task to the handler (normally
``CourierService.process_task``) with the delivery bound into the log
context. A handler that fails with ``StorageError`` gets its task handed
back to the queue after a delay, up to ``max_redeliveries`` times.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from courier.exceptions import CourierError, QueueError, StorageError
from courier.logging import get_logger, log_context

from .base import DeliveryTask
from .limiter import ThroughputLimiter
from .memory import InMemoryQueue

logger = get_logger(__name__)

TaskHandler = Callable[[DeliveryTask], Awaitable[object]]


class WorkerPool:
    """Bounded set of consumers for an in-memory delivery queue."""

    def __init__(
        self,
        queue: InMemoryQueue,
        handler: TaskHandler,
        *,
        concurrency: int = 10,
        limiter: ThroughputLimiter | None = None,
        max_redeliveries: int = 3,
        redelivery_delay_seconds: float = 5.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.limiter = limiter
        self.max_redeliveries = max_redeliveries
        self.redelivery_delay_seconds = redelivery_delay_seconds
        self.processed_count = 0
        self._redeliveries: dict[str, int] = {}
        self._consumers: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._consumers)

    async def start(self) -> None:
        """Start the consumers. Calling start on a running pool is a no-op."""
        if self._consumers:
            return
        self._consumers = [
            asyncio.create_task(self._consume(n), name=f"courier-worker-{n}")
            for n in range(self.concurrency)
        ]
        logger.info("worker_pool_started", concurrency=self.concurrency)

    async def stop(self) -> None:
        """Cancel the consumers and wait for them to exit."""
        consumers, self._consumers = self._consumers, []
        for consumer in consumers:
            consumer.cancel()
        await asyncio.gather(*consumers, return_exceptions=True)
        if consumers:
            logger.info("worker_pool_stopped")

    async def _consume(self, worker_id: int) -> None:
        while True:
            task = await self.queue.get()
            try:
                if self.limiter is not None:
                    await self.limiter.acquire()
                with log_context(
                    delivery_id=task.delivery_id,
                    attempt=task.attempt,
                    worker_id=worker_id,
                ):
                    await self._handle(task)
            finally:
                self.queue.release(task)

    async def _handle(self, task: DeliveryTask) -> None:
        try:
            await self.handler(task)
        except StorageError as e:
            await self._redeliver(task, e)
        except CourierError as e:
            logger.warning("task_failed", error_code=e.code, error=e.message)
        except Exception:
            logger.exception("task_crashed")
        else:
            self._redeliveries.pop(f"{task.key}:{task.attempt}", None)
        finally:
            self.processed_count += 1

    async def _redeliver(self, task: DeliveryTask, error: StorageError) -> None:
        redelivery_key = f"{task.key}:{task.attempt}"
        count = self._redeliveries.get(redelivery_key, 0)
        if count >= self.max_redeliveries:
            self._redeliveries.pop(redelivery_key, None)
            logger.error(
                "task_dropped",
                error=error.message,
                redeliveries=count,
            )
            return

        self._redeliveries[redelivery_key] = count + 1
        try:
            await self.queue.enqueue_delayed(task, self.redelivery_delay_seconds)
        except QueueError as e:
            logger.error("task_redelivery_failed", error=e.message)
            return
        logger.warning(
            "task_redelivery_scheduled",
            error=error.message,
            redelivery=count + 1,
            delay_seconds=self.redelivery_delay_seconds,
        )


__all__ = ["TaskHandler", "WorkerPool"]
