"""In-process delivery queue.

Implements the full queue contract inside one event loop: key
de-duplication, timer-based delayed tasks, and a single in-flight task per
key. Used by tests, demos, and single-process deployments together with
``WorkerPool``.
"""

from __future__ import annotations

import asyncio

from courier.exceptions import QueueError
from courier.logging import get_logger

from .base import DeliveryQueue, DeliveryTask

logger = get_logger(__name__)


class InMemoryQueue(DeliveryQueue):
    """Asyncio-backed delivery queue.

    A key is "queued" from enqueue until a worker takes the task with
    ``get()``, and "in flight" until the worker calls ``release()``.

    While a key is queued, enqueueing the identical task again is dropped
    (returns False). Enqueueing a task for a different attempt replaces the
    queued one and is scheduled with its own delay, so a manual reset never
    leaves a stale task behind and a backoff is never skipped. The one
    exception is a redelivery of the task currently in flight: anything
    queued for its key was enqueued after that task was taken and wins.
    A task that becomes ready while its key is in flight is parked and
    handed out after release.
    """

    def __init__(self) -> None:
        # Wake-ups only; a key is takeable while it is in _ready_keys
        self._ready: asyncio.Queue[str] = asyncio.Queue()
        self._ready_keys: set[str] = set()
        self._queued: dict[str, DeliveryTask] = {}
        self._in_flight: dict[str, DeliveryTask] = {}
        self._parked: set[str] = set()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

    async def enqueue(self, task: DeliveryTask) -> bool:
        """Queue a task for immediate execution."""
        return self._schedule(task, 0.0)

    async def enqueue_delayed(self, task: DeliveryTask, delay_seconds: float) -> bool:
        """Queue a task that becomes ready after ``delay_seconds``."""
        return self._schedule(task, delay_seconds)

    def _schedule(self, task: DeliveryTask, delay_seconds: float) -> bool:
        if self._closed:
            raise QueueError("Queue is closed")

        key = task.key
        current = self._queued.get(key)
        if current == task:
            logger.debug("task_deduplicated", delivery_id=key, attempt=task.attempt)
            return False
        if current is not None and self._in_flight.get(key) == task:
            logger.debug(
                "task_superseded",
                delivery_id=key,
                attempt=task.attempt,
                queued_attempt=current.attempt,
            )
            return False

        self._queued[key] = task
        self._idle.clear()

        if current is not None:
            logger.debug(
                "task_replaced",
                delivery_id=key,
                attempt=task.attempt,
                replaced_attempt=current.attempt,
            )
            self._unschedule(key)

        if delay_seconds > 0:
            loop = asyncio.get_running_loop()
            self._timers[key] = loop.call_later(delay_seconds, self._make_ready, key)
        else:
            self._make_ready(key)
        return True

    def _unschedule(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._ready_keys.discard(key)
        self._parked.discard(key)

    def _make_ready(self, key: str) -> None:
        self._timers.pop(key, None)
        if key in self._in_flight:
            self._parked.add(key)
            return
        self._ready_keys.add(key)
        self._ready.put_nowait(key)

    async def get(self) -> DeliveryTask:
        """Wait for the next ready task and mark its key in flight."""
        while True:
            key = await self._ready.get()
            if key in self._ready_keys:
                break
        self._ready_keys.discard(key)
        task = self._queued.pop(key)
        self._in_flight[key] = task
        return task

    def release(self, task: DeliveryTask) -> None:
        """Mark a task's key as no longer in flight."""
        key = task.key
        self._in_flight.pop(key, None)
        if key in self._parked:
            self._parked.discard(key)
            self._make_ready(key)
        if not self._queued and not self._in_flight:
            self._idle.set()

    @property
    def pending_count(self) -> int:
        """Tasks queued (ready, delayed, or parked) and not yet taken."""
        return len(self._queued)

    @property
    def in_flight_count(self) -> int:
        """Tasks taken by a worker and not yet released."""
        return len(self._in_flight)

    def queued_task(self, key: str) -> DeliveryTask | None:
        """The task waiting to be taken for ``key``, if any."""
        return self._queued.get(key)

    async def join(self) -> None:
        """Wait until no task is queued, delayed, or in flight."""
        await self._idle.wait()

    async def close(self) -> None:
        """Cancel delayed tasks and reject further enqueues."""
        self._closed = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()


__all__ = ["InMemoryQueue"]
