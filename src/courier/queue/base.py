"""Delivery queue contract.

Any transport used by Courier must provide:

- at-least-once handoff of tasks to workers,
- de-duplication by task key (the delivery ID) while a task is queued,
- delayed re-enqueue, so backoff never holds a worker,
- at most one in-flight task per key.

Engine code depends only on ``DeliveryQueue``; the queue is injected, never
a module-level singleton, so tests can use ``InMemoryQueue``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from courier.models import Delivery


class DeliveryTask(BaseModel):
    """Queue payload for one delivery attempt.

    Attributes:
        delivery_id: Delivery to attempt; also the de-duplication key.
        subscription_id: Target subscription.
        event_id: Event being delivered.
        attempt: 1-based attempt number this task is meant to execute.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    delivery_id: str = Field(description="Delivery to attempt (task key)")
    subscription_id: str = Field(description="Target subscription")
    event_id: str = Field(description="Event being delivered")
    attempt: int = Field(default=1, ge=1, description="Attempt number to execute")

    @property
    def key(self) -> str:
        """De-duplication key."""
        return self.delivery_id

    @classmethod
    def for_delivery(cls, delivery: Delivery) -> DeliveryTask:
        """Build the task for a delivery's next attempt."""
        return cls(
            delivery_id=delivery.id,
            subscription_id=delivery.subscription_id,
            event_id=delivery.event_id,
            attempt=delivery.attempt_count + 1,
        )

    def next_attempt(self) -> DeliveryTask:
        """Task for the attempt after this one."""
        return self.model_copy(update={"attempt": self.attempt + 1})


class DeliveryQueue(ABC):
    """Abstract delivery task queue."""

    @abstractmethod
    async def enqueue(self, task: DeliveryTask) -> bool:
        """Queue a task for immediate execution.

        Returns:
            True if queued, False if a task with the same key is already queued.

        Raises:
            QueueError: If the transport rejected the task.
        """
        ...

    @abstractmethod
    async def enqueue_delayed(self, task: DeliveryTask, delay_seconds: float) -> bool:
        """Queue a task to become available after ``delay_seconds``.

        Returns:
            True if queued, False if a task with the same key is already queued.

        Raises:
            QueueError: If the transport rejected the task.
        """
        ...

    async def connect(self) -> None:  # noqa: B027
        """Open transport connections. Called once before the first enqueue."""

    async def close(self) -> None:  # noqa: B027
        """Release transport resources."""


__all__ = ["DeliveryQueue", "DeliveryTask"]
