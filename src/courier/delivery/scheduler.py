"""Retry scheduling and the delivery state machine.

``RetryScheduler.process`` runs one queued task to completion:

1. Load the delivery and drop the task if it is terminal or stale.
2. Run one attempt through the executor.
3. Record the outcome with a compare-and-set on the store.
4. On a retryable failure below the attempt ceiling, re-enqueue the next
   attempt after the backoff delay.

Backoff doubles a subscription's base delay per failed attempt::

    delay(attempt) = min(clamp(base, min, max) * 2 ** (attempt - 1), max)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING

from courier.exceptions import NotFoundError, QueueError
from courier.logging import get_logger
from courier.models import Delivery, utcnow
from courier.queue import DeliveryQueue, DeliveryTask

from .executor import DeliveryExecutor, FailureReason, Outcome, PermanentFailure, Success

if TYPE_CHECKING:
    from courier.config import Settings
    from courier.storage import DeliveryStore

logger = get_logger(__name__)

DEFAULT_MIN_DELAY_MS = 100
DEFAULT_MAX_DELAY_MS = 60_000


def backoff_delay(
    base_delay_ms: int,
    attempt: int,
    *,
    min_delay_ms: int = DEFAULT_MIN_DELAY_MS,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
) -> float:
    """Delay in seconds before retrying after failed attempt number ``attempt``.

    Args:
        base_delay_ms: Subscription's base retry delay.
        attempt: 1-based number of the attempt that just failed.
        min_delay_ms: Lower clamp for the base delay.
        max_delay_ms: Upper clamp for the base delay and for the result.

    Example:
        >>> [backoff_delay(1000, n) for n in (1, 2, 3)]
        [1.0, 2.0, 4.0]
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    base = min(max(base_delay_ms, min_delay_ms), max_delay_ms)
    delay_ms = min(base * 2 ** (attempt - 1), max_delay_ms)
    return delay_ms / 1000


class ProcessAction(str, Enum):
    """What processing a task did."""

    DELIVERED = "delivered"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    REJECTED = "rejected"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ProcessResult:
    """Result of processing one delivery task.

    Attributes:
        action: What happened.
        delivery: Delivery state after processing.
        outcome: Attempt outcome, if an attempt was made.
        retry_delay_seconds: Backoff before the next attempt (retry_scheduled only).
        requeued: Whether the next attempt was accepted by the queue.
        reason: Why the task was skipped (terminal, stale, conflict).
    """

    action: ProcessAction
    delivery: Delivery
    outcome: Outcome | None = None
    retry_delay_seconds: float | None = None
    requeued: bool = False
    reason: str | None = None


class RetryScheduler:
    """Drives deliveries through their state machine one attempt at a time."""

    def __init__(
        self,
        store: DeliveryStore,
        queue: DeliveryQueue,
        executor: DeliveryExecutor,
        *,
        min_delay_ms: int = DEFAULT_MIN_DELAY_MS,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        retry_client_errors: bool = True,
    ) -> None:
        self.store = store
        self.queue = queue
        self.executor = executor
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max_delay_ms
        self.retry_client_errors = retry_client_errors

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: DeliveryStore,
        queue: DeliveryQueue,
        executor: DeliveryExecutor,
    ) -> RetryScheduler:
        return cls(
            store,
            queue,
            executor,
            min_delay_ms=settings.retry_min_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            retry_client_errors=settings.retry_client_errors,
        )

    def delay_for(self, base_delay_ms: int, attempt: int) -> float:
        return backoff_delay(
            base_delay_ms,
            attempt,
            min_delay_ms=self.min_delay_ms,
            max_delay_ms=self.max_delay_ms,
        )

    async def process(self, task: DeliveryTask) -> ProcessResult:
        """Run one delivery task.

        Raises:
            NotFoundError: If the delivery, its subscription, or its event
                doesn't exist.
            StorageError: If the store failed after its own retries.
        """
        delivery = await self.store.get_delivery(task.delivery_id)
        if delivery is None:
            raise NotFoundError("delivery", task.delivery_id)

        if delivery.is_terminal:
            logger.info(
                "delivery_task_skipped",
                delivery_id=delivery.id,
                status=delivery.status.value,
                reason="terminal",
            )
            return ProcessResult(ProcessAction.SKIPPED, delivery, reason="terminal")

        if task.attempt != delivery.attempt_count + 1:
            logger.info(
                "delivery_task_skipped",
                delivery_id=delivery.id,
                attempt=task.attempt,
                expected_attempt=delivery.attempt_count + 1,
                reason="stale",
            )
            return ProcessResult(ProcessAction.SKIPPED, delivery, reason="stale")

        subscription = await self.store.get_subscription(delivery.subscription_id)
        if subscription is None:
            raise NotFoundError("subscription", delivery.subscription_id)
        event = await self.store.get_event(delivery.event_id)
        if event is None:
            raise NotFoundError("event", delivery.event_id)

        outcome = await self.executor.execute(subscription, event, delivery.id)
        attempt = delivery.attempt_count + 1
        now = utcnow()

        if isinstance(outcome, Success):
            updated = await self.store.record_success(
                delivery,
                status_code=outcome.status_code,
                response_body=outcome.response_body,
                at=now,
            )
            if updated is None:
                return await self._conflict(delivery, outcome)
            logger.info(
                "delivery_succeeded",
                delivery_id=delivery.id,
                subscription_id=subscription.id,
                event_id=event.id,
                attempt=attempt,
                status_code=outcome.status_code,
                duration_ms=outcome.duration_ms,
            )
            return ProcessResult(ProcessAction.DELIVERED, updated, outcome=outcome)

        if isinstance(outcome, PermanentFailure) and outcome.reason == FailureReason.DISABLED:
            logger.info(
                "delivery_rejected",
                delivery_id=delivery.id,
                subscription_id=subscription.id,
                reason=outcome.reason.value,
            )
            return ProcessResult(ProcessAction.REJECTED, delivery, outcome=outcome)

        exhausted = attempt >= subscription.max_retries
        permanent = isinstance(outcome, PermanentFailure) and not self.retry_client_errors
        terminal = exhausted or permanent
        delay = 0.0 if terminal else self.delay_for(subscription.retry_delay_ms, attempt)
        next_retry_at = None if terminal else now + timedelta(seconds=delay)

        updated = await self.store.record_failure(
            delivery,
            error=outcome.error,
            status_code=outcome.status_code,
            response_body=outcome.response_body,
            terminal=terminal,
            next_retry_at=next_retry_at,
            at=now,
        )
        if updated is None:
            return await self._conflict(delivery, outcome)

        if terminal:
            logger.warning(
                "delivery_failed",
                delivery_id=delivery.id,
                subscription_id=subscription.id,
                event_id=event.id,
                attempt=attempt,
                max_retries=subscription.max_retries,
                reason=outcome.reason.value,
                status_code=outcome.status_code,
                error=outcome.error,
            )
            return ProcessResult(ProcessAction.FAILED, updated, outcome=outcome)

        requeued = await self._requeue(updated, delay)
        logger.info(
            "delivery_retry_scheduled",
            delivery_id=delivery.id,
            subscription_id=subscription.id,
            attempt=attempt,
            next_attempt=attempt + 1,
            delay_seconds=delay,
            reason=outcome.reason.value,
            status_code=outcome.status_code,
        )
        return ProcessResult(
            ProcessAction.RETRY_SCHEDULED,
            updated,
            outcome=outcome,
            retry_delay_seconds=delay,
            requeued=requeued,
        )

    async def _requeue(self, delivery: Delivery, delay: float) -> bool:
        try:
            accepted = await self.queue.enqueue_delayed(DeliveryTask.for_delivery(delivery), delay)
        except QueueError as e:
            # Delivery stays pending with next_retry_at set; a manual retry recovers it
            logger.error(
                "delivery_retry_enqueue_failed",
                delivery_id=delivery.id,
                error=e.message,
            )
            return False
        return accepted

    async def _conflict(self, delivery: Delivery, outcome: Outcome) -> ProcessResult:
        current = await self.store.get_delivery(delivery.id) or delivery
        logger.info(
            "delivery_task_skipped",
            delivery_id=delivery.id,
            status=current.status.value,
            reason="conflict",
        )
        return ProcessResult(ProcessAction.SKIPPED, current, outcome=outcome, reason="conflict")


__all__ = [
    "DEFAULT_MAX_DELAY_MS",
    "DEFAULT_MIN_DELAY_MS",
    "ProcessAction",
    "ProcessResult",
    "RetryScheduler",
    "backoff_delay",
]
