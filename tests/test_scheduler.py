"""Tests for retry scheduling and the delivery state machine."""

from __future__ import annotations

import pytest

from courier.delivery import (
    FanoutDispatcher,
    ProcessAction,
    ProcessResult,
    RetryScheduler,
    backoff_delay,
)
from courier.exceptions import NotFoundError
from courier.models import DeliveryStatus, Subscription, Tenant
from courier.queue import DeliveryTask, InMemoryQueue
from courier.storage import InMemoryStore

from helpers import ScriptedExecutor, client_error, ok, server_error, timeout


async def add_subscription(store: InMemoryStore, tenant: Tenant, **overrides) -> Subscription:
    fields = {
        "tenant_id": tenant.id,
        "url": "https://receiver.example.com/hooks",
        "event_types": ["order.created"],
        "retry_delay_ms": 1000,
    }
    fields.update(overrides)
    return await store.create_subscription(Subscription(**fields))


async def submit(store: InMemoryStore, queue: InMemoryQueue, tenant: Tenant) -> list[str]:
    result = await FanoutDispatcher(store, queue).dispatch(
        tenant.id, "order.created", {"order_id": 42}
    )
    return result.delivery_ids


async def drive(
    scheduler: RetryScheduler, queue: InMemoryQueue, delivery_id: str, limit: int = 20
) -> list[ProcessResult]:
    """Run queued tasks for one delivery until it stops being rescheduled."""
    results: list[ProcessResult] = []
    for _ in range(limit):
        task = queue.queued_task(delivery_id)
        if task is None:
            break
        result = await scheduler.process(task)
        results.append(result)
        if result.action != ProcessAction.RETRY_SCHEDULED:
            break
    return results


class TestBackoffDelay:
    """Tests for backoff_delay()."""

    def test_doubles_per_attempt(self) -> None:
        assert [backoff_delay(1000, n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    @pytest.mark.parametrize("base", [100, 250, 1000, 7000, 60_000])
    def test_monotonic_and_capped(self, base: int) -> None:
        """Delays should never decrease and never exceed the cap."""
        delays = [backoff_delay(base, n) for n in range(1, 25)]

        assert delays == sorted(delays)
        assert max(delays) <= 60.0
        assert delays[-1] == 60.0

    def test_base_clamped_to_min(self) -> None:
        assert backoff_delay(10, 1, min_delay_ms=100) == 0.1

    def test_base_clamped_to_max(self) -> None:
        assert backoff_delay(90_000, 1, max_delay_ms=60_000) == 60.0

    def test_custom_cap(self) -> None:
        assert backoff_delay(1000, 10, max_delay_ms=5000) == 5.0

    @pytest.mark.parametrize("attempt", [0, -1])
    def test_rejects_attempt_below_one(self, attempt: int) -> None:
        with pytest.raises(ValueError):
            backoff_delay(1000, attempt)


class TestRetryScheduler:
    """Tests for RetryScheduler.process()."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(
        self, store, queue, tenant, subscription, make_scheduler
    ) -> None:
        """A 2xx should deliver on attempt 1 and reset the failure counter."""
        scheduler, executor = make_scheduler([ok()])
        [delivery_id] = await submit(store, queue, tenant)

        results = await drive(scheduler, queue, delivery_id)

        assert [r.action for r in results] == [ProcessAction.DELIVERED]
        delivery = await store.get_delivery(delivery_id)
        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.attempt_count == 1
        assert delivery.response_status == 200
        assert delivery.delivered_at is not None
        assert delivery.error_message is None
        assert len(executor.calls) == 1

        sub = await store.get_subscription(subscription.id)
        assert sub.failure_count == 0
        assert sub.last_success_at is not None

    @pytest.mark.asyncio
    async def test_recovers_after_server_errors(
        self, store, queue, tenant, subscription, make_scheduler
    ) -> None:
        """500, 500, 200 should end delivered with three attempts."""
        scheduler, executor = make_scheduler([server_error(), server_error(), ok()])
        [delivery_id] = await submit(store, queue, tenant)

        results = await drive(scheduler, queue, delivery_id)

        assert [r.action for r in results] == [
            ProcessAction.RETRY_SCHEDULED,
            ProcessAction.RETRY_SCHEDULED,
            ProcessAction.DELIVERED,
        ]
        assert [r.retry_delay_seconds for r in results[:2]] == [1.0, 2.0]
        assert all(r.requeued for r in results[:2])

        delivery = await store.get_delivery(delivery_id)
        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.attempt_count == 3
        assert delivery.next_retry_at is None
        assert len(executor.calls) == 3

        sub = await store.get_subscription(subscription.id)
        assert sub.failure_count == 0
        assert sub.last_failure_at is not None

    @pytest.mark.asyncio
    async def test_retry_schedules_next_attempt(
        self, store, queue, tenant, subscription, make_scheduler
    ) -> None:
        """A transient failure should leave the delivery pending with the next attempt queued."""
        scheduler, _ = make_scheduler([server_error(503)])
        [delivery_id] = await submit(store, queue, tenant)

        result = await scheduler.process(queue.queued_task(delivery_id))

        assert result.action == ProcessAction.RETRY_SCHEDULED
        assert result.delivery.status == DeliveryStatus.PENDING
        assert result.delivery.attempt_count == 1
        assert result.delivery.next_retry_at is not None
        assert result.delivery.error_message == "HTTP 503"
        assert result.delivery.response_status == 503
        assert queue.queued_task(delivery_id).attempt == 2

    @pytest.mark.asyncio
    async def test_exhausts_max_retries(
        self, store, queue, tenant, make_scheduler
    ) -> None:
        """max_retries=3 against a receiver that always fails ends failed after 3 attempts."""
        sub = await add_subscription(store, tenant, max_retries=3)
        scheduler, executor = make_scheduler([server_error()])
        [delivery_id] = await submit(store, queue, tenant)

        results = await drive(scheduler, queue, delivery_id)

        assert results[-1].action == ProcessAction.FAILED
        delivery = await store.get_delivery(delivery_id)
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.attempt_count == 3
        assert delivery.failed_at is not None
        assert delivery.next_retry_at is None
        assert len(executor.calls) == 3

        sub = await store.get_subscription(sub.id)
        assert sub.failure_count == 3

    @pytest.mark.asyncio
    async def test_timeouts_fail_with_timeout_error(
        self, store, queue, tenant, make_scheduler
    ) -> None:
        await add_subscription(store, tenant, max_retries=2)
        scheduler, executor = make_scheduler([timeout()])
        [delivery_id] = await submit(store, queue, tenant)

        await drive(scheduler, queue, delivery_id)

        delivery = await store.get_delivery(delivery_id)
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.attempt_count == 2
        assert "timed out" in delivery.error_message
        assert delivery.response_status is None
        assert len(executor.calls) == 2

    @pytest.mark.asyncio
    async def test_client_error_retried_by_default(
        self, store, queue, tenant, subscription, make_scheduler
    ) -> None:
        scheduler, _ = make_scheduler([client_error(404)])
        [delivery_id] = await submit(store, queue, tenant)

        result = await scheduler.process(queue.queued_task(delivery_id))

        assert result.action == ProcessAction.RETRY_SCHEDULED

    @pytest.mark.asyncio
    async def test_client_error_terminal_when_not_retried(
        self, store, queue, tenant, subscription, make_scheduler
    ) -> None:
        """With client-error retries off, a 404 should fail on the first attempt."""
        scheduler, _ = make_scheduler([client_error(404)], retry_client_errors=False)
        [delivery_id] = await submit(store, queue, tenant)

        result = await scheduler.process(queue.queued_task(delivery_id))

        assert result.action == ProcessAction.FAILED
        assert result.delivery.status == DeliveryStatus.FAILED
        assert result.delivery.attempt_count == 1

    @pytest.mark.asyncio
    async def test_retryable_client_error_still_retried(
        self, store, queue, tenant, subscription, make_scheduler
    ) -> None:
        """429 is transient even with client-error retries off."""
        scheduler, _ = make_scheduler([server_error(429)], retry_client_errors=False)
        [delivery_id] = await submit(store, queue, tenant)

        result = await scheduler.process(queue.queued_task(delivery_id))

        assert result.action == ProcessAction.RETRY_SCHEDULED

    @pytest.mark.asyncio
    async def test_delivered_is_never_attempted_again(
        self, store, queue, tenant, subscription, make_scheduler
    ) -> None:
        """Duplicate tasks for a delivered delivery should make no HTTP call."""
        scheduler, executor = make_scheduler([ok()])
        [delivery_id] = await submit(store, queue, tenant)
        task = queue.queued_task(delivery_id)

        await scheduler.process(task)
        duplicate = await scheduler.process(task)
        replayed = await scheduler.process(task.next_attempt())

        assert duplicate.action == ProcessAction.SKIPPED
        assert duplicate.reason == "terminal"
        assert replayed.action == ProcessAction.SKIPPED
        assert len(executor.calls) == 1
        delivery = await store.get_delivery(delivery_id)
        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.attempt_count == 1

    @pytest.mark.asyncio
    async def test_failed_is_never_attempted_again(
        self, store, queue, tenant, make_scheduler
    ) -> None:
        await add_subscription(store, tenant, max_retries=1)
        scheduler, executor = make_scheduler([server_error()])
        [delivery_id] = await submit(store, queue, tenant)
        task = queue.queued_task(delivery_id)

        first = await scheduler.process(task)
        second = await scheduler.process(task)

        assert first.action == ProcessAction.FAILED
        assert second.action == ProcessAction.SKIPPED
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_stale_task_skipped(
        self, store, queue, tenant, subscription, make_scheduler
    ) -> None:
        """A redelivered task for an attempt that already ran should be skipped."""
        scheduler, executor = make_scheduler([server_error()])
        [delivery_id] = await submit(store, queue, tenant)
        task = queue.queued_task(delivery_id)

        await scheduler.process(task)
        stale = await scheduler.process(task)

        assert stale.action == ProcessAction.SKIPPED
        assert stale.reason == "stale"
        assert len(executor.calls) == 1
        assert (await store.get_delivery(delivery_id)).attempt_count == 1

    @pytest.mark.asyncio
    async def test_disabled_subscription_rejected(
        self, store, queue, tenant, subscription, make_scheduler
    ) -> None:
        """Disabling after fan-out should reject the task without changing the delivery."""
        scheduler, executor = make_scheduler([ok()])
        [delivery_id] = await submit(store, queue, tenant)
        await store.set_subscription_enabled(subscription.id, False)

        result = await scheduler.process(queue.queued_task(delivery_id))

        assert result.action == ProcessAction.REJECTED
        assert executor.calls == []
        delivery = await store.get_delivery(delivery_id)
        assert delivery.status == DeliveryStatus.PENDING
        assert delivery.attempt_count == 0

    @pytest.mark.asyncio
    async def test_conflicting_update_skipped(
        self, store, queue, tenant, subscription
    ) -> None:
        """If another execution records the attempt first, this one is discarded."""
        [delivery_id] = await submit(store, queue, tenant)

        class RacingExecutor(ScriptedExecutor):
            async def execute(self, subscription, event, delivery_id):
                delivery = await store.get_delivery(delivery_id)
                await store.record_success(
                    delivery, status_code=200, response_body="first", at=delivery.created_at
                )
                return await super().execute(subscription, event, delivery_id)

        scheduler = RetryScheduler(store, queue, RacingExecutor([server_error()]))

        result = await scheduler.process(queue.queued_task(delivery_id))

        assert result.action == ProcessAction.SKIPPED
        assert result.reason == "conflict"
        delivery = await store.get_delivery(delivery_id)
        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.response_body == "first"
        assert delivery.attempt_count == 1

    @pytest.mark.asyncio
    async def test_requeue_failure_leaves_delivery_pending(
        self, store, queue, tenant, subscription, make_scheduler
    ) -> None:
        scheduler, _ = make_scheduler([server_error()])
        [delivery_id] = await submit(store, queue, tenant)
        task = queue.queued_task(delivery_id)
        await queue.close()

        result = await scheduler.process(task)

        assert result.action == ProcessAction.RETRY_SCHEDULED
        assert result.requeued is False
        delivery = await store.get_delivery(delivery_id)
        assert delivery.status == DeliveryStatus.PENDING
        assert delivery.next_retry_at is not None

    @pytest.mark.asyncio
    async def test_manual_reset_restarts_attempts(
        self, store, queue, tenant, make_scheduler
    ) -> None:
        """A reset failed delivery should get a full new attempt budget."""
        await add_subscription(store, tenant, max_retries=2)
        scheduler, executor = make_scheduler([server_error(), server_error(), ok()])
        [delivery_id] = await submit(store, queue, tenant)
        await drive(scheduler, queue, delivery_id)
        assert (await store.get_delivery(delivery_id)).status == DeliveryStatus.FAILED

        reset = await store.reset_delivery(delivery_id, tenant.id)
        await queue.enqueue(DeliveryTask.for_delivery(reset))
        results = await drive(scheduler, queue, delivery_id)

        assert reset.attempt_count == 0
        assert [r.action for r in results] == [ProcessAction.DELIVERED]
        delivery = await store.get_delivery(delivery_id)
        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.attempt_count == 1
        assert delivery.failed_at is None
        assert len(executor.calls) == 3

    @pytest.mark.asyncio
    async def test_missing_delivery(self, make_scheduler) -> None:
        scheduler, _ = make_scheduler([ok()])
        task = DeliveryTask(delivery_id="dlv_missing", subscription_id="whk_1", event_id="evt_1")

        with pytest.raises(NotFoundError):
            await scheduler.process(task)

    @pytest.mark.asyncio
    async def test_from_settings(self, settings, store, queue) -> None:
        scheduler = RetryScheduler.from_settings(settings, store, queue, ScriptedExecutor([ok()]))

        assert scheduler.min_delay_ms == settings.retry_min_delay_ms
        assert scheduler.max_delay_ms == settings.retry_max_delay_ms
        assert scheduler.retry_client_errors is True
