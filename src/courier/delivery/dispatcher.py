"""Event fan-out.

Turns one submitted event into one pending delivery plus one queued task
per matching subscription.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from courier.exceptions import QueueError
from courier.logging import get_logger
from courier.models import Delivery, Event, Subscription, utcnow
from courier.queue import DeliveryQueue, DeliveryTask

if TYPE_CHECKING:
    from courier.storage import DeliveryStore

logger = get_logger(__name__)

TEST_EVENT_TYPE = "webhook.test"


@dataclass
class FanoutResult:
    """Result of fanning out one event.

    Attributes:
        event_id: ID of the persisted event.
        matched_count: Subscriptions that matched the event type.
        queued_count: Deliveries whose task was handed to the queue.
        delivery_ids: Every delivery created for the event.
        unqueued_delivery_ids: Deliveries left pending because enqueue failed.
    """

    event_id: str
    matched_count: int = 0
    queued_count: int = 0
    delivery_ids: list[str] = field(default_factory=list)
    unqueued_delivery_ids: list[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        """Whether some matched deliveries were not queued."""
        return self.queued_count < self.matched_count


class FanoutDispatcher:
    """Persists events and fans them out to matching subscriptions.

    Example:
        ```python
        dispatcher = FanoutDispatcher(store, queue)
        result = await dispatcher.dispatch(tenant.id, "order.created", {"order_id": 42})
        ```
    """

    def __init__(self, store: DeliveryStore, queue: DeliveryQueue) -> None:
        self.store = store
        self.queue = queue

    async def dispatch(
        self,
        tenant_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> FanoutResult:
        """Persist an event and queue a delivery for every matching subscription.

        A failed enqueue leaves its delivery pending and is reported through
        ``unqueued_delivery_ids``; the remaining subscriptions are still
        processed.
        """
        event = await self.store.create_event(
            Event(tenant_id=tenant_id, event_type=event_type, payload=payload)
        )
        subscriptions = await self.store.find_matching_subscriptions(tenant_id, event_type)
        result = FanoutResult(event_id=event.id, matched_count=len(subscriptions))

        for subscription in subscriptions:
            delivery = await self._create_delivery(event, subscription)
            result.delivery_ids.append(delivery.id)

            try:
                await self.queue.enqueue(DeliveryTask.for_delivery(delivery))
            except QueueError as e:
                result.unqueued_delivery_ids.append(delivery.id)
                logger.error(
                    "delivery_enqueue_failed",
                    event_id=event.id,
                    delivery_id=delivery.id,
                    subscription_id=subscription.id,
                    error=e.message,
                )
                continue
            result.queued_count += 1

        await self.store.set_event_target_count(event.id, len(subscriptions))

        log = logger.warning if result.partial else logger.info
        log(
            "event_dispatched",
            event_id=event.id,
            event_type=event_type,
            matched=result.matched_count,
            queued=result.queued_count,
        )
        return result

    async def dispatch_test(self, subscription: Subscription) -> Delivery:
        """Send a ``webhook.test`` event to one subscription.

        Event-type matching is skipped, so any subscription can be checked
        end to end.

        Raises:
            QueueError: If the delivery could not be queued; it stays pending.
        """
        event = await self.store.create_event(
            Event(
                tenant_id=subscription.tenant_id,
                event_type=TEST_EVENT_TYPE,
                payload={"test": True, "timestamp": utcnow().isoformat()},
                target_count=1,
            )
        )
        delivery = await self._create_delivery(event, subscription)
        await self.queue.enqueue(DeliveryTask.for_delivery(delivery))
        logger.info(
            "test_event_dispatched",
            event_id=event.id,
            delivery_id=delivery.id,
            subscription_id=subscription.id,
        )
        return delivery

    async def _create_delivery(self, event: Event, subscription: Subscription) -> Delivery:
        delivery, _ = await self.store.create_delivery(
            Delivery(
                tenant_id=event.tenant_id,
                event_id=event.id,
                subscription_id=subscription.id,
            )
        )
        return delivery


__all__ = ["TEST_EVENT_TYPE", "FanoutDispatcher", "FanoutResult"]
