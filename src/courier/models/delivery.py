"""Delivery model: the unit of retry and idempotency.

One delivery exists per (event, subscription) pair. Its ID doubles as the
queue task key. Lifecycle::

    pending --2xx--------------------------> delivered   (terminal)
    pending --failure, attempts < max------> pending     (retry scheduled)
    pending --failure, attempts >= max-----> failed      (terminal)
    failed  --manual retry-----------------> pending     (attempts reset)
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .base import generate_id, utcnow

RESPONSE_BODY_LIMIT = 10_000
ERROR_MESSAGE_LIMIT = 1_000


class DeliveryStatus(str, Enum):
    """Delivery state machine states."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED})


class Delivery(BaseModel):
    """Attempt tracking for one event delivered to one subscription.

    Attributes:
        id: Unique identifier, also the queue idempotency key.
        tenant_id: Tenant that owns the event and subscription.
        event_id: Event being delivered.
        subscription_id: Subscription receiving the event.
        status: Current state (pending, delivered, failed).
        attempt_count: Number of attempts made so far.
        error_message: Last error (truncated to 1000 bytes).
        response_status: Last HTTP status code received, if any.
        response_body: Last response body (truncated to 10000 bytes).
        next_retry_at: When the scheduled retry becomes due.
        delivered_at: When the delivery succeeded.
        failed_at: When the delivery exhausted its attempts.
        created_at: When fan-out created this delivery.
        updated_at: When this record last changed.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    tenant_id: str = Field(description="Owning tenant")
    event_id: str = Field(description="Event being delivered")
    subscription_id: str = Field(description="Target subscription")
    status: DeliveryStatus = Field(default=DeliveryStatus.PENDING, description="Delivery status")
    attempt_count: int = Field(default=0, ge=0, description="Attempts made so far")
    error_message: str | None = Field(default=None, description="Last error message")
    response_status: int | None = Field(default=None, description="Last HTTP status code")
    response_body: str | None = Field(default=None, description="Last response body (truncated)")
    next_retry_at: datetime | None = Field(default=None, description="When the next retry is due")
    delivered_at: datetime | None = Field(default=None, description="When delivered")
    failed_at: datetime | None = Field(default=None, description="When attempts were exhausted")
    created_at: datetime = Field(default_factory=utcnow, description="When created")
    updated_at: datetime = Field(default_factory=utcnow, description="When last updated")

    @property
    def is_terminal(self) -> bool:
        """Whether the delivery reached delivered or failed."""
        return self.status in TERMINAL_STATUSES


__all__ = [
    "ERROR_MESSAGE_LIMIT",
    "RESPONSE_BODY_LIMIT",
    "TERMINAL_STATUSES",
    "Delivery",
    "DeliveryStatus",
]
