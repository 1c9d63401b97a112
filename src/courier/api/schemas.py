"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from courier.models import Delivery, DeliveryStatus


class SendEventRequest(BaseModel):
    """Request body for submitting an event.

    Attributes:
        event: Event type, e.g. ``order.created``.
        data: Event payload delivered as the envelope's ``data``.
    """

    model_config = ConfigDict(extra="forbid")

    event: str = Field(min_length=1, max_length=255, description="Event type")
    data: dict[str, Any] = Field(default_factory=dict, description="Event payload")


class SendEventResponse(BaseModel):
    """Response after an event was accepted for delivery.

    Attributes:
        event_id: ID of the stored event.
        queued_count: Deliveries queued.
        matched_count: Subscriptions that matched the event type.
        delivery_ids: IDs of the deliveries created.
    """

    model_config = ConfigDict(extra="forbid")

    event_id: str
    queued_count: int = Field(ge=0)
    matched_count: int = Field(ge=0)
    delivery_ids: list[str] = Field(default_factory=list)


class DeliveryResponse(BaseModel):
    """Current state of one delivery."""

    model_config = ConfigDict(extra="forbid")

    id: str
    event_id: str
    subscription_id: str
    status: DeliveryStatus
    attempt_count: int
    error_message: str | None = None
    response_status: int | None = None
    response_body: str | None = None
    next_retry_at: datetime | None = None
    delivered_at: datetime | None = None
    failed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_delivery(cls, delivery: Delivery) -> DeliveryResponse:
        return cls.model_validate(delivery.model_dump(exclude={"tenant_id"}))


class RetryResponse(BaseModel):
    """Response after a delivery was queued for manual retry."""

    model_config = ConfigDict(extra="forbid")

    success: bool = True
    message: str = "Delivery queued for retry"
    delivery: DeliveryResponse


class WebhookTestResponse(BaseModel):
    """Response after a test delivery was queued."""

    model_config = ConfigDict(extra="forbid")

    success: bool = True
    message: str = "Test webhook sent"
    delivery_id: str


class HealthResponse(BaseModel):
    """Response for health check endpoint.

    Attributes:
        status: Service status (healthy, unhealthy).
        version: API version.
        store_backend: Persistence backend in use.
        queue_backend: Queue transport in use.
    """

    model_config = ConfigDict(extra="forbid")

    status: Literal["healthy", "unhealthy"]
    version: str
    store_backend: Literal["memory", "sql"] | None = None
    queue_backend: Literal["memory", "arq"] | None = None


__all__ = [
    "DeliveryResponse",
    "HealthResponse",
    "RetryResponse",
    "SendEventRequest",
    "SendEventResponse",
    "WebhookTestResponse",
]
