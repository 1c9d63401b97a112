"""Subscription model for registered webhook endpoints.

A subscription is a receiver URL plus the event types it wants, its signing
secret, and its retry configuration. The delivery engine reads these fields
and writes back only the rolling failure counter and the last
success/failure timestamps.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator

from courier.signing import generate_secret

from .base import generate_id, utcnow

MIN_RETRIES = 1
MAX_RETRIES = 10
MIN_RETRY_DELAY_MS = 100
MAX_RETRY_DELAY_MS = 60_000


class Subscription(BaseModel):
    """Configuration for a registered webhook endpoint.

    Attributes:
        id: Unique identifier for this subscription.
        tenant_id: Tenant that owns this subscription.
        url: Endpoint that receives event deliveries.
        description: Optional human-readable description.
        event_types: Event types this subscription receives.
        secret: Shared secret for HMAC-SHA256 signatures.
        enabled: Whether deliveries should be attempted.
        max_retries: Maximum delivery attempts per delivery (1-10).
        retry_delay_ms: Base retry delay in milliseconds (doubles each attempt).
        failure_count: Consecutive failed attempts since the last success.
        last_success_at: When a delivery last succeeded.
        last_failure_at: When a delivery attempt last failed.
        created_at: When the subscription was registered.
        updated_at: When the subscription was last modified.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("whk"))
    tenant_id: str = Field(description="Tenant that owns this subscription")
    url: HttpUrl = Field(description="Endpoint that receives deliveries")
    description: str | None = Field(default=None, description="Human-readable description")
    event_types: list[str] = Field(min_length=1, description="Event types to deliver")
    secret: str = Field(default_factory=generate_secret, description="HMAC signing secret")
    enabled: bool = Field(default=True, description="Whether the subscription is active")
    max_retries: int = Field(
        default=5, ge=MIN_RETRIES, le=MAX_RETRIES, description="Maximum delivery attempts"
    )
    retry_delay_ms: int = Field(
        default=1000,
        ge=MIN_RETRY_DELAY_MS,
        le=MAX_RETRY_DELAY_MS,
        description="Base retry delay in milliseconds",
    )
    failure_count: int = Field(default=0, ge=0, description="Rolling failure counter")
    last_success_at: datetime | None = Field(default=None, description="Last successful delivery")
    last_failure_at: datetime | None = Field(default=None, description="Last failed attempt")
    created_at: datetime = Field(default_factory=utcnow, description="When registered")
    updated_at: datetime = Field(default_factory=utcnow, description="When last modified")

    @field_validator("event_types")
    @classmethod
    def _dedupe_event_types(cls, value: list[str]) -> list[str]:
        """Strip blanks and duplicates while keeping the registration order."""
        cleaned = [item.strip() for item in value if item and item.strip()]
        if not cleaned:
            raise ValueError("at least one event type is required")
        return list(dict.fromkeys(cleaned))

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this subscription is enabled and wants the given event type."""
        return self.enabled and event_type in self.event_types


__all__ = [
    "MAX_RETRIES",
    "MAX_RETRY_DELAY_MS",
    "MIN_RETRIES",
    "MIN_RETRY_DELAY_MS",
    "Subscription",
]
