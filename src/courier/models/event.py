"""Event model.

An event is a fact recorded by the sender. It is immutable once created,
except for ``target_count``, which fan-out sets to the number of matching
subscriptions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .base import ensure_utc, generate_id, utcnow


class Event(BaseModel):
    """An application event to fan out to subscriptions.

    Attributes:
        id: Unique identifier for this event (sent as ``X-Webhook-ID``).
        tenant_id: Tenant that sent the event.
        event_type: Event type string, e.g. ``order.created``.
        payload: Opaque event data, delivered as the envelope's ``data``.
        created_at: When the event was recorded.
        target_count: Number of subscriptions the event was fanned out to.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("evt"))
    tenant_id: str = Field(description="Tenant that sent the event")
    event_type: str = Field(min_length=1, description="Event type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Opaque event data")
    created_at: datetime = Field(default_factory=utcnow, description="When the event occurred")
    target_count: int = Field(default=0, ge=0, description="Resolved subscription count")

    def envelope(self) -> dict[str, Any]:
        """Build the canonical payload envelope sent to receivers."""
        created_at = ensure_utc(self.created_at) or self.created_at
        return {
            "id": self.id,
            "event": self.event_type,
            "timestamp": created_at.isoformat(),
            "data": self.payload,
        }


__all__ = ["Event"]
