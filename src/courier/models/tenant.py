"""Tenant model.

Tenants are created by the administrative surface. The delivery engine only
looks them up by API key at the ingestion boundary.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from .base import generate_id, utcnow


class Tenant(BaseModel):
    """An organization that owns subscriptions and sends events.

    Attributes:
        id: Unique identifier for this tenant.
        name: Display name.
        api_key: Secret key presented in ``X-API-Key`` by the sender.
        created_at: When the tenant was created.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("org"))
    name: str = Field(min_length=1, description="Display name")
    api_key: str = Field(min_length=1, description="Sender API key")
    created_at: datetime = Field(default_factory=utcnow, description="When the tenant was created")


__all__ = ["Tenant"]
