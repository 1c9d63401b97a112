"""FastAPI router for Courier API endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, status

from courier import __version__
from courier.models import Tenant
from courier.service import CourierService
from courier.storage import InMemoryStore

from .schemas import (
    DeliveryResponse,
    HealthResponse,
    RetryResponse,
    SendEventRequest,
    SendEventResponse,
    WebhookTestResponse,
)

router = APIRouter()

# Service instance (set by app lifespan)
_service: CourierService | None = None


def set_service(service: CourierService | None) -> None:
    """Set the global service instance."""
    global _service
    _service = service


async def get_service() -> CourierService:
    """Dependency to get the CourierService instance."""
    if _service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return _service


ServiceDep = Annotated[CourierService, Depends(get_service)]


async def get_tenant(
    service: ServiceDep,
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> Tenant:
    """Dependency resolving the calling tenant from ``X-API-Key``.

    Missing or unknown keys raise InvalidTenantError, handled as 401.
    """
    return await service.authenticate(x_api_key)


TenantDep = Annotated[Tenant, Depends(get_tenant)]


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check() -> HealthResponse:
    """Check service health.

    Reports which store and queue backends the service is running on.
    """
    if _service is None:
        return HealthResponse(status="unhealthy", version=__version__)

    return HealthResponse(
        status="healthy",
        version=__version__,
        store_backend="memory" if isinstance(_service.store, InMemoryStore) else "sql",
        queue_backend=_service.settings.queue_backend,
    )


@router.post(
    "/events",
    response_model=SendEventResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["events"],
)
async def send_event(
    request: SendEventRequest,
    tenant: TenantDep,
    service: ServiceDep,
) -> SendEventResponse:
    """Submit an event for delivery to every matching subscription.

    Deliveries happen asynchronously; the response reports how many were
    queued. ``queued_count`` lower than ``matched_count`` means some
    deliveries could not be queued and stay pending until retried.
    """
    result = await service.submit_event(tenant.id, request.event, request.data)
    return SendEventResponse(
        event_id=result.event_id,
        queued_count=result.queued_count,
        matched_count=result.matched_count,
        delivery_ids=result.delivery_ids,
    )


@router.get(
    "/deliveries/{delivery_id}",
    response_model=DeliveryResponse,
    tags=["deliveries"],
)
async def get_delivery(
    delivery_id: str,
    tenant: TenantDep,
    service: ServiceDep,
) -> DeliveryResponse:
    """Get the current state of one delivery."""
    delivery = await service.get_delivery(delivery_id, tenant.id)
    return DeliveryResponse.from_delivery(delivery)


@router.post(
    "/deliveries/{delivery_id}/retry",
    response_model=RetryResponse,
    tags=["deliveries"],
)
async def retry_delivery(
    delivery_id: str,
    tenant: TenantDep,
    service: ServiceDep,
) -> RetryResponse:
    """Reset a failed (or stuck pending) delivery and queue it again.

    The attempt budget starts over. Delivered deliveries are rejected
    with 409.
    """
    delivery = await service.retry_delivery(delivery_id, tenant.id)
    return RetryResponse(delivery=DeliveryResponse.from_delivery(delivery))


@router.post(
    "/subscriptions/{subscription_id}/test",
    response_model=WebhookTestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["subscriptions"],
)
async def send_test_webhook(
    subscription_id: str,
    tenant: TenantDep,
    service: ServiceDep,
) -> WebhookTestResponse:
    """Send a signed ``webhook.test`` event to one subscription.

    The subscription receives it regardless of its event types.
    """
    delivery = await service.send_test(subscription_id, tenant.id)
    return WebhookTestResponse(delivery_id=delivery.id)


__all__ = [
    "ServiceDep",
    "TenantDep",
    "get_service",
    "get_tenant",
    "router",
    "set_service",
]
