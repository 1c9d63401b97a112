"""FastAPI application for Courier."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from courier import __version__
from courier.config import Settings
from courier.exceptions import (
    AuthenticationError,
    CourierError,
    DeliveryStateError,
    NotFoundError,
    QueueError,
    StorageError,
    ValidationError,
)
from courier.logging import configure_logging, get_logger
from courier.service import CourierService

from .router import router, set_service

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifespan.

    Creates and initializes the CourierService on startup, starts the
    in-process workers when the memory queue is selected, and shuts
    everything down on exit.
    """
    settings: Settings = app.state.settings

    # Configure structured logging
    configure_logging(level=settings.log_level, format=settings.log_format)
    logger.info(
        "courier_api_starting",
        log_level=settings.log_level,
        queue_backend=settings.queue_backend,
        store="memory" if settings.uses_memory_store else "sql",
    )

    service = CourierService.create(settings)
    await service.initialize()
    set_service(service)

    if settings.queue_backend == "memory":
        await service.start_workers()

    yield

    # Cleanup
    await service.close()
    set_service(None)
    logger.info("courier_api_stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create a FastAPI application.

    Args:
        settings: Optional settings. Uses environment if None.

    Returns:
        Configured FastAPI application.

    Example:
        ```python
        from courier.api import create_app

        app = create_app()
        # Run with: uvicorn courier.api:app --reload
        ```
    """
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="Courier",
        description="Signed webhook delivery with retries.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings

    # Add CORS middleware if enabled
    if settings.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_methods=settings.cors_allow_methods,
            allow_headers=settings.cors_allow_headers,
        )

    # Register exception handlers
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        """Handle validation errors with 400 status."""
        logger.warning(
            "validation_error", field=exc.field, error=exc.message, path=str(request.url)
        )
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(NotFoundError)
    async def not_found_error_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        """Handle not found errors with 404 status."""
        logger.info(
            "resource_not_found",
            resource_type=exc.resource_type,
            resource_id=exc.resource_id,
            path=str(request.url),
        )
        return JSONResponse(status_code=404, content=exc.to_dict())

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(
        request: Request, exc: AuthenticationError
    ) -> JSONResponse:
        """Handle authentication errors with 401 status."""
        logger.warning("authentication_failed", error=exc.message, path=str(request.url))
        return JSONResponse(status_code=401, content=exc.to_dict())

    @app.exception_handler(DeliveryStateError)
    async def delivery_state_error_handler(
        request: Request, exc: DeliveryStateError
    ) -> JSONResponse:
        """Handle illegal delivery transitions with 409 status."""
        logger.info(
            "delivery_state_conflict",
            delivery_id=exc.delivery_id,
            status=exc.status,
            path=str(request.url),
        )
        return JSONResponse(status_code=409, content=exc.to_dict())

    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
        """Handle queue failures with 503 status."""
        logger.error("queue_unavailable", error=exc.message, path=str(request.url))
        return JSONResponse(status_code=503, content=exc.to_dict())

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        """Handle storage failures with 503 status."""
        logger.error("storage_unavailable", error=exc.message, path=str(request.url))
        return JSONResponse(status_code=503, content=exc.to_dict())

    @app.exception_handler(CourierError)
    async def courier_error_handler(request: Request, exc: CourierError) -> JSONResponse:
        """Handle all other Courier errors with 500 status."""
        logger.error("courier_error", error=exc.message, code=exc.code, path=str(request.url))
        return JSONResponse(status_code=500, content=exc.to_dict())

    app.include_router(router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
