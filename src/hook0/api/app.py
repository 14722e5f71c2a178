"""FastAPI application for Hook0."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from hook0 import __version__
from hook0.config import Settings
from hook0.exceptions import (
    Hook0Error,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from hook0.logging import configure_logging, get_logger
from hook0.service import Hook0Service

from .router import router, set_service

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifespan.

    Opens the Attempt Store on startup and closes it on shutdown.
    """
    settings: Settings = app.state.settings

    # Configure structured logging
    configure_logging(level=settings.log_level, format=settings.log_format)
    logger.info("Starting Hook0 API", database_path=settings.database_path)

    service = Hook0Service.create(settings)
    await service.initialize()
    set_service(service)

    yield

    set_service(None)
    await service.close()


def register_exception_handlers(app: FastAPI) -> None:
    """Map Hook0 exceptions to HTTP responses."""

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        """Handle validation errors with 400 status."""
        logger.warning(
            "Validation error", field=exc.field, error=exc.message, path=str(request.url)
        )
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(NotFoundError)
    async def not_found_error_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        """Handle not found errors with 404 status."""
        logger.info(
            "Resource not found",
            resource_type=exc.resource_type,
            resource_id=exc.resource_id,
            path=str(request.url),
        )
        return JSONResponse(status_code=404, content=exc.to_dict())

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(
        request: Request, exc: StoreUnavailableError
    ) -> JSONResponse:
        """Handle store outages with 503 status."""
        logger.error("Attempt Store unavailable", error=exc.message, path=str(request.url))
        return JSONResponse(status_code=503, content=exc.to_dict())

    @app.exception_handler(Hook0Error)
    async def hook0_error_handler(request: Request, exc: Hook0Error) -> JSONResponse:
        """Handle all other Hook0 errors with 500 status."""
        logger.error("Hook0 error", error=exc.message, code=exc.code, path=str(request.url))
        return JSONResponse(status_code=500, content=exc.to_dict())


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create a FastAPI application.

    Args:
        settings: Optional settings. Uses environment if None.

    Returns:
        Configured FastAPI application.

    Example:
        ```python
        from hook0.api import create_app

        app = create_app()
        # Run with: uvicorn hook0.api:app
        ```
    """
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="Hook0 delivery engine",
        description="Webhook delivery history and replay.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings

    register_exception_handlers(app)
    app.include_router(router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
