"""Verbete API service.

FastAPI application providing the author-facing HTTP surface:
- Opening a submission through its access token
- Token status, e-mail confirmation and renewal
- Editing, auto-saving and submitting for review

This module provides the app factory used by the ASGI entry point and
by the tests.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from verbete.api.middleware import ErrorHandlerMiddleware
from verbete.api.routers import author_router
from verbete.services.dispatch import NotificationDispatcher
from verbete.services.email import EmailNotifier

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from verbete.core.config import Settings

logger = logging.getLogger(__name__)

API_TITLE = "Verbete API"
API_DESCRIPTION = """
Anonymous article submission service.

## Namespaces

- **/api/author/** - Token-gated author operations

## Documentation

- OpenAPI spec: `/api/openapi.json`
- Swagger UI: `/api/docs`
"""

# Seconds to wait for background e-mails at shutdown
DRAIN_TIMEOUT = 10.0


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    await app.state.dispatcher.drain(timeout=DRAIN_TIMEOUT)

    from verbete.db import close_engine

    await close_engine()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Args:
        settings: Settings to use; loaded from the environment when omitted.

    Returns:
        Configured FastAPI application.

    Example:
        app = create_app()

        # For testing
        app = create_app(Settings(environment="dev", debug=True))
    """
    if settings is None:
        from verbete.core.settings import get_settings

        settings = get_settings()

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=settings.app_version,
        docs_url="/api/docs",
        redoc_url=None,
        openapi_url="/api/openapi.json",
        lifespan=_lifespan,
    )

    app.state.settings = settings
    app.state.notifier = EmailNotifier.from_settings(settings)
    app.state.dispatcher = NotificationDispatcher()

    _add_middleware(app, settings)
    app.include_router(author_router, prefix="/api")

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for container orchestration."""
        return {"status": "healthy"}

    logger.info("Verbete API application created (version=%s)", settings.app_version)
    return app


def _add_middleware(app: FastAPI, settings: Settings) -> None:
    # Error handler converts exceptions to JSON responses
    app.add_middleware(ErrorHandlerMiddleware)

    allowed_origins = [settings.frontend_url]
    if not settings.is_production:
        allowed_origins += ["http://localhost:3000", "http://localhost:5173"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
