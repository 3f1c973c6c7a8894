"""Application factory for the FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers and
the rate limiter sweeper lifecycle) to keep ``main`` trivial and tests able
to build fresh apps.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api.routes import health_router
from app.core.config import settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware
from app.core.rate_limit import get_rate_limiter, rate_limit_middleware, stop_rate_limiters

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run rate limiter sweepers for the lifetime of the app.

    The global limiter starts here; per-route limiters start on first use.
    Shutdown stops whichever limiters are current at that point.
    """

    if settings.app.rate_limit_enabled:
        get_rate_limiter().start()
    try:
        yield
    finally:
        stop_rate_limiters()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Storefront API",
        description=(
            "Storefront HTTP API shell. Every request passes through an "
            "in-process per-client rate limiter before reaching a route."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    # Middleware: the last one registered runs first, so request ids are
    # assigned before the limiter decides.
    app.middleware("http")(rate_limit_middleware)
    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(health_router)

    logger.info(
        "app.created",
        extra={
            "app_env": settings.app_env,
            "rate_limit_enabled": settings.app.rate_limit_enabled,
            "rate_limit_max": settings.app.rate_limit_max,
            "rate_limit_window_ms": settings.app.rate_limit_window_ms,
        },
    )
    return app
