"""FastAPI application entry-point for the tenant billing console API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from billing_core.state.sqlite_adapter import create_local_tables
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from console_api import __version__
from console_api.config import APISettings, PlatformEnv, load_api_settings
from console_api.dependencies import (
    dispose_dead_letter_notifier,
    dispose_engine,
    init_dead_letter_notifier,
    init_engine,
)
from console_api.middleware.auth import AuthenticationMiddleware
from console_api.middleware.json_formatter import JSONFormatter
from console_api.middleware.logging import RequestLoggingMiddleware
from console_api.middleware.prometheus import PrometheusMiddleware
from console_api.routers import billing, entitlements, health, platform, stripe_webhooks
from console_api.routers import metrics as metrics_router

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables when running on local SQLite (PostgreSQL deployments
      use the Alembic migrations).
    - Initialise the dead-letter notifier when one is configured.

    On shutdown:
    - Close the notifier's HTTP client.
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and settings.billing_enabled:
        if not settings.stripe_webhook_secret.get_secret_value():
            raise RuntimeError(
                f"API_STRIPE_WEBHOOK_SECRET is required in {settings.platform_env.value} mode. Refusing to start."
            )

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if is_local:
        await create_local_tables(engine)
        logger.info("Database tables ensured (local SQLite)")

    if init_dead_letter_notifier(settings) is not None:
        logger.info("Dead-letter notifier initialised")

    # Structured JSON logging for SIEM integration.
    if settings.structured_logging:
        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)
        logger.info("Structured JSON logging enabled")

    yield

    # Shutdown.
    await dispose_dead_letter_notifier()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: APISettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = settings or load_api_settings()

    app = FastAPI(
        title="Tenant Billing Console API",
        description="Stripe webhook ingestion and entitlement enforcement for the tenant console.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "Accept",
        ],
    )
    app.add_middleware(AuthenticationMiddleware, secret=settings.session_secret.get_secret_value())
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    # Versioned API routes; all business endpoints live under /api/v1.
    app.include_router(health.router, prefix="/api/v1")
    app.include_router(stripe_webhooks.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(entitlements.router, prefix="/api/v1")
    app.include_router(platform.router, prefix="/api/v1")

    # Metrics endpoint, outside /api/v1 versioning (Prometheus scrape).
    app.include_router(metrics_router.router)

    # Infrastructure endpoints, outside versioning (probes, root-level).
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        # Log the full error for debugging; return a safe message to the client.
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn console_api.main:app``.
app = create_app()
