"""FastAPI application entry-point for the SiteDesk portal API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from billing_engine.errors import (
    BillingValidationError,
    ConcurrencyConflictError,
    StoreUnavailableError,
    WebsiteNotFoundError,
)
from billing_engine.state.database import is_local_url, prepare_schema
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from portal_api import __version__
from portal_api.config import PlatformEnv, PortalSettings, load_settings
from portal_api.dependencies import (
    build_reconciler,
    dispose_engine,
    dispose_notifier,
    get_session_factory,
    init_engine,
    init_notifier,
)
from portal_api.middleware.logging import RequestLoggingMiddleware
from portal_api.middleware.prometheus import PrometheusMiddleware
from portal_api.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware
from portal_api.routers import admin_billing, health, metrics, websites
from portal_api.services.billing_scheduler import BillingScheduler

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables in dev or local SQLite mode (production uses Alembic).
    - Initialise the notification gateway.
    - Start the billing reconciliation scheduler when enabled.

    On shutdown the scheduler is stopped before the gateway and the engine
    are disposed, so an in-flight run never sees a closed pool.
    """
    settings: PortalSettings = load_settings()

    if settings.structured_logging:
        from portal_api.middleware.json_formatter import configure_json_logging

        configure_json_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = is_local_url(settings.database_url)
    logger.info("Website store backend: %s", "sqlite" if is_local else "postgres")
    await prepare_schema(engine, create_tables=is_local or settings.platform_env == PlatformEnv.DEV)

    notifier = init_notifier(settings)

    scheduler: BillingScheduler | None = None
    if settings.reconciliation_enabled:
        reconciler = build_reconciler(get_session_factory(), notifier, settings)
        scheduler = BillingScheduler(
            reconciler,
            cron_expression=settings.reconciliation_cron,
            poll_seconds=settings.reconciliation_poll_seconds,
        )
        await scheduler.start()
    app.state.billing_scheduler = scheduler

    yield

    if scheduler is not None:
        await scheduler.stop()
    await dispose_notifier()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_settings()

    app = FastAPI(
        title="SiteDesk Portal API",
        description="Website delivery portal: billing lifecycle and reconciliation.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept"],
        expose_headers=["X-Billing-Status", "X-Billing-Message", "X-Correlation-ID"],
    )
    app.add_middleware(
        RateLimitMiddleware,
        session_factory=get_session_factory,
        config=RateLimitConfig(
            enabled=settings.rate_limit_enabled,
            default_requests_per_minute=settings.rate_limit_requests_per_minute,
            burst_multiplier=settings.rate_limit_burst_multiplier,
            admin_requests_per_minute=settings.rate_limit_admin_requests_per_minute,
        ),
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(admin_billing.router, prefix="/api/v1")
    app.include_router(websites.router, prefix="/api/v1")
    app.include_router(metrics.router)
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(BillingValidationError)
    async def billing_validation_handler(request: Request, exc: BillingValidationError) -> JSONResponse:
        logger.warning("Billing validation error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(WebsiteNotFoundError)
    async def not_found_handler(request: Request, exc: WebsiteNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConcurrencyConflictError)
    async def conflict_handler(request: Request, exc: ConcurrencyConflictError) -> JSONResponse:
        logger.info("Billing write conflict on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=409,
            content={"detail": "Billing record was changed by another request. Reload and retry."},
        )

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
        logger.error("Store unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Website store unavailable. Retry later."})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn portal_api.main:app``.
app = create_app()
