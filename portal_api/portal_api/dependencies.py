"""FastAPI dependency injection for settings, sessions, notifier and reconciler."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from typing import Annotated

from billing_engine.state.database import create_session_factory, get_engine, transaction
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from portal_api.config import PlatformEnv, PortalSettings, load_settings
from portal_api.services.billing_reconciler import BillingReconciler
from portal_api.services.notification_gateway import NotificationGateway, create_notification_gateway
from portal_api.services.website_store import SqlWebsiteStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: PortalSettings | None = None


def get_settings() -> PortalSettings:
    """Return the cached :class:`PortalSettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_settings()
    return _settings_cache


SettingsDep = Annotated[PortalSettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


def get_now() -> datetime:
    """Request time.  Handlers take ``now`` from here so tests can pin it."""
    return datetime.now(UTC)


NowDep = Annotated[datetime, Depends(get_now)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: PortalSettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        statement_timeout_seconds=settings.database_statement_timeout,
    )
    _session_factory = create_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that operate outside FastAPI's dependency injection
    (the scheduler, the rate-limit middleware).
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on exception."""
    async with transaction(get_session_factory()) as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Notification gateway
# ---------------------------------------------------------------------------

_notifier: NotificationGateway | None = None


def init_notifier(settings: PortalSettings) -> NotificationGateway:
    """Create and cache the global notification gateway."""
    global _notifier  # noqa: PLW0603
    _notifier = create_notification_gateway(settings)
    return _notifier


async def dispose_notifier() -> None:
    """Close the gateway's HTTP pool."""
    global _notifier  # noqa: PLW0603
    if _notifier is not None:
        close = getattr(_notifier, "close", None)
        if close is not None:
            await close()
        _notifier = None


def get_notifier() -> NotificationGateway:
    """Return the cached notification gateway."""
    if _notifier is None:
        raise RuntimeError(
            "Notification gateway has not been initialised. Ensure init_notifier() is called during startup."
        )
    return _notifier


NotifierDep = Annotated[NotificationGateway, Depends(get_notifier)]

# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


def build_reconciler(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: NotificationGateway,
    settings: PortalSettings,
) -> BillingReconciler:
    """Wire a :class:`BillingReconciler` to the SQL store and run history."""
    store = SqlWebsiteStore(session_factory)
    return BillingReconciler(
        store,
        notifier,
        max_concurrency=settings.reconciliation_max_concurrency,
        store_timeout=settings.reconciliation_store_timeout,
        notification_timeout=settings.reconciliation_notification_timeout,
        run_log=store,
    )


def get_reconciler(settings: SettingsDep, notifier: NotifierDep) -> BillingReconciler:
    return build_reconciler(get_session_factory(), notifier, settings)


ReconcilerDep = Annotated[BillingReconciler, Depends(get_reconciler)]

# ---------------------------------------------------------------------------
# Operator authentication
# ---------------------------------------------------------------------------


def require_admin(request: Request, settings: SettingsDep) -> None:
    """Require ``Authorization: Bearer <PORTAL_ADMIN_TOKEN>`` on admin routes.

    With no token configured the check is skipped in the dev environment
    and admin routes are refused everywhere else.
    """
    expected = settings.admin_token.get_secret_value()
    if not expected:
        if settings.platform_env == PlatformEnv.DEV:
            return
        logger.error("PORTAL_ADMIN_TOKEN is not set; refusing admin request to %s", request.url.path)
        raise HTTPException(status_code=503, detail="Admin access is not configured")

    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Authentication required")


AdminDep = Depends(require_admin)
