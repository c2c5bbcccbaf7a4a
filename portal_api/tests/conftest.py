"""Shared fixtures for portal API tests.

Provides a temp-file SQLite database (so several sessions can see the same
data), a mock notification gateway, a FastAPI app with dependency overrides
and an httpx client bound to it via ``ASGITransport``.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Disable the store-backed rate limiter and the background scheduler BEFORE
# importing application modules; the module-level app reads settings once.
os.environ.setdefault("PORTAL_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("PORTAL_RECONCILIATION_ENABLED", "false")

from billing_engine.models.billing import BillingRecord
from billing_engine.state.repository import WebsiteRepository
from billing_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portal_api.config import PortalSettings
from portal_api.dependencies import (
    build_reconciler,
    get_db_session,
    get_notifier,
    get_now,
    get_reconciler,
    get_settings,
)
from portal_api.main import create_app

T0 = datetime(2024, 6, 1, 8, 0, tzinfo=UTC)
ADMIN_TOKEN = "test-admin-token"
ADMIN_HEADERS: dict[str, str] = {"Authorization": f"Bearer {ADMIN_TOKEN}"}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> PortalSettings:
    """Return a settings object suitable for testing."""
    return PortalSettings(
        database_url="sqlite+aiosqlite:///:memory:",
        platform_env="staging",
        admin_token=SecretStr(ADMIN_TOKEN),
        rate_limit_enabled=False,
        reconciliation_enabled=False,
        reconciliation_max_concurrency=1,
        reconciliation_store_timeout=5.0,
        reconciliation_notification_timeout=0.5,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a fresh SQLite file with all tables created."""
    engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(engine)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture()
def seed_website(session_factory: async_sessionmaker[AsyncSession]):
    """Return a coroutine that inserts a website, optionally with billing."""

    async def _seed(
        website_id: str,
        billing: BillingRecord | None = None,
        *,
        contact_email: str | None = "client@example.com",
        user_id: str = "user-1",
    ) -> str:
        async with session_factory() as session:
            repo = WebsiteRepository(session)
            await repo.create(
                website_id=website_id,
                name=f"Site {website_id}",
                user_id=user_id,
                request_id=f"req-{website_id}",
                project_type="business",
                contact_email=contact_email,
                contact_name="Ada Client",
            )
            if billing is not None:
                await repo.initialize_billing(website_id, billing)
            await session.commit()
        return website_id

    return _seed


class _UnreachableSession:
    """Session whose every query fails the way asyncpg does when the server is down."""

    async def __aenter__(self) -> _UnreachableSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def execute(self, *args: object, **kwargs: object) -> None:
        raise ConnectionRefusedError(111, "Connect call failed")


@pytest.fixture()
def unreachable_session_factory():
    """Session factory for a database that refuses connections."""
    return _UnreachableSession


@pytest.fixture()
def load_snapshot(session_factory: async_sessionmaker[AsyncSession]):
    """Return a coroutine that reads the stored billing snapshot."""

    async def _load(website_id: str):
        async with session_factory() as session:
            return await WebsiteRepository(session).load_billing(website_id)

    return _load


# ---------------------------------------------------------------------------
# Notification gateway
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_notifier() -> AsyncMock:
    """Return a mock gateway whose sends all succeed."""
    notifier = AsyncMock()
    notifier.send_suspended = AsyncMock(return_value=None)
    notifier.send_overdue = AsyncMock(return_value=None)
    notifier.send_activated = AsyncMock(return_value=None)
    return notifier


# ---------------------------------------------------------------------------
# FastAPI app + client
# ---------------------------------------------------------------------------


@pytest.fixture()
def now() -> datetime:
    return T0


@pytest.fixture()
def app(
    test_settings: PortalSettings,
    session_factory: async_sessionmaker[AsyncSession],
    mock_notifier: AsyncMock,
    now: datetime,
):
    """Create the app with the test database, notifier, settings and clock injected."""
    application = create_app()

    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        session = session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    def _override_reconciler() -> Any:
        return build_reconciler(session_factory, mock_notifier, test_settings)

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_notifier] = lambda: mock_notifier
    application.dependency_overrides[get_reconciler] = _override_reconciler
    application.dependency_overrides[get_now] = lambda: now
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async httpx client bound to the test app, sending the admin token."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=ADMIN_HEADERS) as ac:
        yield ac
