"""Shared fixtures for CLI tests: a seeded SQLite state file."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from billing_engine.models.billing import BillingRecord
from billing_engine.models.website import BillingSnapshot
from billing_engine.state.repository import ReconciliationRunRepository, WebsiteRepository
from billing_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import async_sessionmaker


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep developer ``PORTAL_*`` settings and ``.env`` files out of CLI tests."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PORTAL_DATABASE_URL", raising=False)
    monkeypatch.delenv("PORTAL_RESEND_API_KEY", raising=False)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "state.db"


@pytest.fixture()
def database_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


@pytest.fixture()
def seed(db_path: Path) -> Callable[..., None]:
    """Insert websites (with optional billing) and run history into the state file."""

    def _seed(websites: dict[str, BillingRecord | None], runs: list[dict[str, Any]] | None = None) -> None:
        async def _run() -> None:
            engine = get_local_engine(db_path)
            await create_local_tables(engine)
            try:
                async with async_sessionmaker(engine, expire_on_commit=False)() as session:
                    repo = WebsiteRepository(session)
                    for website_id, record in websites.items():
                        await repo.create(
                            website_id=website_id,
                            name=f"Site {website_id}",
                            user_id="user-1",
                            request_id=f"req-{website_id}",
                            project_type="business",
                            contact_email=f"{website_id}@example.com",
                        )
                        if record is not None:
                            await repo.initialize_billing(website_id, record)
                    for run in runs or []:
                        await ReconciliationRunRepository(session).record_run(**run)
                    await session.commit()
            finally:
                await engine.dispose()

        asyncio.run(_run())

    return _seed


@pytest.fixture()
def load_billing(db_path: Path) -> Callable[[str], BillingSnapshot]:
    """Read a website's billing snapshot back from the state file."""

    def _load(website_id: str) -> BillingSnapshot:
        async def _run() -> BillingSnapshot:
            engine = get_local_engine(db_path)
            try:
                async with async_sessionmaker(engine)() as session:
                    return await WebsiteRepository(session).load_billing(website_id)
            finally:
                await engine.dispose()

        return asyncio.run(_run())

    return _load
