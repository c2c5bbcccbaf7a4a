"""Engine, session factory and transaction helpers for the website store.

The URL scheme picks the backend:

* ``postgresql+asyncpg://`` -- pooled engine; schema owned by Alembic.
* ``sqlite+aiosqlite://``   -- single file, tables created on startup
  (see :mod:`billing_engine.state.sqlite_adapter`).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)


def is_local_url(database_url: str) -> bool:
    """True for the SQLite backend used by ``--local`` mode and tests."""
    return database_url.startswith("sqlite")


def _sqlite_path(database_url: str) -> str:
    # sqlite+aiosqlite:///relative.db, sqlite+aiosqlite:////abs/path.db
    _, sep, path = database_url.partition("///")
    return path if sep and path else ":memory:"


def get_engine(
    database_url: str,
    *,
    pool_size: int = 5,
    max_overflow: int = 10,
    statement_timeout_seconds: float = 30.0,
) -> AsyncEngine:
    """Create the async engine for *database_url*.

    ``statement_timeout_seconds`` caps every PostgreSQL statement so a
    stuck lock surfaces as an error instead of hanging a reconciliation
    run.  Pool options are ignored for SQLite.
    """
    if is_local_url(database_url):
        from billing_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(_sqlite_path(database_url))

    timeout_ms = str(int(statement_timeout_seconds * 1000))
    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        connect_args={
            "server_settings": {
                "statement_timeout": timeout_ms,
                "lock_timeout": timeout_ms,
                "application_name": "sitedesk-billing",
            }
        },
    )
    logger.info(
        "Created PostgreSQL engine pool_size=%d max_overflow=%d statement_timeout=%sms",
        pool_size,
        max_overflow,
        timeout_ms,
    )
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with ``expire_on_commit`` off; rows are read after commit."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def prepare_schema(engine: AsyncEngine, *, create_tables: bool) -> None:
    """Create tables when *create_tables* is set; otherwise leave it to Alembic."""
    if not create_tables:
        logger.debug("Schema managed by migrations; skipping create_all")
        return
    from billing_engine.state.sqlite_adapter import create_local_tables

    await create_local_tables(engine)


def upgrade_schema(database_url: str, revision: str = "head", *, sql: bool = False) -> None:
    """Run ``alembic upgrade`` against a PostgreSQL store.

    With *sql* set, the DDL is printed instead of executed.  SQLite stores
    are rejected; they get their tables from :func:`prepare_schema`.
    """
    if is_local_url(database_url):
        raise ValueError("SQLite stores are created on startup; migrations target PostgreSQL only")

    from alembic import command
    from alembic.config import Config

    cfg = Config()
    cfg.set_main_option("script_location", str(Path(__file__).resolve().parent / "migrations"))
    # configparser interpolation: a literal % in a password must be doubled.
    cfg.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    logger.info("Upgrading website store schema to %s%s", revision, " (SQL only)" if sql else "")
    command.upgrade(cfg, revision, sql=sql)


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Open a session, commit when the block exits cleanly, roll back otherwise."""
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
