"""SQLite backend for ``sitedesk serve --local``, the CLI and the test suite.

Uses the same ORM tables as PostgreSQL.  The billing payment history is a
``JSONB`` column in production and plain ``JSON`` text here.  The
conditional billing write behaves identically on both backends, so the
optimistic-concurrency tests hold against this adapter too.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

_MEMORY = ":memory:"

# Applied on every new DBAPI connection.  WAL lets the CLI read while the
# API writes; busy_timeout makes concurrent writers wait instead of failing.
_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=5000",
)


def get_local_engine(db_path: Path | str = ".sitedesk/state.db") -> AsyncEngine:
    """Return an aiosqlite engine for *db_path* (``":memory:"`` for a throwaway store)."""
    if str(db_path) == _MEMORY:
        url = f"sqlite+aiosqlite:///{_MEMORY}"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(url, connect_args={"check_same_thread": False})

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn, _record) -> None:  # noqa: ANN001
        cursor = dbapi_conn.cursor()
        for pragma in _PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    logger.info("Using SQLite website store at %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create any missing tables.  Existing tables and rows are left alone."""
    from billing_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Website store tables ready (%d tables)", len(Base.metadata.tables))
