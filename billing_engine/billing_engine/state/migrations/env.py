"""Alembic environment for the SiteDesk website store (PostgreSQL only).

``sitedesk migrate`` builds the Alembic config in code and sets
``sqlalchemy.url``; a bare ``alembic`` invocation falls back to
``PORTAL_DATABASE_URL``.  Migrations run on a synchronous psycopg
connection, so async driver names are swapped before connecting.
"""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from billing_engine.state.tables import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

_SYNC_DRIVERS = {
    "postgresql+asyncpg://": "postgresql+psycopg://",
    "postgresql://": "postgresql+psycopg://",
}


def _database_url() -> str:
    url = config.get_main_option("sqlalchemy.url") or os.environ.get("PORTAL_DATABASE_URL", "")
    if not url:
        raise RuntimeError("No database URL: set PORTAL_DATABASE_URL or pass --database-url")
    for async_prefix, sync_prefix in _SYNC_DRIVERS.items():
        if url.startswith(async_prefix):
            url = sync_prefix + url[len(async_prefix) :]
            break
    # asyncpg spells it ssl=, libpq spells it sslmode=
    return url.replace("ssl=require", "sslmode=require")


def run_offline() -> None:
    """Emit the migration SQL to stdout (``sitedesk migrate --sql``)."""
    context.configure(
        url=_database_url(),
        target_metadata=Base.metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, target_metadata=Base.metadata, compare_type=True)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()
    logger.info("Website store schema is at %s", context.get_head_revision())


if context.is_offline_mode():
    run_offline()
else:
    run_online()
