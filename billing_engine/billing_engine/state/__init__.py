"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from billing_engine.state.database import (
    create_session_factory,
    get_engine,
    is_local_url,
    prepare_schema,
    transaction,
    upgrade_schema,
)
from billing_engine.state.repository import (
    RateLimitRepository,
    ReconciliationRunRepository,
    WebsiteRepository,
)

__all__ = [
    "RateLimitRepository",
    "ReconciliationRunRepository",
    "WebsiteRepository",
    "create_session_factory",
    "get_engine",
    "is_local_url",
    "prepare_schema",
    "transaction",
    "upgrade_schema",
]
