"""SQLAlchemy 2.0 ORM table definitions for the SiteDesk state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that also round-trips through SQLite.

    SQLite stores datetimes without an offset; values read back are tagged
    as UTC so that comparisons against aware ``now`` values keep working.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all SiteDesk tables."""


# ---------------------------------------------------------------------------
# Websites
# ---------------------------------------------------------------------------


class WebsiteTable(Base):
    """A client website project and its embedded billing record.

    The ``billing_*`` columns are NULL until the website is first deployed.
    ``billing_version`` is bumped on every billing write and is the
    optimistic-concurrency token for conditional updates.
    """

    __tablename__ = "websites"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    project_type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="CREATED")
    contact_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    contact_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    domain: Mapped[str | None] = mapped_column(String(253), nullable=True)
    deployment_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    deployed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    billing_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    billing_plan: Mapped[str | None] = mapped_column(String(128), nullable=True)
    billing_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    billing_cycle: Mapped[str | None] = mapped_column(String(16), nullable=True)
    billing_activated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    billing_due_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    billing_grace_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    billing_last_payment_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    billing_suspended_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    billing_payment_history: Mapped[list[dict[str, Any]] | None] = mapped_column(_JsonType, nullable=True)
    billing_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "billing_status IS NULL OR billing_status IN ('PENDING', 'ACTIVE', 'OVERDUE', 'SUSPENDED')",
            name="ck_websites_billing_status",
        ),
        CheckConstraint("billing_price IS NULL OR billing_price >= 0", name="ck_websites_billing_price"),
        Index("ix_websites_user_status", "user_id", "status"),
        Index("ix_websites_billing_status", "billing_status"),
        Index("ix_websites_billing_due_at", "billing_due_at"),
        Index("ix_websites_billing_grace_ends_at", "billing_grace_ends_at"),
    )


# ---------------------------------------------------------------------------
# Reconciliation run history
# ---------------------------------------------------------------------------


class ReconciliationRunTable(Base):
    """One row per billing reconciliation pass, for operator review."""

    __tablename__ = "billing_reconciliation_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)
    run_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    candidates: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_to_suspended: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_to_overdue: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conflicts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notification_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (Index("ix_billing_recon_runs_run_at", "run_at"),)


# ---------------------------------------------------------------------------
# Rate-limit counters
# ---------------------------------------------------------------------------


class RateLimitCounterTable(Base):
    """Fixed-window request counters shared by every API replica.

    Each row counts hits for one key within one window.  ``expires_at`` is
    the explicit TTL; expired rows are ignored by reads and purged lazily.
    """

    __tablename__ = "rate_limit_counters"

    key: Mapped[str] = mapped_column(String(256), nullable=False)
    window_start: Mapped[int] = mapped_column(BigInteger, nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("key", "window_start"),
        Index("ix_rate_limit_counters_expires_at", "expires_at"),
    )
