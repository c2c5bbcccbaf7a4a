"""Repository classes providing access to the SiteDesk state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``;
the caller is responsible for committing (or relying on the ``transaction``
context manager).
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.clock import parse_cycle
from billing_engine.errors import WebsiteNotFoundError
from billing_engine.models.billing import BillingRecord, BillingStatus, PaymentEntry, parse_status
from billing_engine.models.website import BillingSnapshot, Contact, WebsiteBillingView, WebsiteStatus
from billing_engine.state.tables import RateLimitCounterTable, ReconciliationRunTable, WebsiteTable

logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 500


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    set_: dict[str, Any],
) -> Any:
    """Dialect-aware upsert: PostgreSQL or SQLite ``ON CONFLICT DO UPDATE``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    set_:
        Column-expression mapping applied when a conflict occurs.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_update(index_elements=index_elements, set_=set_)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Row <-> domain translation
# ---------------------------------------------------------------------------


def _record_to_columns(record: BillingRecord) -> dict[str, Any]:
    """Flatten a billing record into ``websites.billing_*`` column values."""
    return {
        "billing_status": record.status.value,
        "billing_plan": record.plan,
        "billing_price": record.price,
        "billing_cycle": record.billing_cycle.value,
        "billing_activated_at": record.activated_at,
        "billing_due_at": record.due_at,
        "billing_grace_ends_at": record.grace_ends_at,
        "billing_last_payment_at": record.last_payment_at,
        "billing_suspended_at": record.suspended_at,
        "billing_payment_history": [entry.model_dump(mode="json") for entry in record.payment_history],
    }


def _record_from_row(row: WebsiteTable) -> BillingRecord:
    """Rebuild the billing record stored on *row*.

    Unknown billing cycles written by newer code fall back to monthly.
    """
    return BillingRecord(
        status=parse_status(row.billing_status),
        plan=row.billing_plan,
        price=row.billing_price,
        billing_cycle=parse_cycle(row.billing_cycle, strict=False),
        activated_at=row.billing_activated_at,
        due_at=row.billing_due_at,
        grace_ends_at=row.billing_grace_ends_at,
        last_payment_at=row.billing_last_payment_at,
        suspended_at=row.billing_suspended_at,
        payment_history=[PaymentEntry.model_validate(item) for item in row.billing_payment_history or []],
    )


def _contact_from_row(row: WebsiteTable) -> Contact:
    return Contact(email=row.contact_email, name=row.contact_name)


def _view_from_row(row: WebsiteTable) -> WebsiteBillingView:
    return WebsiteBillingView(
        website_id=row.id,
        name=row.name,
        billing_status=parse_status(row.billing_status),
        due_at=row.billing_due_at,
        grace_ends_at=row.billing_grace_ends_at,
        billing_version=row.billing_version,
        contact=_contact_from_row(row),
    )


# ---------------------------------------------------------------------------
# WebsiteRepository
# ---------------------------------------------------------------------------


class WebsiteRepository:
    """Website rows and their embedded billing record.

    Billing writes are conditional single-row updates keyed on the prior
    billing status and, when given, the ``billing_version`` token.  A write
    that matches no row is reported as a conflict rather than raised, so the
    caller decides how to treat it.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        name: str,
        user_id: str,
        request_id: str,
        project_type: str,
        contact_email: str | None = None,
        contact_name: str | None = None,
        domain: str | None = None,
        website_id: str | None = None,
    ) -> WebsiteTable:
        """Insert a new website in ``CREATED`` status without billing."""
        row = WebsiteTable(
            id=website_id or uuid.uuid4().hex,
            user_id=user_id,
            request_id=request_id,
            name=name.strip(),
            project_type=project_type,
            status=WebsiteStatus.CREATED.value,
            contact_email=contact_email,
            contact_name=contact_name,
            domain=domain.strip().lower() if domain else None,
            billing_version=0,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, website_id: str) -> WebsiteTable | None:
        """Fetch a website row by id, bypassing any stale identity-map copy."""
        stmt = select(WebsiteTable).where(WebsiteTable.id == website_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_websites(
        self,
        billing_status: BillingStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WebsiteTable]:
        """Return websites ordered by creation time, newest first."""
        stmt = select(WebsiteTable)
        if billing_status is not None:
            stmt = stmt.where(WebsiteTable.billing_status == billing_status.value)
        stmt = (
            stmt.order_by(WebsiteTable.created_at.desc())
            .limit(min(limit, _MAX_PAGE_SIZE))
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark_deployed(
        self,
        website_id: str,
        deployed_at: datetime,
        deployment_url: str | None = None,
    ) -> bool:
        """Set the delivery status to ``DEPLOYED``.  Returns ``False`` if missing."""
        values: dict[str, Any] = {
            "status": WebsiteStatus.DEPLOYED.value,
            "deployed_at": deployed_at,
            "updated_at": datetime.now(UTC),
        }
        if deployment_url is not None:
            values["deployment_url"] = deployment_url
        stmt = (
            update(WebsiteTable)
            .where(WebsiteTable.id == website_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    # -- Billing ---------------------------------------------------------

    async def find_billing_candidates(self, now: datetime) -> list[WebsiteBillingView]:
        """Return websites whose stored timestamps say a transition may be due.

        The predicate mirrors :meth:`BillingRecord.evaluate_transition` and
        runs in the database so only candidates are loaded.
        """
        stmt = (
            select(WebsiteTable)
            .where(
                or_(
                    and_(
                        WebsiteTable.billing_status == BillingStatus.PENDING.value,
                        WebsiteTable.billing_grace_ends_at < now,
                    ),
                    and_(
                        WebsiteTable.billing_status == BillingStatus.ACTIVE.value,
                        WebsiteTable.billing_due_at < now,
                    ),
                )
            )
            .order_by(WebsiteTable.id)
        )
        result = await self._session.execute(stmt)
        return [_view_from_row(row) for row in result.scalars().all()]

    async def find_upcoming_due(self, now: datetime, days_ahead: int = 3) -> list[WebsiteBillingView]:
        """Return ACTIVE websites whose due date falls within the next *days_ahead* days."""
        horizon = now + timedelta(days=days_ahead)
        stmt = (
            select(WebsiteTable)
            .where(
                WebsiteTable.billing_status == BillingStatus.ACTIVE.value,
                WebsiteTable.billing_due_at > now,
                WebsiteTable.billing_due_at < horizon,
            )
            .order_by(WebsiteTable.billing_due_at)
        )
        result = await self._session.execute(stmt)
        return [_view_from_row(row) for row in result.scalars().all()]

    async def load_billing(self, website_id: str) -> BillingSnapshot:
        """Load the current billing record and its version token.

        Raises
        ------
        WebsiteNotFoundError
            If the website does not exist or has never been deployed.
        """
        row = await self.get(website_id)
        if row is None:
            raise WebsiteNotFoundError(website_id)
        if row.billing_status is None:
            raise WebsiteNotFoundError(website_id, "has no billing record")
        return BillingSnapshot(
            website_id=row.id,
            website_name=row.name,
            record=_record_from_row(row),
            version=row.billing_version,
            contact=_contact_from_row(row),
        )

    async def save_billing(
        self,
        website_id: str,
        record: BillingRecord,
        *,
        expected_status: BillingStatus,
        expected_version: int | None = None,
    ) -> bool:
        """Persist *record* only if the stored billing still matches the pre-read state.

        Returns ``True`` when the row was updated and ``False`` on a
        concurrency conflict (status or version moved underneath us, or the
        row vanished).
        """
        stmt = update(WebsiteTable).where(
            WebsiteTable.id == website_id,
            WebsiteTable.billing_status == expected_status.value,
        )
        if expected_version is not None:
            stmt = stmt.where(WebsiteTable.billing_version == expected_version)
        stmt = stmt.values(
            **_record_to_columns(record),
            billing_version=WebsiteTable.billing_version + 1,
            updated_at=datetime.now(UTC),
        ).execution_options(synchronize_session=False)

        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def initialize_billing(self, website_id: str, record: BillingRecord) -> bool:
        """Attach the first billing record.  A website is only ever initialized once.

        Returns ``False`` if the website already has billing (or is missing).
        """
        stmt = (
            update(WebsiteTable)
            .where(
                WebsiteTable.id == website_id,
                WebsiteTable.billing_status.is_(None),
            )
            .values(
                **_record_to_columns(record),
                billing_version=WebsiteTable.billing_version + 1,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def count_by_billing_status(self, user_id: str | None = None) -> dict[str, int]:
        """Return ``{status: count}`` for every billing status (zeros included)."""
        stmt = select(WebsiteTable.billing_status, func.count()).where(WebsiteTable.billing_status.is_not(None))
        if user_id is not None:
            stmt = stmt.where(WebsiteTable.user_id == user_id)
        stmt = stmt.group_by(WebsiteTable.billing_status)
        result = await self._session.execute(stmt)
        counts = {status.value: 0 for status in BillingStatus}
        for status, count in result.all():
            counts[status] = count
        return counts


# ---------------------------------------------------------------------------
# ReconciliationRunRepository
# ---------------------------------------------------------------------------


class ReconciliationRunRepository:
    """History of billing reconciliation passes."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record_run(
        self,
        *,
        trigger: str,
        run_at: datetime,
        finished_at: datetime | None,
        counts: dict[str, int],
    ) -> ReconciliationRunTable:
        """Insert one run summary row."""
        row = ReconciliationRunTable(
            trigger=trigger,
            run_at=run_at,
            finished_at=finished_at,
            candidates=counts.get("candidates", 0),
            pending_to_suspended=counts.get("pending_to_suspended", 0),
            active_to_overdue=counts.get("active_to_overdue", 0),
            errors=counts.get("errors", 0),
            conflicts=counts.get("conflicts", 0),
            skipped=counts.get("skipped", 0),
            notification_failures=counts.get("notification_failures", 0),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_recent(self, limit: int = 20) -> list[ReconciliationRunTable]:
        """Return the most recent runs, newest first."""
        stmt = (
            select(ReconciliationRunTable)
            .order_by(ReconciliationRunTable.run_at.desc(), ReconciliationRunTable.id.desc())
            .limit(min(limit, _MAX_PAGE_SIZE))
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# RateLimitRepository
# ---------------------------------------------------------------------------


class RateLimitRepository:
    """Fixed-window counters with an explicit TTL, shared across replicas."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def hit(self, key: str, window_seconds: int, now: datetime) -> int:
        """Count one hit for *key* in the window containing *now*.

        Returns the number of hits in that window including this one.
        """
        epoch = int(now.timestamp())
        window_start = epoch - epoch % window_seconds
        expires_at = datetime.fromtimestamp(window_start + window_seconds, tz=UTC)

        await _dialect_upsert(
            self._session,
            RateLimitCounterTable,
            values={
                "key": key,
                "window_start": window_start,
                "count": 1,
                "expires_at": expires_at,
            },
            index_elements=["key", "window_start"],
            set_={"count": RateLimitCounterTable.count + 1},
        )
        await self._session.flush()

        stmt = select(RateLimitCounterTable.count).where(
            RateLimitCounterTable.key == key,
            RateLimitCounterTable.window_start == window_start,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def purge_expired(self, now: datetime) -> int:
        """Delete counters whose TTL has elapsed.  Returns the number removed."""
        stmt = delete(RateLimitCounterTable).where(RateLimitCounterTable.expires_at < now)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined, return-value]
