"""WebsiteStore: the reconciler's view of persisted websites.

Every call opens its own short-lived session and commits before returning,
so one record's read-modify-write never shares a transaction with another
record.  Failures to fetch the candidate set, whether raised by SQLAlchemy
or by the driver as a connection-level ``OSError``, are reported as
:class:`StoreUnavailableError`; everything else propagates unchanged and is
handled per record by the reconciler.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from billing_engine.errors import StoreUnavailableError
from billing_engine.models.billing import BillingRecord, BillingStatus
from billing_engine.models.website import BillingSnapshot, WebsiteBillingView
from billing_engine.state.database import transaction
from billing_engine.state.repository import ReconciliationRunRepository, WebsiteRepository
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


@runtime_checkable
class WebsiteStore(Protocol):
    """Protocol for candidate lookup and single-record conditional writes."""

    async def find_billing_candidates(self, now: datetime) -> list[WebsiteBillingView]: ...

    async def find_upcoming_due(self, now: datetime, days_ahead: int = 3) -> list[WebsiteBillingView]: ...

    async def load_billing(self, website_id: str) -> BillingSnapshot: ...

    async def save_billing(
        self,
        website_id: str,
        record: BillingRecord,
        expected_status: BillingStatus,
        expected_version: int | None = None,
    ) -> bool: ...


class RunHistorySink(Protocol):
    """Protocol for persisting reconciliation run summaries."""

    async def record_run(
        self,
        *,
        trigger: str,
        run_at: datetime,
        finished_at: datetime | None,
        counts: dict[str, int],
    ) -> None: ...


class SqlWebsiteStore:
    """:class:`WebsiteStore` backed by the SQLAlchemy repositories.

    Parameters
    ----------
    session_factory:
        An ``async_sessionmaker``; one session is opened per call.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def find_billing_candidates(self, now: datetime) -> list[WebsiteBillingView]:
        try:
            async with self._session_factory() as session:
                return await WebsiteRepository(session).find_billing_candidates(now)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Billing candidate fetch failed: %s", exc, exc_info=True)
            raise StoreUnavailableError(f"Cannot fetch billing candidates: {exc}") from exc

    async def find_upcoming_due(self, now: datetime, days_ahead: int = 3) -> list[WebsiteBillingView]:
        try:
            async with self._session_factory() as session:
                return await WebsiteRepository(session).find_upcoming_due(now, days_ahead=days_ahead)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(f"Cannot fetch upcoming due websites: {exc}") from exc

    async def load_billing(self, website_id: str) -> BillingSnapshot:
        async with self._session_factory() as session:
            return await WebsiteRepository(session).load_billing(website_id)

    async def save_billing(
        self,
        website_id: str,
        record: BillingRecord,
        expected_status: BillingStatus,
        expected_version: int | None = None,
    ) -> bool:
        async with transaction(self._session_factory) as session:
            return await WebsiteRepository(session).save_billing(
                website_id,
                record,
                expected_status=expected_status,
                expected_version=expected_version,
            )

    async def record_run(
        self,
        *,
        trigger: str,
        run_at: datetime,
        finished_at: datetime | None,
        counts: dict[str, Any],
    ) -> None:
        async with transaction(self._session_factory) as session:
            await ReconciliationRunRepository(session).record_run(
                trigger=trigger,
                run_at=run_at,
                finished_at=finished_at,
                counts=counts,
            )
