"""Billing reconciliation: apply time-driven billing transitions.

One :meth:`BillingReconciler.run` call:

1. Fetches the candidate set from the store.  The predicate (PENDING past
   grace, or ACTIVE past due) runs in the database.
2. Processes every candidate independently under a bounded semaphore.  For
   each one it loads a fresh record, re-evaluates the transition, applies it,
   and writes it back conditionally on the prior status and version.
3. Sends exactly one notification for each transition whose write
   succeeded.  Delivery failures are logged and never undo the transition.
4. Returns a :class:`ReconciliationSummary` and exports its counters to
   Prometheus.

Only a failure to fetch the candidate set aborts a run
(:class:`StoreUnavailableError`).  Per-record failures are logged with the
website id, prior status and evaluation time, then counted.

Running twice with the same ``now`` is a no-op the second time because the
guard conditions are false once the transition is stored.  Overlapping runs
are safe because the conditional write lets only one writer apply a given
transition; the loser sees a conflict and does not notify.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from billing_engine.errors import StoreUnavailableError, WebsiteNotFoundError
from billing_engine.models.billing import TransitionDecision
from billing_engine.models.website import WebsiteBillingView
from pydantic import BaseModel

from portal_api.middleware.prometheus import observe_reconciliation_run
from portal_api.services.notification_gateway import BillingNotice, NotificationGateway
from portal_api.services.website_store import RunHistorySink, WebsiteStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RecordOutcome(str, Enum):
    """What happened to one candidate during a run."""

    SUSPENDED = "suspended"
    OVERDUE = "overdue"
    SKIPPED = "skipped"
    CONFLICT = "conflict"
    ERROR = "error"


class ReconciliationSummary(BaseModel):
    """Counters for one reconciliation run."""

    trigger: str = "manual"
    started_at: datetime
    finished_at: datetime | None = None
    candidates: int = 0
    pending_to_suspended: int = 0
    active_to_overdue: int = 0
    errors: int = 0
    conflicts: int = 0
    skipped: int = 0
    notification_failures: int = 0

    def counts(self) -> dict[str, int]:
        """Counter fields only, keyed by attribute name."""
        return self.model_dump(exclude={"trigger", "started_at", "finished_at"})

    def to_dict(self) -> dict[str, Any]:
        """JSON rendering returned by the manual trigger and the CLI."""
        return {
            "pendingToSuspended": self.pending_to_suspended,
            "activeToOverdue": self.active_to_overdue,
            "errors": self.errors,
            "candidates": self.candidates,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "notificationFailures": self.notification_failures,
            "trigger": self.trigger,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BillingReconciler:
    """Drive the billing state machine over every due website.

    Parameters
    ----------
    store:
        Candidate lookup and conditional single-record writes.
    notifier:
        Billing email gateway.
    max_concurrency:
        Upper bound on records processed at the same time.
    store_timeout:
        Seconds allowed for each store call.
    notification_timeout:
        Seconds allowed for each notification send.
    run_log:
        Optional sink that persists each run summary.
    clock:
        Source for ``finished_at`` only; transition decisions always use the
        ``now`` passed to :meth:`run`.
    """

    def __init__(
        self,
        store: WebsiteStore,
        notifier: NotificationGateway,
        *,
        max_concurrency: int = 8,
        store_timeout: float = 10.0,
        notification_timeout: float = 10.0,
        run_log: RunHistorySink | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")
        self._store = store
        self._notifier = notifier
        self._max_concurrency = max_concurrency
        self._store_timeout = store_timeout
        self._notification_timeout = notification_timeout
        self._run_log = run_log
        self._clock = clock

    async def run(self, now: datetime, trigger: str = "manual") -> ReconciliationSummary:
        """Reconcile every candidate due at *now*.

        Raises
        ------
        StoreUnavailableError
            If the candidate set cannot be fetched.  Nothing has been
            changed in that case.
        """
        summary = ReconciliationSummary(trigger=trigger, started_at=now)
        logger.info("Billing reconciliation started: trigger=%s now=%s", trigger, now.isoformat())
        started = time.monotonic()

        try:
            candidates = await self._store_call(self._store.find_billing_candidates(now))
        except TimeoutError as exc:
            logger.error("Billing candidate fetch timed out after %.1fs", self._store_timeout)
            observe_reconciliation_run(trigger, None, time.monotonic() - started)
            raise StoreUnavailableError("Billing candidate fetch timed out") from exc
        except StoreUnavailableError:
            logger.error("Billing reconciliation aborted: store unavailable (trigger=%s)", trigger)
            observe_reconciliation_run(trigger, None, time.monotonic() - started)
            raise

        summary.candidates = len(candidates)
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _bounded(view: WebsiteBillingView) -> tuple[RecordOutcome, bool]:
            async with semaphore:
                return await self._process(view, now)

        results = await asyncio.gather(*(_bounded(view) for view in candidates))

        for outcome, notification_failed in results:
            if outcome is RecordOutcome.SUSPENDED:
                summary.pending_to_suspended += 1
            elif outcome is RecordOutcome.OVERDUE:
                summary.active_to_overdue += 1
            elif outcome is RecordOutcome.CONFLICT:
                summary.conflicts += 1
            elif outcome is RecordOutcome.SKIPPED:
                summary.skipped += 1
            else:
                summary.errors += 1
            if notification_failed:
                summary.notification_failures += 1

        summary.finished_at = self._clock()
        logger.info(
            "Billing reconciliation complete: trigger=%s candidates=%d suspended=%d overdue=%d "
            "errors=%d conflicts=%d skipped=%d notification_failures=%d",
            trigger,
            summary.candidates,
            summary.pending_to_suspended,
            summary.active_to_overdue,
            summary.errors,
            summary.conflicts,
            summary.skipped,
            summary.notification_failures,
        )
        observe_reconciliation_run(trigger, summary.counts(), time.monotonic() - started)

        await self._record_run(summary)
        return summary

    async def find_upcoming_due(self, now: datetime, days_ahead: int = 3) -> list[WebsiteBillingView]:
        """Return ACTIVE websites due within *days_ahead* days.  No state changes."""
        upcoming = await self._store_call(self._store.find_upcoming_due(now, days_ahead=days_ahead))
        for view in upcoming:
            logger.info(
                "Billing due soon: website=%s name=%r due_at=%s",
                view.website_id,
                view.name,
                view.due_at.isoformat() if view.due_at else None,
            )
        return upcoming

    # -- Per-record processing ------------------------------------------

    async def _process(self, view: WebsiteBillingView, now: datetime) -> tuple[RecordOutcome, bool]:
        website_id = view.website_id

        try:
            snapshot = await self._store_call(self._store.load_billing(website_id))
        except WebsiteNotFoundError:
            logger.info("Website %s no longer has a billing record; skipping", website_id)
            return RecordOutcome.SKIPPED, False
        except Exception as exc:
            logger.error(
                "Failed to load billing: website=%s listed_status=%s now=%s error=%s",
                website_id,
                view.billing_status.value,
                now.isoformat(),
                exc,
                exc_info=True,
                extra={"website_id": website_id},
            )
            return RecordOutcome.ERROR, False

        record = snapshot.record
        prior_status = record.status
        decision: TransitionDecision | None = None
        try:
            decision = record.evaluate_transition(now)
            if decision is TransitionDecision.NO_CHANGE:
                logger.debug("Website %s already resolved (status=%s); skipping", website_id, prior_status.value)
                return RecordOutcome.SKIPPED, False
            record.apply_transition(decision, now)
            saved = await self._store_call(
                self._store.save_billing(
                    website_id,
                    record,
                    expected_status=prior_status,
                    expected_version=snapshot.version,
                )
            )
        except Exception as exc:
            logger.error(
                "Failed to apply billing transition: website=%s prior_status=%s decision=%s now=%s error=%s",
                website_id,
                prior_status.value,
                decision.value if decision is not None else None,
                now.isoformat(),
                exc,
                exc_info=True,
                extra={"website_id": website_id},
            )
            return RecordOutcome.ERROR, False

        if not saved:
            logger.debug(
                "Billing for website %s changed concurrently (prior_status=%s version=%d); not applying",
                website_id,
                prior_status.value,
                snapshot.version,
            )
            return RecordOutcome.CONFLICT, False

        logger.info(
            "Billing transition applied: website=%s %s -> %s at %s",
            website_id,
            prior_status.value,
            record.status.value,
            now.isoformat(),
            extra={"website_id": website_id, "billing_status": record.status.value},
        )
        delivered = await self._notify(decision, BillingNotice.from_snapshot(snapshot))
        outcome = RecordOutcome.SUSPENDED if decision is TransitionDecision.TO_SUSPENDED else RecordOutcome.OVERDUE
        return outcome, not delivered

    async def _notify(self, decision: TransitionDecision, notice: BillingNotice) -> bool:
        if decision is TransitionDecision.TO_SUSPENDED:
            send = self._notifier.send_suspended
        else:
            send = self._notifier.send_overdue

        try:
            await asyncio.wait_for(send(notice), timeout=self._notification_timeout)
        except TimeoutError:
            logger.warning(
                "Billing notification timed out after %.1fs: website=%s status=%s",
                self._notification_timeout,
                notice.website_id,
                notice.status.value,
                extra={"website_id": notice.website_id},
            )
            return False
        except Exception as exc:
            logger.warning(
                "Billing notification failed: website=%s status=%s error=%s",
                notice.website_id,
                notice.status.value,
                exc,
                extra={"website_id": notice.website_id},
            )
            return False
        return True

    # -- Helpers ---------------------------------------------------------

    async def _store_call(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self._store_timeout)

    async def _record_run(self, summary: ReconciliationSummary) -> None:
        if self._run_log is None:
            return
        try:
            await self._run_log.record_run(
                trigger=summary.trigger,
                run_at=summary.started_at,
                finished_at=summary.finished_at,
                counts=summary.counts(),
            )
        except Exception as exc:
            logger.error("Failed to record reconciliation run history: %s", exc, exc_info=True)
