"""Background scheduler for the billing reconciliation run.

Runs as an ``asyncio`` background task.  Every poll interval it reads the
current time once, compares it with the next due run computed from a cron
expression, and when due calls ``reconciler.run(now)`` with that same
``now``.  A failed run is logged and the schedule moves on to the next
slot; only cancellation ends the loop.  Cron support covers the minute,
hour and day-of-week fields.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, time, timedelta

from billing_engine.errors import StoreUnavailableError

from portal_api.services.billing_reconciler import BillingReconciler, ReconciliationSummary

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Cron expression helpers
# ---------------------------------------------------------------------------

_ALIASES = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * 0",
}

_SUPPORTED = (
    "Supported: minute, hour and day-of-week fields with numbers, lists, "
    "ranges and */N steps ('0 2 * * *', '*/15 * * * *', '0 9 * * 1-5'), "
    "plus @hourly, @daily, @weekly"
)


def _unsupported(cron_expression: str) -> ValueError:
    return ValueError(f"Unsupported cron expression: '{cron_expression}'. {_SUPPORTED}.")


def _parse_field(token: str, field: str, upper: int, cron_expression: str) -> frozenset[int]:
    values: set[int] = set()
    for part in token.split(","):
        base, slash, step_text = part.partition("/")
        step = 1
        if slash:
            if not step_text.isdigit() or int(step_text) == 0:
                raise _unsupported(cron_expression)
            step = int(step_text)

        if base == "*":
            low, high = 0, upper
        elif base.isdigit():
            low = int(base)
            high = upper if slash else low
        elif "-" in base and all(bound.isdigit() for bound in base.split("-", 1)):
            low, high = (int(bound) for bound in base.split("-", 1))
            if low > high:
                raise _unsupported(cron_expression)
        else:
            raise _unsupported(cron_expression)

        for bound in (low, high):
            if bound > upper:
                raise ValueError(f"Cron {field} {bound} out of range in '{cron_expression}'")
        values.update(range(low, high + 1, step))
    return frozenset(values)


def parse_cron(cron_expression: str) -> tuple[frozenset[int], frozenset[int], frozenset[int]]:
    """Return ``(minutes, hours, days_of_week)`` for *cron_expression*.

    Day-of-week uses cron numbering (0 = Sunday).  Day-of-month and month
    must be ``*``.
    """
    expr = _ALIASES.get(cron_expression.strip(), cron_expression.strip())
    fields = expr.split()
    if len(fields) != 5 or fields[2] != "*" or fields[3] != "*":
        raise _unsupported(cron_expression)

    minutes = _parse_field(fields[0], "minute", 59, cron_expression)
    hours = _parse_field(fields[1], "hour", 23, cron_expression)
    days_of_week = _parse_field(fields[4], "day-of-week", 6, cron_expression)
    return minutes, hours, days_of_week


def compute_next_run(cron_expression: str, from_time: datetime) -> datetime:
    """Return the first scheduled time strictly after *from_time*.

    Raises
    ------
    ValueError
        If the expression is outside the supported subset or a field is out
        of range.
    """
    minutes, hours, days_of_week = parse_cron(cron_expression)

    for offset in range(8):
        day = from_time.date() + timedelta(days=offset)
        # Python: Monday=0 ... Sunday=6.  Cron: Sunday=0 ... Saturday=6.
        if (day.weekday() + 1) % 7 not in days_of_week:
            continue
        for hour in sorted(hours):
            for minute in sorted(minutes):
                candidate = datetime.combine(day, time(hour, minute), tzinfo=from_time.tzinfo)
                if candidate > from_time:
                    return candidate

    raise _unsupported(cron_expression)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BillingScheduler:
    """AsyncIO background task that triggers billing reconciliation.

    Parameters
    ----------
    reconciler:
        The reconciler to invoke.
    cron_expression:
        When to run; defaults to daily at 02:00 UTC.
    poll_seconds:
        How often to check whether a run is due.
    clock:
        Time source.  The value it returns is passed unchanged to
        ``reconciler.run``.
    """

    def __init__(
        self,
        reconciler: BillingReconciler,
        cron_expression: str = "0 2 * * *",
        poll_seconds: float = 60.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        # Fail fast on a bad expression rather than on the first tick.
        compute_next_run(cron_expression, clock())
        self._reconciler = reconciler
        self._cron = cron_expression
        self._poll_seconds = poll_seconds
        self._clock = clock
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._next_run_at: datetime | None = None
        self._last_summary: ReconciliationSummary | None = None

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active and its task is still alive."""
        return self._running and self._task is not None and not self._task.done()

    @property
    def next_run_at(self) -> datetime | None:
        return self._next_run_at

    @property
    def last_summary(self) -> ReconciliationSummary | None:
        return self._last_summary

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("BillingScheduler already running; ignoring start()")
            return
        self._running = True
        self._next_run_at = compute_next_run(self._cron, self._clock())
        self._task = asyncio.create_task(self._run_loop())
        logger.info("BillingScheduler started (cron=%r, next_run_at=%s)", self._cron, self._next_run_at.isoformat())

    async def stop(self) -> None:
        """Stop the scheduler; an in-flight run is cancelled between records."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("BillingScheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await self.tick()
            await asyncio.sleep(self._poll_seconds)

    async def tick(self) -> ReconciliationSummary | None:
        """Run reconciliation if it is due.  Returns the summary when a run happened."""
        now = self._clock()
        if self._next_run_at is None:
            self._next_run_at = compute_next_run(self._cron, now)
        if now < self._next_run_at:
            return None

        # Advance first so a failing run is retried on the next scheduled slot.
        self._next_run_at = compute_next_run(self._cron, now)
        try:
            summary = await self._reconciler.run(now, trigger="scheduled")
        except StoreUnavailableError as exc:
            logger.error("Scheduled billing reconciliation skipped: %s (next_run_at=%s)", exc, self._next_run_at)
            return None
        except Exception as exc:
            logger.error(
                "Scheduled billing reconciliation failed: %s (next_run_at=%s)",
                exc,
                self._next_run_at,
                exc_info=True,
            )
            return None
        self._last_summary = summary
        return summary
