"""Calendar arithmetic for billing due dates.

Pure functions only: every function takes the reference time explicitly and
never reads the system clock, so that the billing state machine stays
deterministic under test.

Month rollover rule
-------------------
Adding months keeps the day-of-month.  When the target month is shorter than
that day, the surplus days carry into the following month instead of being
clamped.  For example::

    add_months(datetime(2024, 1, 31), 1) == datetime(2024, 3, 2)   # leap year
    add_months(datetime(2023, 1, 31), 1) == datetime(2023, 3, 3)
    add_months(datetime(2024, 3, 31), 1) == datetime(2024, 5, 1)

This matches how the existing stored due dates were computed, and it is the
only month arithmetic used anywhere in the code base.
"""

from __future__ import annotations

import calendar
import logging
import math
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from billing_engine.errors import InvalidCycleError

if TYPE_CHECKING:
    from billing_engine.models.billing import BillingRecord

logger = logging.getLogger(__name__)

# Window after deployment during which the first payment is not yet required.
GRACE_PERIOD_DAYS = 5

_SECONDS_PER_DAY = 86_400


class BillingCycle(str, Enum):
    """Recurring interval that governs how far ``due_at`` advances."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


_CYCLE_MONTHS: dict[BillingCycle, int] = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.YEARLY: 12,
}


def parse_cycle(value: BillingCycle | str | None, *, strict: bool = True) -> BillingCycle:
    """Coerce *value* to a :class:`BillingCycle`.

    With ``strict=True`` an unknown value raises :class:`InvalidCycleError`.
    With ``strict=False`` it falls back to monthly, which keeps rows written
    by newer code (with cycles this version does not know) readable.  The
    fallback is logged rather than applied silently.
    """
    if isinstance(value, BillingCycle):
        return value
    if isinstance(value, str):
        normalised = value.strip().lower()
        try:
            return BillingCycle(normalised)
        except ValueError:
            pass
    if strict:
        raise InvalidCycleError(value)
    logger.warning("Unknown billing cycle %r; falling back to monthly", value)
    return BillingCycle.MONTHLY


def add_days(moment: datetime, days: int) -> datetime:
    """Return *moment* shifted by *days* whole days (may be negative)."""
    return moment + timedelta(days=days)


def add_months(moment: datetime, months: int) -> datetime:
    """Return *moment* shifted by *months* calendar months.

    Day overflow carries into the next month (see module docstring).
    """
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]

    if moment.day <= last_day:
        return moment.replace(year=year, month=month)

    overflow = moment.day - last_day
    return moment.replace(year=year, month=month, day=last_day) + timedelta(days=overflow)


def next_due_date(from_time: datetime, cycle: BillingCycle | str) -> datetime:
    """Return the payment deadline one billing cycle after *from_time*."""
    resolved = parse_cycle(cycle, strict=False)
    return add_months(from_time, _CYCLE_MONTHS[resolved])


def days_remaining(due_date: datetime, now: datetime) -> int:
    """Whole days until *due_date*, rounded up; negative once overdue."""
    return math.ceil((due_date - now).total_seconds() / _SECONDS_PER_DAY)


def initial_billing(
    now: datetime,
    plan: str | None = None,
    price: float | None = None,
    cycle: BillingCycle | str = BillingCycle.MONTHLY,
) -> BillingRecord:
    """Build the billing record for a website that was just deployed.

    The record starts PENDING.  The grace deadline doubles as the first due
    date.
    """
    from billing_engine.models.billing import BillingRecord, BillingStatus

    grace_ends_at = add_days(now, GRACE_PERIOD_DAYS)
    return BillingRecord(
        status=BillingStatus.PENDING,
        plan=plan,
        price=price,
        billing_cycle=parse_cycle(cycle),
        activated_at=now,
        due_at=grace_ends_at,
        grace_ends_at=grace_ends_at,
    )
