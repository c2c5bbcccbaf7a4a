"""Billing record model and its lifecycle state machine.

A ``BillingRecord`` is attached to a website when the website first reaches
``DEPLOYED``.  It moves through four states::

    PENDING --payment--> ACTIVE --due date passes--> OVERDUE
       |                   ^                            |
       | grace expires     +---------payment------------+
       v                   |
    SUSPENDED -----payment-+

Automated evaluation only ever produces PENDING -> SUSPENDED and
ACTIVE -> OVERDUE.  OVERDUE and SUSPENDED are stable until a payment is
recorded or an administrator edits the record.

The decision (:meth:`BillingRecord.evaluate_transition`) is separate from the
mutation (:meth:`BillingRecord.apply_transition`) and neither performs I/O;
persistence is the caller's job.
"""

from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from billing_engine.clock import BillingCycle, days_remaining, next_due_date, parse_cycle
from billing_engine.errors import (
    BillingValidationError,
    InvalidAmountError,
    InvalidStatusError,
    InvalidTransitionError,
)


class BillingStatus(str, Enum):
    """Lifecycle state of a website's billing."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    SUSPENDED = "SUSPENDED"


_STATUS_LABELS: dict[str, str] = {
    BillingStatus.PENDING.value: "Payment Pending",
    BillingStatus.ACTIVE.value: "Active",
    BillingStatus.OVERDUE.value: "Payment Overdue",
    BillingStatus.SUSPENDED.value: "Suspended",
}


def format_billing_status(status: BillingStatus | str) -> str:
    """Human-readable label for a billing status; unknown values pass through."""
    key = status.value if isinstance(status, BillingStatus) else str(status)
    return _STATUS_LABELS.get(key, key)


def parse_status(value: BillingStatus | str) -> BillingStatus:
    """Coerce *value* to a :class:`BillingStatus` or raise :class:`InvalidStatusError`."""
    if isinstance(value, BillingStatus):
        return value
    try:
        return BillingStatus(str(value).strip().upper())
    except ValueError as exc:
        raise InvalidStatusError(value) from exc


class TransitionDecision(str, Enum):
    """Outcome of evaluating a billing record against the current time."""

    NO_CHANGE = "no_change"
    TO_SUSPENDED = "to_suspended"
    TO_OVERDUE = "to_overdue"


class PaymentEntry(BaseModel):
    """One manually recorded payment.  Entries are never edited once written."""

    model_config = ConfigDict(frozen=True)

    amount: float = Field(..., gt=0, description="Amount paid, in the account currency.")
    date: datetime = Field(..., description="When the payment was recorded.")
    method: str | None = Field(default=None, description="Free-text payment method (bank transfer, cash...).")
    transaction_id: str | None = Field(default=None, description="External reference for the payment.")


def _is_positive_amount(amount: Any) -> bool:
    if isinstance(amount, bool):
        return False
    try:
        return math.isfinite(amount) and amount > 0
    except TypeError:
        return False


class BillingRecord(BaseModel):
    """Billing sub-entity of a deployed website."""

    model_config = ConfigDict(validate_assignment=True)

    status: BillingStatus = BillingStatus.PENDING
    plan: str | None = None
    price: float | None = Field(default=None, ge=0)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    activated_at: datetime | None = None
    due_at: datetime | None = None
    grace_ends_at: datetime | None = None
    last_payment_at: datetime | None = None
    suspended_at: datetime | None = None
    payment_history: list[PaymentEntry] = Field(default_factory=list)

    @field_validator("plan")
    @classmethod
    def _normalise_plan(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().lower()
        return value or None

    # -- Derived state ---------------------------------------------------

    @property
    def is_suspended(self) -> bool:
        return self.status == BillingStatus.SUSPENDED

    @property
    def is_overdue(self) -> bool:
        return self.status == BillingStatus.OVERDUE

    @property
    def status_label(self) -> str:
        return format_billing_status(self.status)

    def days_until_due(self, now: datetime) -> int | None:
        """Days until ``due_at`` (negative when past), or ``None`` without a due date."""
        if self.due_at is None:
            return None
        return days_remaining(self.due_at, now)

    # -- State machine ---------------------------------------------------

    def evaluate_transition(self, now: datetime) -> TransitionDecision:
        """Decide which automated transition, if any, applies at *now*.

        Rules are checked in order and the first match wins:

        1. PENDING whose grace period ended -> suspend.
        2. ACTIVE whose due date passed -> overdue.

        Anything else, including OVERDUE and SUSPENDED, is left alone.
        """
        if self.status == BillingStatus.PENDING and self.grace_ends_at is not None and self.grace_ends_at < now:
            return TransitionDecision.TO_SUSPENDED
        if self.status == BillingStatus.ACTIVE and self.due_at is not None and self.due_at < now:
            return TransitionDecision.TO_OVERDUE
        return TransitionDecision.NO_CHANGE

    def apply_transition(self, decision: TransitionDecision, now: datetime) -> None:
        """Mutate the record according to *decision*.

        Raises
        ------
        InvalidTransitionError
            If *decision* does not start from the record's current status.
        """
        if decision == TransitionDecision.NO_CHANGE:
            return

        if decision == TransitionDecision.TO_SUSPENDED:
            if self.status != BillingStatus.PENDING:
                raise InvalidTransitionError(f"Cannot suspend billing from status {self.status.value}")
            self.status = BillingStatus.SUSPENDED
            self.suspended_at = now
            return

        if decision == TransitionDecision.TO_OVERDUE:
            if self.status != BillingStatus.ACTIVE:
                raise InvalidTransitionError(f"Cannot mark billing overdue from status {self.status.value}")
            self.status = BillingStatus.OVERDUE
            return

        raise InvalidTransitionError(f"Unknown transition decision: {decision!r}")

    def record_payment(
        self,
        amount: float,
        now: datetime,
        method: str | None = None,
        transaction_id: str | None = None,
    ) -> PaymentEntry:
        """Append a payment and reactivate billing.

        Works from every status; this is the only way out of OVERDUE and
        SUSPENDED.  The next due date is one cycle after *now*.
        """
        if not _is_positive_amount(amount):
            raise InvalidAmountError(amount)

        entry = PaymentEntry(amount=amount, date=now, method=method, transaction_id=transaction_id)
        self.payment_history.append(entry)
        self.last_payment_at = now
        self.due_at = next_due_date(now, self.billing_cycle)
        self.status = BillingStatus.ACTIVE
        return entry

    def apply_admin_update(
        self,
        now: datetime,
        *,
        plan: str | None = None,
        price: float | None = None,
        billing_cycle: BillingCycle | str | None = None,
        status: BillingStatus | str | None = None,
    ) -> list[str]:
        """Apply an administrative override and return the names of changed fields.

        ``None`` leaves a field untouched.  Enum domains are still enforced.
        Suspending through this path stamps ``suspended_at``.  Due and grace
        dates are never recomputed here.
        """
        changed: list[str] = []

        if price is not None:
            if isinstance(price, bool) or not math.isfinite(price) or price < 0:
                raise BillingValidationError(f"Price must be a non-negative number, got {price!r}")
            self.price = price
            changed.append("price")

        if plan is not None:
            self.plan = plan
            changed.append("plan")

        if billing_cycle is not None:
            self.billing_cycle = parse_cycle(billing_cycle)
            changed.append("billing_cycle")

        if status is not None:
            new_status = parse_status(status)
            if new_status == BillingStatus.SUSPENDED and self.status != BillingStatus.SUSPENDED:
                self.suspended_at = now
                changed.append("suspended_at")
            self.status = new_status
            changed.append("status")

        return changed
