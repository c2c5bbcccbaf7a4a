"""Exception taxonomy for billing operations.

Validation errors subclass ``ValueError`` so that the API layer maps them to
HTTP 400 alongside other malformed input.  Store and notification errors are
separate so that the reconciler can tell a per-record failure from a failure
to begin a run at all.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all billing errors."""


class BillingValidationError(BillingError, ValueError):
    """Bad input to a billing operation (rejected synchronously)."""


class InvalidCycleError(BillingValidationError):
    """Billing cycle outside ``monthly`` / ``quarterly`` / ``yearly``."""

    def __init__(self, value: object) -> None:
        super().__init__(f"Invalid billing cycle: {value!r}. Expected one of: monthly, quarterly, yearly.")
        self.value = value


class InvalidAmountError(BillingValidationError):
    """Payment amount that is not strictly positive."""

    def __init__(self, amount: object) -> None:
        super().__init__(f"Payment amount must be greater than zero, got {amount!r}")
        self.amount = amount


class InvalidStatusError(BillingValidationError):
    """Billing status outside the known enum domain."""

    def __init__(self, value: object) -> None:
        super().__init__(f"Invalid billing status: {value!r}")
        self.value = value


class InvalidTransitionError(BillingValidationError):
    """A transition decision that does not apply to the record's current status."""


class WebsiteNotFoundError(BillingError, LookupError):
    """The website, or its billing record, does not exist."""

    def __init__(self, website_id: str, reason: str = "not found") -> None:
        super().__init__(f"Website {website_id} {reason}")
        self.website_id = website_id


class ConcurrencyConflictError(BillingError):
    """An optimistic-concurrency check failed during a billing write."""

    def __init__(self, website_id: str, expected_status: str | None = None) -> None:
        super().__init__(
            f"Billing record for website {website_id} changed concurrently (expected status {expected_status})"
        )
        self.website_id = website_id
        self.expected_status = expected_status


class NotificationDeliveryError(BillingError):
    """Outbound billing notification could not be delivered."""


class StoreUnavailableError(BillingError):
    """The website store cannot be reached; aborts a reconciliation run."""
