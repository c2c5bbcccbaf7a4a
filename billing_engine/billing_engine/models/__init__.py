"""Domain models for the billing engine."""

from billing_engine.clock import BillingCycle
from billing_engine.models.billing import (
    BillingRecord,
    BillingStatus,
    PaymentEntry,
    TransitionDecision,
    format_billing_status,
    parse_status,
)
from billing_engine.models.website import BillingSnapshot, Contact, WebsiteBillingView, WebsiteStatus

__all__ = [
    "BillingCycle",
    "BillingRecord",
    "BillingSnapshot",
    "BillingStatus",
    "Contact",
    "PaymentEntry",
    "TransitionDecision",
    "WebsiteBillingView",
    "WebsiteStatus",
    "format_billing_status",
    "parse_status",
]
