"""Website projections used by the billing flow.

These are read-side views over the ``websites`` table.  The reconciler works
with them instead of ORM rows so that a record can be handed between
sessions (and to the notification gateway) without lazy-loading surprises.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from billing_engine.models.billing import BillingRecord, BillingStatus


class WebsiteStatus(str, Enum):
    """Delivery state of a website project."""

    CREATED = "CREATED"
    IN_PROGRESS = "IN_PROGRESS"
    REVIEW = "REVIEW"
    COMPLETED = "COMPLETED"
    DEPLOYED = "DEPLOYED"
    CANCELLED = "CANCELLED"


class Contact(BaseModel):
    """Who receives billing notices for a website."""

    email: str | None = None
    name: str | None = None


class WebsiteBillingView(BaseModel):
    """Candidate row returned by the store-side billing filter."""

    website_id: str = Field(..., min_length=1)
    name: str
    billing_status: BillingStatus
    due_at: datetime | None = None
    grace_ends_at: datetime | None = None
    billing_version: int = 0
    contact: Contact = Field(default_factory=Contact)


class BillingSnapshot(BaseModel):
    """A freshly loaded billing record together with its concurrency token."""

    website_id: str
    website_name: str
    record: BillingRecord
    version: int
    contact: Contact = Field(default_factory=Contact)
