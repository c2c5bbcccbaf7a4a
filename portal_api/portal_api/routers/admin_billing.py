"""Operator endpoints for website billing.

Provides the manual reconciliation trigger, administrative billing
overrides, manual payment recording, deployment (which initializes
billing), and read-only reports: the website listing, upcoming due
dates, status counts and run history.  Every route requires the operator token.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, ConfigDict, Field

from portal_api.dependencies import AdminDep, NotifierDep, NowDep, ReconcilerDep, SessionDep, SettingsDep
from portal_api.services.website_billing_service import WebsiteBillingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin-billing"], dependencies=[AdminDep])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class WebsiteCreateRequest(BaseModel):
    """Register a website for an approved request."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=100)
    user_id: str = Field(..., min_length=1, alias="userId")
    request_id: str = Field(..., min_length=1, alias="requestId")
    project_type: str = Field(..., min_length=1, alias="projectType")
    contact_email: str | None = Field(None, alias="contactEmail")
    contact_name: str | None = Field(None, alias="contactName")
    domain: str | None = None


class DeployRequest(BaseModel):
    """Mark a website deployed; billing terms apply only on first deploy."""

    model_config = ConfigDict(populate_by_name=True)

    deployment_url: str | None = Field(None, alias="deploymentUrl")
    plan: str | None = None
    price: float | None = Field(None, ge=0)
    billing_cycle: str = Field("monthly", alias="billingCycle")


class BillingUpdateRequest(BaseModel):
    """Administrative override.  Omitted fields are left unchanged."""

    model_config = ConfigDict(populate_by_name=True)

    plan: str | None = None
    price: float | None = None
    billing_cycle: str | None = Field(None, alias="billingCycle")
    status: str | None = None


class PaymentRequest(BaseModel):
    """A manually received payment."""

    model_config = ConfigDict(populate_by_name=True)

    amount: float
    method: str | None = Field(None, max_length=64)
    transaction_id: str | None = Field(None, alias="transactionId", max_length=128)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@router.post("/billing/reconcile")
async def trigger_reconciliation(reconciler: ReconcilerDep, now: NowDep) -> dict[str, Any]:
    """Run billing reconciliation now and return the run summary."""
    summary = await reconciler.run(now, trigger="manual")
    return summary.to_dict()


@router.get("/billing/upcoming")
async def upcoming_due(
    reconciler: ReconcilerDep,
    settings: SettingsDep,
    now: NowDep,
    days_ahead: int | None = Query(None, ge=1, le=60),
) -> list[dict[str, Any]]:
    """List ACTIVE websites whose payment is due within the window."""
    window = days_ahead or settings.upcoming_due_days
    views = await reconciler.find_upcoming_due(now, days_ahead=window)
    return [
        {
            "websiteId": view.website_id,
            "name": view.name,
            "dueAt": view.due_at.isoformat() if view.due_at else None,
            "contactEmail": view.contact.email,
        }
        for view in views
    ]


@router.get("/billing/stats")
async def billing_stats(
    session: SessionDep,
    settings: SettingsDep,
    now: NowDep,
    user_id: str | None = Query(None, alias="userId"),
) -> dict[str, Any]:
    """Website counts per billing status."""
    service = WebsiteBillingService(session)
    return await service.stats(now, days_ahead=settings.upcoming_due_days, user_id=user_id)


@router.get("/billing/runs")
async def reconciliation_runs(
    session: SessionDep,
    limit: int = Query(20, ge=1, le=200),
) -> list[dict[str, Any]]:
    """Most recent reconciliation runs, newest first."""
    return await WebsiteBillingService(session).list_runs(limit=limit)


# ---------------------------------------------------------------------------
# Websites
# ---------------------------------------------------------------------------


@router.get("/websites")
async def list_websites(
    session: SessionDep,
    billing_status: str | None = Query(None, alias="billingStatus"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> list[dict[str, Any]]:
    """Websites newest first, optionally filtered by billing status."""
    service = WebsiteBillingService(session)
    return await service.list_websites(billing_status, limit=limit, offset=offset)


@router.post("/websites", status_code=201)
async def register_website(body: WebsiteCreateRequest, session: SessionDep) -> dict[str, Any]:
    return await WebsiteBillingService(session).register_website(
        name=body.name,
        user_id=body.user_id,
        request_id=body.request_id,
        project_type=body.project_type,
        contact_email=body.contact_email,
        contact_name=body.contact_name,
        domain=body.domain,
    )


@router.post("/websites/{website_id}/deploy")
async def deploy_website(
    website_id: str,
    body: DeployRequest,
    session: SessionDep,
    notifier: NotifierDep,
    now: NowDep,
) -> dict[str, Any]:
    """Mark the website deployed.  The first deploy starts the billing grace period."""
    service = WebsiteBillingService(session, notifier)
    return await service.deploy_website(
        website_id,
        now,
        deployment_url=body.deployment_url,
        plan=body.plan,
        price=body.price,
        billing_cycle=body.billing_cycle,
    )


@router.get("/websites/{website_id}/billing")
async def get_billing(website_id: str, session: SessionDep, now: NowDep) -> dict[str, Any]:
    return await WebsiteBillingService(session).get_billing(website_id, now)


@router.patch("/websites/{website_id}/billing")
async def update_billing(
    website_id: str,
    body: BillingUpdateRequest,
    session: SessionDep,
    now: NowDep,
) -> dict[str, Any]:
    """Override plan, price, cycle or status.  Due and grace dates are not recomputed."""
    service = WebsiteBillingService(session)
    return await service.update_billing(
        website_id,
        now,
        plan=body.plan,
        price=body.price,
        billing_cycle=body.billing_cycle,
        status=body.status,
    )


@router.post("/websites/{website_id}/payments", status_code=201)
async def record_payment(
    website_id: str,
    body: PaymentRequest,
    session: SessionDep,
    now: NowDep,
) -> dict[str, Any]:
    """Record a payment; billing becomes ACTIVE and the due date moves one cycle past now."""
    service = WebsiteBillingService(session)
    return await service.record_payment(
        website_id,
        body.amount,
        now,
        method=body.method,
        transaction_id=body.transaction_id,
    )
