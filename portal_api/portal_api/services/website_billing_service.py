"""Administrative billing operations and the billing access guard.

Wraps :class:`WebsiteRepository` for the request/response paths: deploying a
website (which attaches billing exactly once), manual payment recording,
administrative overrides, billing detail views and the access check that
blocks suspended websites.

Writes use the same conditional update as the reconciler, so an admin edit
racing a reconciliation run surfaces as :class:`ConcurrencyConflictError`
instead of silently overwriting the other change.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from billing_engine.clock import BillingCycle, initial_billing
from billing_engine.errors import ConcurrencyConflictError, WebsiteNotFoundError
from billing_engine.models.billing import BillingStatus, parse_status
from billing_engine.models.website import BillingSnapshot
from billing_engine.state.repository import ReconciliationRunRepository, WebsiteRepository
from billing_engine.state.tables import WebsiteTable
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from portal_api.services.notification_gateway import BillingNotice, NotificationGateway

logger = logging.getLogger(__name__)

_SUSPENDED_MESSAGE = (
    "This website has been suspended due to non-payment. Please contact support to resolve billing issues."
)
_OVERDUE_MESSAGE = "Payment is overdue. Service may be suspended soon."
_OVERDUE_STRICT_MESSAGE = "Payment is overdue. Please settle your account to continue."


class BillingAccess(BaseModel):
    """Result of the billing access check for one website."""

    website_id: str
    website_name: str
    allowed: bool
    billing_status: BillingStatus | None = None
    message: str | None = None


def billing_payload(snapshot: BillingSnapshot, now: datetime) -> dict[str, Any]:
    """Render a billing snapshot for API responses."""
    record = snapshot.record
    return {
        "websiteId": snapshot.website_id,
        "websiteName": snapshot.website_name,
        "status": record.status.value,
        "statusLabel": record.status_label,
        "plan": record.plan,
        "price": record.price,
        "billingCycle": record.billing_cycle.value,
        "activatedAt": record.activated_at.isoformat() if record.activated_at else None,
        "dueAt": record.due_at.isoformat() if record.due_at else None,
        "graceEndsAt": record.grace_ends_at.isoformat() if record.grace_ends_at else None,
        "lastPaymentAt": record.last_payment_at.isoformat() if record.last_payment_at else None,
        "suspendedAt": record.suspended_at.isoformat() if record.suspended_at else None,
        "daysUntilDue": record.days_until_due(now),
        "paymentHistory": [
            {
                "amount": entry.amount,
                "date": entry.date.isoformat(),
                "method": entry.method,
                "transactionId": entry.transaction_id,
            }
            for entry in record.payment_history
        ],
        "version": snapshot.version,
    }


def _website_payload(row: WebsiteTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "status": row.status,
        "projectType": row.project_type,
        "domain": row.domain,
        "deploymentUrl": row.deployment_url,
        "deployedAt": row.deployed_at.isoformat() if row.deployed_at else None,
        "billingStatus": row.billing_status,
        "dueAt": row.billing_due_at.isoformat() if row.billing_due_at else None,
    }


class WebsiteBillingService:
    """Billing operations for one request-scoped session.

    Parameters
    ----------
    session:
        Request-scoped session.  Write methods commit explicitly before any
        notification is sent, so an email never announces a state that was
        rolled back.
    notifier:
        Gateway for the activation email sent on first deployment.
    """

    def __init__(self, session: AsyncSession, notifier: NotificationGateway | None = None) -> None:
        self._session = session
        self._repo = WebsiteRepository(session)
        self._notifier = notifier

    async def register_website(
        self,
        *,
        name: str,
        user_id: str,
        request_id: str,
        project_type: str,
        contact_email: str | None = None,
        contact_name: str | None = None,
        domain: str | None = None,
    ) -> dict[str, Any]:
        """Create a website record for an approved request.  No billing yet."""
        row = await self._repo.create(
            name=name,
            user_id=user_id,
            request_id=request_id,
            project_type=project_type,
            contact_email=contact_email,
            contact_name=contact_name,
            domain=domain,
        )
        await self._session.commit()
        logger.info("Website registered: id=%s request=%s user=%s", row.id, request_id, user_id)
        return {"id": row.id, "name": row.name, "status": row.status, "requestId": row.request_id}

    async def deploy_website(
        self,
        website_id: str,
        now: datetime,
        *,
        deployment_url: str | None = None,
        plan: str | None = None,
        price: float | None = None,
        billing_cycle: BillingCycle | str = BillingCycle.MONTHLY,
    ) -> dict[str, Any]:
        """Mark a website deployed and attach its billing record the first time.

        Redeploying an already-billed website only refreshes the deployment
        fields; billing and its grace window are left untouched and no
        activation email is sent.
        """
        record = initial_billing(now, plan=plan, price=price, cycle=billing_cycle)

        if not await self._repo.mark_deployed(website_id, now, deployment_url=deployment_url):
            raise WebsiteNotFoundError(website_id)
        initialized = await self._repo.initialize_billing(website_id, record)
        snapshot = await self._repo.load_billing(website_id)
        await self._session.commit()

        notification_sent = False
        if initialized:
            logger.info(
                "Billing initialized: website=%s grace_ends_at=%s",
                website_id,
                record.grace_ends_at.isoformat() if record.grace_ends_at else None,
            )
            notification_sent = await self._send_activated(snapshot, deployment_url)
        else:
            logger.info("Website %s redeployed; billing already initialized", website_id)

        return {
            "billingInitialized": initialized,
            "notificationSent": notification_sent,
            "billing": billing_payload(snapshot, now),
        }

    async def record_payment(
        self,
        website_id: str,
        amount: float,
        now: datetime,
        *,
        method: str | None = None,
        transaction_id: str | None = None,
    ) -> dict[str, Any]:
        """Record a manually received payment and reactivate billing."""
        snapshot = await self._repo.load_billing(website_id)
        record = snapshot.record
        prior_status = record.status

        record.record_payment(amount, now, method=method, transaction_id=transaction_id)
        await self._save(snapshot, prior_status)

        logger.info(
            "Payment recorded: website=%s amount=%.2f prior_status=%s due_at=%s",
            website_id,
            amount,
            prior_status.value,
            record.due_at.isoformat() if record.due_at else None,
        )
        return billing_payload(snapshot.model_copy(update={"version": snapshot.version + 1}), now)

    async def update_billing(
        self,
        website_id: str,
        now: datetime,
        *,
        plan: str | None = None,
        price: float | None = None,
        billing_cycle: BillingCycle | str | None = None,
        status: BillingStatus | str | None = None,
    ) -> dict[str, Any]:
        """Apply an administrative override to the billing record."""
        snapshot = await self._repo.load_billing(website_id)
        record = snapshot.record
        prior_status = record.status

        changed = record.apply_admin_update(
            now,
            plan=plan,
            price=price,
            billing_cycle=billing_cycle,
            status=status,
        )
        if not changed:
            return billing_payload(snapshot, now)

        await self._save(snapshot, prior_status)
        logger.info(
            "Billing updated by admin: website=%s fields=%s status=%s->%s",
            website_id,
            ",".join(changed),
            prior_status.value,
            record.status.value,
        )
        return billing_payload(snapshot.model_copy(update={"version": snapshot.version + 1}), now)

    async def get_billing(self, website_id: str, now: datetime) -> dict[str, Any]:
        snapshot = await self._repo.load_billing(website_id)
        return billing_payload(snapshot, now)

    async def check_access(self, website_id: str, *, strict: bool = False) -> BillingAccess:
        """Decide whether requests for *website_id* may proceed.

        SUSPENDED is always blocked.  OVERDUE is allowed with a warning
        unless *strict*.  Websites without billing (not yet deployed) pass.
        """
        row = await self._repo.get(website_id)
        if row is None:
            raise WebsiteNotFoundError(website_id)

        if row.billing_status is None:
            return BillingAccess(website_id=row.id, website_name=row.name, allowed=True)

        status = parse_status(row.billing_status)
        if status == BillingStatus.SUSPENDED:
            return BillingAccess(
                website_id=row.id,
                website_name=row.name,
                allowed=False,
                billing_status=status,
                message=_SUSPENDED_MESSAGE,
            )
        if status == BillingStatus.OVERDUE:
            logger.warning("Website %s is overdue (strict=%s)", website_id, strict)
            return BillingAccess(
                website_id=row.id,
                website_name=row.name,
                allowed=not strict,
                billing_status=status,
                message=_OVERDUE_STRICT_MESSAGE if strict else _OVERDUE_MESSAGE,
            )
        return BillingAccess(website_id=row.id, website_name=row.name, allowed=True, billing_status=status)

    async def get_website(self, website_id: str) -> dict[str, Any]:
        row = await self._repo.get(website_id)
        if row is None:
            raise WebsiteNotFoundError(website_id)
        return _website_payload(row)

    async def list_websites(
        self,
        billing_status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Websites newest first, optionally filtered by billing status."""
        status = parse_status(billing_status) if billing_status else None
        rows = await self._repo.list_websites(billing_status=status, limit=limit, offset=offset)
        return [_website_payload(row) for row in rows]

    async def stats(self, now: datetime, days_ahead: int = 3, user_id: str | None = None) -> dict[str, Any]:
        """Counts per billing status plus the number of websites due soon."""
        counts = await self._repo.count_by_billing_status(user_id=user_id)
        upcoming = await self._repo.find_upcoming_due(now, days_ahead=days_ahead)
        return {
            "byStatus": counts,
            "total": sum(counts.values()),
            "dueWithinDays": days_ahead,
            "dueSoon": len(upcoming),
        }

    async def list_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = await ReconciliationRunRepository(self._session).list_recent(limit=limit)
        return [
            {
                "id": row.id,
                "trigger": row.trigger,
                "runAt": row.run_at.isoformat(),
                "finishedAt": row.finished_at.isoformat() if row.finished_at else None,
                "candidates": row.candidates,
                "pendingToSuspended": row.pending_to_suspended,
                "activeToOverdue": row.active_to_overdue,
                "errors": row.errors,
                "conflicts": row.conflicts,
                "skipped": row.skipped,
                "notificationFailures": row.notification_failures,
            }
            for row in rows
        ]

    # -- Helpers ---------------------------------------------------------

    async def _save(self, snapshot: BillingSnapshot, prior_status: BillingStatus) -> None:
        saved = await self._repo.save_billing(
            snapshot.website_id,
            snapshot.record,
            expected_status=prior_status,
            expected_version=snapshot.version,
        )
        if not saved:
            raise ConcurrencyConflictError(snapshot.website_id, prior_status.value)
        await self._session.commit()

    async def _send_activated(self, snapshot: BillingSnapshot, deployment_url: str | None) -> bool:
        if self._notifier is None:
            return False
        try:
            await self._notifier.send_activated(BillingNotice.from_snapshot(snapshot, deployment_url))
        except Exception as exc:
            logger.warning("Activation email failed for website %s: %s", snapshot.website_id, exc)
            return False
        return True
