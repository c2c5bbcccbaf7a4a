"""Tests for WebsiteBillingService against a real SQLite database."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from billing_engine.errors import (
    ConcurrencyConflictError,
    InvalidAmountError,
    InvalidCycleError,
    InvalidStatusError,
    NotificationDeliveryError,
    WebsiteNotFoundError,
)
from billing_engine.models.billing import BillingRecord, BillingStatus
from billing_engine.state.repository import ReconciliationRunRepository, WebsiteRepository

from portal_api.services.website_billing_service import WebsiteBillingService

NOW = datetime(2024, 1, 31, 10, 0, tzinfo=UTC)


def _record(status: BillingStatus, **overrides) -> BillingRecord:
    values = {
        "status": status,
        "plan": "basic",
        "price": 29.0,
        "activated_at": NOW - timedelta(days=40),
        "due_at": NOW + timedelta(days=10),
        "grace_ends_at": NOW - timedelta(days=35),
    }
    values.update(overrides)
    return BillingRecord(**values)


@pytest_asyncio.fixture()
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture()
def service(session, mock_notifier) -> WebsiteBillingService:
    return WebsiteBillingService(session, mock_notifier)


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------


class TestDeployWebsite:
    """First deployment attaches billing exactly once."""

    @pytest.mark.asyncio
    async def test_register_then_deploy(self, service, mock_notifier) -> None:
        created = await service.register_website(
            name="  Bakery  ",
            user_id="user-1",
            request_id="req-1",
            project_type="business",
            contact_email="owner@bakery.test",
            domain="Bakery.Test",
        )
        assert created["status"] == "CREATED"
        assert created["name"] == "Bakery"

        result = await service.deploy_website(
            created["id"],
            NOW,
            deployment_url="https://bakery.test",
            plan="Pro",
            price=49.0,
        )

        billing = result["billing"]
        assert result["billingInitialized"] is True
        assert result["notificationSent"] is True
        assert billing["status"] == "PENDING"
        assert billing["statusLabel"] == "Payment Pending"
        assert billing["plan"] == "pro"
        assert billing["price"] == 49.0
        assert billing["billingCycle"] == "monthly"
        assert billing["activatedAt"] == NOW.isoformat()
        assert billing["graceEndsAt"] == (NOW + timedelta(days=5)).isoformat()
        assert billing["dueAt"] == billing["graceEndsAt"]
        assert billing["daysUntilDue"] == 5
        assert billing["paymentHistory"] == []
        assert billing["version"] == 1

        mock_notifier.send_activated.assert_awaited_once()
        notice = mock_notifier.send_activated.await_args.args[0]
        assert notice.deployment_url == "https://bakery.test"
        assert notice.contact.email == "owner@bakery.test"

    @pytest.mark.asyncio
    async def test_redeploy_keeps_original_billing(self, service, seed_website, mock_notifier) -> None:
        await seed_website("w1")
        first = await service.deploy_website("w1", NOW)

        later = NOW + timedelta(days=3)
        second = await service.deploy_website("w1", later, deployment_url="https://v2.example.com")

        assert second["billingInitialized"] is False
        assert second["notificationSent"] is False
        assert second["billing"]["graceEndsAt"] == first["billing"]["graceEndsAt"]
        assert second["billing"]["activatedAt"] == NOW.isoformat()
        assert mock_notifier.send_activated.await_count == 1

        website = await service.get_website("w1")
        assert website["status"] == "DEPLOYED"
        assert website["deploymentUrl"] == "https://v2.example.com"

    @pytest.mark.asyncio
    async def test_deploy_missing_website(self, service) -> None:
        with pytest.raises(WebsiteNotFoundError):
            await service.deploy_website("nope", NOW)

    @pytest.mark.asyncio
    async def test_deploy_with_invalid_cycle_changes_nothing(self, service, seed_website) -> None:
        await seed_website("w1")

        with pytest.raises(InvalidCycleError):
            await service.deploy_website("w1", NOW, billing_cycle="weekly")

        website = await service.get_website("w1")
        assert website["status"] == "CREATED"
        assert website["billingStatus"] is None

    @pytest.mark.asyncio
    async def test_activation_email_failure_is_not_fatal(self, service, seed_website, mock_notifier) -> None:
        await seed_website("w1")
        mock_notifier.send_activated.side_effect = NotificationDeliveryError("HTTP 500")

        result = await service.deploy_website("w1", NOW)

        assert result["billingInitialized"] is True
        assert result["notificationSent"] is False
        assert result["billing"]["status"] == "PENDING"

    @pytest.mark.asyncio
    async def test_deploy_without_notifier(self, session, seed_website) -> None:
        await seed_website("w1")

        result = await WebsiteBillingService(session).deploy_website("w1", NOW)

        assert result["billingInitialized"] is True
        assert result["notificationSent"] is False


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class TestRecordPayment:
    """Manual payments reactivate billing from any status."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", list(BillingStatus))
    async def test_payment_reactivates(self, service, seed_website, status) -> None:
        suspended_at = NOW - timedelta(days=1) if status == BillingStatus.SUSPENDED else None
        await seed_website("w1", _record(status, suspended_at=suspended_at))

        billing = await service.record_payment("w1", 29.0, NOW, method="bank transfer", transaction_id="tx-1")

        assert billing["status"] == "ACTIVE"
        # Jan 31 + 1 month rolls over to Mar 2 in a leap year.
        assert billing["dueAt"] == datetime(2024, 3, 2, 10, 0, tzinfo=UTC).isoformat()
        assert billing["lastPaymentAt"] == NOW.isoformat()
        assert billing["paymentHistory"] == [
            {"amount": 29.0, "date": NOW.isoformat(), "method": "bank transfer", "transactionId": "tx-1"}
        ]
        assert billing["version"] == 2
        stored = await service.get_billing("w1", NOW)
        assert stored == billing

    @pytest.mark.asyncio
    async def test_yearly_cycle(self, service, seed_website) -> None:
        await seed_website("w1", _record(BillingStatus.PENDING, billing_cycle="yearly"))

        billing = await service.record_payment("w1", 300.0, NOW)

        assert billing["dueAt"] == datetime(2025, 1, 31, 10, 0, tzinfo=UTC).isoformat()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -10.0, float("nan")])
    async def test_invalid_amount_changes_nothing(self, service, seed_website, load_snapshot, amount) -> None:
        await seed_website("w1", _record(BillingStatus.OVERDUE))

        with pytest.raises(InvalidAmountError):
            await service.record_payment("w1", amount, NOW)

        snapshot = await load_snapshot("w1")
        assert snapshot.record.status == BillingStatus.OVERDUE
        assert snapshot.record.payment_history == []
        assert snapshot.version == 1

    @pytest.mark.asyncio
    async def test_payment_without_billing(self, service, seed_website) -> None:
        await seed_website("w1")

        with pytest.raises(WebsiteNotFoundError, match="no billing record"):
            await service.record_payment("w1", 10.0, NOW)

    @pytest.mark.asyncio
    async def test_stale_write_raises_conflict(self, service, session_factory, seed_website) -> None:
        """A payment computed from a stale read does not overwrite a newer change."""
        await seed_website("w1", _record(BillingStatus.OVERDUE))
        async with session_factory() as other:
            stale = await WebsiteRepository(other).load_billing("w1")
        async with session_factory() as other:
            await WebsiteBillingService(other).record_payment("w1", 29.0, NOW)

        service._repo.load_billing = AsyncMock(return_value=stale)

        with pytest.raises(ConcurrencyConflictError):
            await service.record_payment("w1", 29.0, NOW + timedelta(minutes=1))


# ---------------------------------------------------------------------------
# Admin overrides
# ---------------------------------------------------------------------------


class TestUpdateBilling:
    """Administrative edits of a billing record."""

    @pytest.mark.asyncio
    async def test_suspend_stamps_suspended_at(self, service, seed_website) -> None:
        await seed_website("w1", _record(BillingStatus.ACTIVE))

        billing = await service.update_billing("w1", NOW, status="suspended")

        assert billing["status"] == "SUSPENDED"
        assert billing["suspendedAt"] == NOW.isoformat()
        assert billing["version"] == 2

    @pytest.mark.asyncio
    async def test_plan_price_and_cycle_leave_dates_alone(self, service, seed_website) -> None:
        record = _record(BillingStatus.ACTIVE)
        await seed_website("w1", record)

        billing = await service.update_billing("w1", NOW, plan="Premium", price=99.0, billing_cycle="quarterly")

        assert billing["plan"] == "premium"
        assert billing["price"] == 99.0
        assert billing["billingCycle"] == "quarterly"
        assert billing["dueAt"] == record.due_at.isoformat()
        assert billing["status"] == "ACTIVE"

    @pytest.mark.asyncio
    async def test_no_changes_does_not_write(self, service, seed_website, load_snapshot) -> None:
        await seed_website("w1", _record(BillingStatus.ACTIVE))

        billing = await service.update_billing("w1", NOW)

        assert billing["version"] == 1
        assert (await load_snapshot("w1")).version == 1

    @pytest.mark.asyncio
    async def test_invalid_status(self, service, seed_website) -> None:
        await seed_website("w1", _record(BillingStatus.ACTIVE))

        with pytest.raises(InvalidStatusError):
            await service.update_billing("w1", NOW, status="CANCELLED")

    @pytest.mark.asyncio
    async def test_invalid_cycle(self, service, seed_website) -> None:
        await seed_website("w1", _record(BillingStatus.ACTIVE))

        with pytest.raises(InvalidCycleError):
            await service.update_billing("w1", NOW, billing_cycle="weekly")


# ---------------------------------------------------------------------------
# Access guard
# ---------------------------------------------------------------------------


class TestCheckAccess:
    """Tests for the billing access decision."""

    @pytest.mark.asyncio
    async def test_no_billing_is_allowed(self, service, seed_website) -> None:
        await seed_website("w1")

        access = await service.check_access("w1")

        assert access.allowed is True
        assert access.billing_status is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [BillingStatus.PENDING, BillingStatus.ACTIVE])
    async def test_good_standing_is_allowed(self, service, seed_website, status) -> None:
        await seed_website("w1", _record(status))

        access = await service.check_access("w1", strict=True)

        assert access.allowed is True
        assert access.billing_status == status
        assert access.message is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strict", [False, True])
    async def test_suspended_is_blocked(self, service, seed_website, strict) -> None:
        await seed_website("w1", _record(BillingStatus.SUSPENDED, suspended_at=NOW))

        access = await service.check_access("w1", strict=strict)

        assert access.allowed is False
        assert access.billing_status == BillingStatus.SUSPENDED
        assert "suspended due to non-payment" in access.message

    @pytest.mark.asyncio
    async def test_overdue_is_allowed_with_warning(self, service, seed_website) -> None:
        await seed_website("w1", _record(BillingStatus.OVERDUE))

        access = await service.check_access("w1")

        assert access.allowed is True
        assert access.message == "Payment is overdue. Service may be suspended soon."

    @pytest.mark.asyncio
    async def test_overdue_is_blocked_when_strict(self, service, seed_website) -> None:
        await seed_website("w1", _record(BillingStatus.OVERDUE))

        access = await service.check_access("w1", strict=True)

        assert access.allowed is False
        assert access.billing_status == BillingStatus.OVERDUE

    @pytest.mark.asyncio
    async def test_missing_website(self, service) -> None:
        with pytest.raises(WebsiteNotFoundError):
            await service.check_access("ghost")


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


class TestReadModels:
    """Stats and run history."""

    @pytest.mark.asyncio
    async def test_stats(self, service, seed_website) -> None:
        await seed_website("a", _record(BillingStatus.ACTIVE, due_at=NOW + timedelta(days=2)))
        await seed_website("b", _record(BillingStatus.ACTIVE), user_id="user-2")
        await seed_website("c", _record(BillingStatus.OVERDUE))
        await seed_website("d")

        stats = await service.stats(NOW, days_ahead=3)

        assert stats["byStatus"] == {"PENDING": 0, "ACTIVE": 2, "OVERDUE": 1, "SUSPENDED": 0}
        assert stats["total"] == 3
        assert stats["dueWithinDays"] == 3
        assert stats["dueSoon"] == 1

        scoped = await service.stats(NOW, user_id="user-2")
        assert scoped["byStatus"]["ACTIVE"] == 1
        assert scoped["total"] == 1

    @pytest.mark.asyncio
    async def test_list_runs(self, service, session_factory) -> None:
        async with session_factory() as other:
            await ReconciliationRunRepository(other).record_run(
                trigger="scheduled",
                run_at=NOW,
                finished_at=NOW + timedelta(seconds=3),
                counts={"candidates": 2, "pending_to_suspended": 1, "errors": 1},
            )
            await other.commit()

        runs = await service.list_runs()

        assert len(runs) == 1
        assert runs[0]["trigger"] == "scheduled"
        assert runs[0]["runAt"] == NOW.isoformat()
        assert runs[0]["pendingToSuspended"] == 1
        assert runs[0]["errors"] == 1
        assert runs[0]["activeToOverdue"] == 0
