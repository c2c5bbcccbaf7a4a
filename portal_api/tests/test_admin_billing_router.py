"""Tests for the admin billing endpoints, the billing guard and health probes."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from billing_engine.errors import ConcurrencyConflictError, StoreUnavailableError
from billing_engine.models.billing import BillingRecord, BillingStatus
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr

from portal_api.config import PlatformEnv
from portal_api.dependencies import build_reconciler, get_reconciler, get_settings
from portal_api.services.website_billing_service import WebsiteBillingService

# Matches the ``now`` fixture pinned through get_now.
T0 = datetime(2024, 6, 1, 8, 0, tzinfo=UTC)


def _pending(deployed_days_ago: int) -> BillingRecord:
    deployed = T0 - timedelta(days=deployed_days_ago)
    return BillingRecord(
        status=BillingStatus.PENDING,
        price=49.0,
        activated_at=deployed,
        due_at=deployed + timedelta(days=5),
        grace_ends_at=deployed + timedelta(days=5),
    )


def _active(due_in_days: float) -> BillingRecord:
    return BillingRecord(
        status=BillingStatus.ACTIVE,
        plan="basic",
        price=29.0,
        activated_at=T0 - timedelta(days=60),
        due_at=T0 + timedelta(days=due_in_days),
        grace_ends_at=T0 - timedelta(days=55),
    )


def _with_status(status: BillingStatus) -> BillingRecord:
    record = _active(10)
    record.status = status
    if status == BillingStatus.SUSPENDED:
        record.suspended_at = T0 - timedelta(days=1)
    return record


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAdminAuth:
    """Admin routes require the operator bearer token."""

    @pytest.mark.asyncio
    async def test_missing_token_is_rejected(self, app) -> None:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as anon:
            resp = await anon.get("/api/v1/admin/billing/stats")

        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_token_is_rejected(self, client) -> None:
        resp = await client.get("/api/v1/admin/billing/stats", headers={"Authorization": "Bearer nope"})

        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unconfigured_token_outside_dev(self, app, client, test_settings) -> None:
        app.dependency_overrides[get_settings] = lambda: test_settings.model_copy(
            update={"admin_token": SecretStr("")}
        )

        resp = await client.get("/api/v1/admin/billing/stats")

        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_unconfigured_token_in_dev_is_open(self, app, test_settings) -> None:
        app.dependency_overrides[get_settings] = lambda: test_settings.model_copy(
            update={"admin_token": SecretStr(""), "platform_env": PlatformEnv.DEV}
        )

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as anon:
            resp = await anon.get("/api/v1/admin/billing/stats")

        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_client_routes_need_no_token(self, app, seed_website) -> None:
        await seed_website("w1")

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as anon:
            resp = await anon.get("/api/v1/websites/w1")

        assert resp.status_code == 200


# ---------------------------------------------------------------------------
# Website registration and deployment
# ---------------------------------------------------------------------------


class TestDeployFlow:
    """Register, deploy, pay."""

    @pytest.mark.asyncio
    async def test_register_deploy_and_pay(self, client, mock_notifier) -> None:
        created = await client.post(
            "/api/v1/admin/websites",
            json={
                "name": "Bakery",
                "userId": "user-1",
                "requestId": "req-1",
                "projectType": "business",
                "contactEmail": "owner@bakery.test",
            },
        )
        assert created.status_code == 201
        website_id = created.json()["id"]

        deployed = await client.post(
            f"/api/v1/admin/websites/{website_id}/deploy",
            json={"deploymentUrl": "https://bakery.test", "plan": "basic", "price": 29, "billingCycle": "monthly"},
        )
        assert deployed.status_code == 200
        body = deployed.json()
        assert body["billingInitialized"] is True
        assert body["billing"]["status"] == "PENDING"
        assert body["billing"]["graceEndsAt"] == (T0 + timedelta(days=5)).isoformat()
        mock_notifier.send_activated.assert_awaited_once()

        paid = await client.post(
            f"/api/v1/admin/websites/{website_id}/payments",
            json={"amount": 29, "method": "bank transfer", "transactionId": "tx-42"},
        )
        assert paid.status_code == 201
        assert paid.json()["status"] == "ACTIVE"
        assert paid.json()["paymentHistory"][0]["transactionId"] == "tx-42"

        fetched = await client.get(f"/api/v1/admin/websites/{website_id}/billing")
        assert fetched.status_code == 200
        assert fetched.json()["status"] == "ACTIVE"
        assert fetched.json()["version"] == 2

    @pytest.mark.asyncio
    async def test_deploy_unknown_website(self, client) -> None:
        resp = await client.post("/api/v1/admin/websites/ghost/deploy", json={})

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_deploy_invalid_cycle(self, client, seed_website) -> None:
        await seed_website("w1")

        resp = await client.post("/api/v1/admin/websites/w1/deploy", json={"billingCycle": "weekly"})

        assert resp.status_code == 400
        assert "Invalid billing cycle" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_register_missing_fields(self, client) -> None:
        resp = await client.post("/api/v1/admin/websites", json={"name": "x"})

        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Payments and overrides
# ---------------------------------------------------------------------------


class TestBillingWrites:
    """Tests for payment recording and admin overrides."""

    @pytest.mark.asyncio
    async def test_zero_payment_is_rejected(self, client, seed_website) -> None:
        await seed_website("w1", _with_status(BillingStatus.OVERDUE))

        resp = await client.post("/api/v1/admin/websites/w1/payments", json={"amount": 0})

        assert resp.status_code == 400
        assert "greater than zero" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_non_numeric_payment_is_unprocessable(self, client, seed_website) -> None:
        await seed_website("w1", _with_status(BillingStatus.OVERDUE))

        resp = await client.post("/api/v1/admin/websites/w1/payments", json={"amount": "lots"})

        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_payment_without_billing(self, client, seed_website) -> None:
        await seed_website("w1")

        resp = await client.post("/api/v1/admin/websites/w1/payments", json={"amount": 10})

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_admin_suspend(self, client, seed_website) -> None:
        await seed_website("w1", _active(10))

        resp = await client.patch("/api/v1/admin/websites/w1/billing", json={"status": "SUSPENDED"})

        assert resp.status_code == 200
        assert resp.json()["status"] == "SUSPENDED"
        assert resp.json()["suspendedAt"] == T0.isoformat()

    @pytest.mark.asyncio
    async def test_admin_invalid_status(self, client, seed_website) -> None:
        await seed_website("w1", _active(10))

        resp = await client.patch("/api/v1/admin/websites/w1/billing", json={"status": "FROZEN"})

        assert resp.status_code == 400
        assert "Invalid billing status" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_conflict_maps_to_409(self, client, seed_website, monkeypatch) -> None:
        await seed_website("w1", _active(10))
        monkeypatch.setattr(
            WebsiteBillingService,
            "record_payment",
            AsyncMock(side_effect=ConcurrencyConflictError("w1", "ACTIVE")),
        )

        resp = await client.post("/api/v1/admin/websites/w1/payments", json={"amount": 10})

        assert resp.status_code == 409


# ---------------------------------------------------------------------------
# Reconciliation endpoints
# ---------------------------------------------------------------------------


class TestReconcileEndpoints:
    """Manual trigger, upcoming report, stats and run history."""

    @pytest.mark.asyncio
    async def test_manual_reconcile(self, client, seed_website, load_snapshot, mock_notifier) -> None:
        await seed_website("late-pending", _pending(deployed_days_ago=6))
        await seed_website("fresh-pending", _pending(deployed_days_ago=1))
        await seed_website("late-active", _active(-1))
        await seed_website("ok-active", _active(10))

        resp = await client.post("/api/v1/admin/billing/reconcile")

        assert resp.status_code == 200
        body = resp.json()
        assert body["pendingToSuspended"] == 1
        assert body["activeToOverdue"] == 1
        assert body["errors"] == 0
        assert body["candidates"] == 2
        assert body["trigger"] == "manual"
        assert body["startedAt"] == T0.isoformat()

        assert (await load_snapshot("late-pending")).record.status == BillingStatus.SUSPENDED
        assert (await load_snapshot("fresh-pending")).record.status == BillingStatus.PENDING
        assert (await load_snapshot("late-active")).record.status == BillingStatus.OVERDUE
        assert (await load_snapshot("ok-active")).record.status == BillingStatus.ACTIVE
        mock_notifier.send_suspended.assert_awaited_once()
        mock_notifier.send_overdue.assert_awaited_once()

        runs = await client.get("/api/v1/admin/billing/runs")
        assert runs.status_code == 200
        assert runs.json()[0]["pendingToSuspended"] == 1

    @pytest.mark.asyncio
    async def test_reconcile_store_unavailable(self, app, client) -> None:
        reconciler = MagicMock()
        reconciler.run = AsyncMock(side_effect=StoreUnavailableError("down"))
        app.dependency_overrides[get_reconciler] = lambda: reconciler

        resp = await client.post("/api/v1/admin/billing/reconcile")

        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_reconcile_refused_connection_is_503(
        self, app, client, unreachable_session_factory, mock_notifier, test_settings
    ) -> None:
        app.dependency_overrides[get_reconciler] = lambda: build_reconciler(
            unreachable_session_factory, mock_notifier, test_settings
        )

        resp = await client.post("/api/v1/admin/billing/reconcile")

        assert resp.status_code == 503
        assert resp.json()["detail"] == "Website store unavailable. Retry later."

    @pytest.mark.asyncio
    async def test_upcoming(self, client, seed_website) -> None:
        await seed_website("soon", _active(2))
        await seed_website("later", _active(10))
        await seed_website("past", _active(-1))

        resp = await client.get("/api/v1/admin/billing/upcoming")

        assert resp.status_code == 200
        assert [item["websiteId"] for item in resp.json()] == ["soon"]

        wide = await client.get("/api/v1/admin/billing/upcoming", params={"days_ahead": 14})
        assert [item["websiteId"] for item in wide.json()] == ["soon", "later"]

    @pytest.mark.asyncio
    async def test_stats(self, client, seed_website) -> None:
        await seed_website("a", _active(2))
        await seed_website("b", _with_status(BillingStatus.SUSPENDED), user_id="user-2")

        resp = await client.get("/api/v1/admin/billing/stats")

        assert resp.status_code == 200
        body = resp.json()
        assert body["byStatus"]["ACTIVE"] == 1
        assert body["byStatus"]["SUSPENDED"] == 1
        assert body["total"] == 2
        assert body["dueSoon"] == 1

        scoped = await client.get("/api/v1/admin/billing/stats", params={"userId": "user-2"})
        assert scoped.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_list_websites(self, client, seed_website) -> None:
        await seed_website("a", _active(2))
        await seed_website("b", _with_status(BillingStatus.SUSPENDED))
        await seed_website("c")

        everything = await client.get("/api/v1/admin/websites")
        suspended = await client.get("/api/v1/admin/websites", params={"billingStatus": "suspended"})

        assert everything.status_code == 200
        assert {item["id"] for item in everything.json()} == {"a", "b", "c"}
        assert [item["id"] for item in suspended.json()] == ["b"]
        assert suspended.json()[0]["billingStatus"] == "SUSPENDED"

    @pytest.mark.asyncio
    async def test_list_websites_invalid_status(self, client) -> None:
        resp = await client.get("/api/v1/admin/websites", params={"billingStatus": "FROZEN"})

        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Billing guard
# ---------------------------------------------------------------------------


class TestBillingGuard:
    """Client website access gated by billing status."""

    @pytest.mark.asyncio
    async def test_suspended_returns_402(self, client, seed_website) -> None:
        await seed_website("w1", _with_status(BillingStatus.SUSPENDED))

        resp = await client.get("/api/v1/websites/w1")

        assert resp.status_code == 402
        detail = resp.json()["detail"]
        assert detail["error"] == "Payment Required"
        assert detail["billingStatus"] == "SUSPENDED"
        assert detail["websiteId"] == "w1"
        assert detail["websiteName"] == "Site w1"

    @pytest.mark.asyncio
    async def test_overdue_passes_with_headers(self, client, seed_website) -> None:
        await seed_website("w1", _with_status(BillingStatus.OVERDUE))

        resp = await client.get("/api/v1/websites/w1")

        assert resp.status_code == 200
        assert resp.headers["X-Billing-Status"] == "OVERDUE"
        assert resp.headers["X-Billing-Message"] == "Payment is overdue. Service may be suspended soon."
        assert resp.json()["billingStatus"] == "OVERDUE"

    @pytest.mark.asyncio
    async def test_overdue_blocked_in_strict_mode(self, app, client, seed_website, test_settings) -> None:
        await seed_website("w1", _with_status(BillingStatus.OVERDUE))
        app.dependency_overrides[get_settings] = lambda: test_settings.model_copy(
            update={"billing_guard_strict": True}
        )

        resp = await client.get("/api/v1/websites/w1")

        assert resp.status_code == 402
        assert resp.json()["detail"]["billingStatus"] == "OVERDUE"

    @pytest.mark.asyncio
    async def test_active_passes_without_headers(self, client, seed_website) -> None:
        await seed_website("w1", _active(10))

        resp = await client.get("/api/v1/websites/w1")

        assert resp.status_code == 200
        assert "X-Billing-Status" not in resp.headers

    @pytest.mark.asyncio
    async def test_unknown_website(self, client) -> None:
        resp = await client.get("/api/v1/websites/ghost")

        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealth:
    """Liveness and readiness probes."""

    @pytest.mark.asyncio
    async def test_health(self, client) -> None:
        resp = await client.get("/api/v1/health")

        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.json()["db"] == "ok"

    @pytest.mark.asyncio
    async def test_ready(self, client) -> None:
        resp = await client.get("/ready")

        assert resp.status_code == 200
        assert resp.json()["status"] == "ready"

    @pytest.mark.asyncio
    async def test_health_without_scheduler(self, client) -> None:
        resp = await client.get("/api/v1/health")

        assert resp.json()["billingScheduler"] == {"enabled": False}

    @pytest.mark.asyncio
    async def test_health_reports_scheduler(self, app, client) -> None:
        scheduler = MagicMock()
        scheduler.running = True
        scheduler.next_run_at = datetime(2024, 6, 2, 2, 0, tzinfo=UTC)
        scheduler.last_summary = None
        app.state.billing_scheduler = scheduler

        resp = await client.get("/api/v1/health")

        assert resp.json()["billingScheduler"] == {
            "enabled": True,
            "running": True,
            "nextRunAt": "2024-06-02T02:00:00+00:00",
            "lastRun": None,
        }

    @pytest.mark.asyncio
    async def test_correlation_id_is_echoed(self, client) -> None:
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "abc-123"})

        assert resp.headers["X-Correlation-ID"] == "abc-123"
