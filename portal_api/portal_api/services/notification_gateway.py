"""Outbound billing notifications.

The reconciler and the deployment hook talk to a :class:`NotificationGateway`;
the concrete gateway sends email through the Resend HTTP API.  Each send is a
single attempt: failures raise :class:`NotificationDeliveryError` and the
caller decides whether to log or escalate.  The reconciler always logs.

When no Resend API key is configured the :class:`LoggingNotificationGateway`
is used instead, so local and test deployments never reach the network.
"""

from __future__ import annotations

import html
import logging
from datetime import datetime
from typing import Protocol, runtime_checkable

import httpx
from billing_engine.errors import NotificationDeliveryError
from billing_engine.models.billing import BillingStatus
from billing_engine.models.website import BillingSnapshot, Contact
from pydantic import BaseModel, Field

from portal_api.config import PortalSettings

logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 10.0

SUBJECT_ACTIVATED = "🎉 Your Website is Live! Payment Details Inside"
SUBJECT_SUSPENDED = "⚠️ URGENT: Website Suspended - Payment Required"
SUBJECT_OVERDUE = "⚠️ Payment Overdue - Action Required"


class BillingNotice(BaseModel):
    """Everything a billing email needs, detached from any DB session."""

    website_id: str
    website_name: str
    contact: Contact = Field(default_factory=Contact)
    status: BillingStatus
    price: float | None = None
    due_at: datetime | None = None
    grace_ends_at: datetime | None = None
    suspended_at: datetime | None = None
    deployment_url: str | None = None

    @classmethod
    def from_snapshot(cls, snapshot: BillingSnapshot, deployment_url: str | None = None) -> BillingNotice:
        record = snapshot.record
        return cls(
            website_id=snapshot.website_id,
            website_name=snapshot.website_name,
            contact=snapshot.contact,
            status=record.status,
            price=record.price,
            due_at=record.due_at,
            grace_ends_at=record.grace_ends_at,
            suspended_at=record.suspended_at,
            deployment_url=deployment_url,
        )


@runtime_checkable
class NotificationGateway(Protocol):
    """Protocol for billing email delivery."""

    async def send_suspended(self, notice: BillingNotice) -> None: ...

    async def send_overdue(self, notice: BillingNotice) -> None: ...

    async def send_activated(self, notice: BillingNotice) -> None: ...


# ---------------------------------------------------------------------------
# Message bodies
# ---------------------------------------------------------------------------


def _fmt_date(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d") if value is not None else "n/a"


def _fmt_price(value: float | None) -> str:
    return f"${value:,.2f}" if value is not None else "see your dashboard"


def _greeting(notice: BillingNotice) -> str:
    name = html.escape(notice.contact.name or "there")
    return f"<p>Hi <strong>{name}</strong>,</p>"


def render_activated(notice: BillingNotice, portal_url: str) -> str:
    site = html.escape(notice.website_name)
    link = ""
    if notice.deployment_url:
        url = html.escape(notice.deployment_url, quote=True)
        link = f'<p>Your website URL: <a href="{url}">{url}</a></p>'
    return (
        f"<h1>Your Website is Live!</h1>{_greeting(notice)}"
        f"<p>Great news! <strong>{site}</strong> has been deployed and is now live.</p>{link}"
        f"<p>Amount due: <strong>{_fmt_price(notice.price)}</strong><br/>"
        f"Please pay by <strong>{_fmt_date(notice.grace_ends_at)}</strong> to keep the site online.</p>"
        f'<p><a href="{html.escape(portal_url, quote=True)}">Open your dashboard</a></p>'
    )


def render_suspended(notice: BillingNotice, portal_url: str) -> str:
    site = html.escape(notice.website_name)
    return (
        f"<h1>Website Suspended</h1>{_greeting(notice)}"
        f"<p>Your website <strong>{site}</strong> has been suspended due to non-payment "
        f"and is currently inaccessible to visitors.</p>"
        f"<p>Suspended on: {_fmt_date(notice.suspended_at)}<br/>"
        f"Amount due: <strong>{_fmt_price(notice.price)}</strong></p>"
        f"<p>Service is restored once payment is confirmed.</p>"
        f'<p><a href="{html.escape(portal_url, quote=True)}">Open your dashboard</a></p>'
    )


def render_overdue(notice: BillingNotice, portal_url: str) -> str:
    site = html.escape(notice.website_name)
    return (
        f"<h1>Payment Overdue</h1>{_greeting(notice)}"
        f"<p>Your payment for <strong>{site}</strong> was due on {_fmt_date(notice.due_at)} "
        f"and is now overdue.  Please arrange payment to avoid service interruption.</p>"
        f"<p>Amount due: <strong>{_fmt_price(notice.price)}</strong></p>"
        f'<p><a href="{html.escape(portal_url, quote=True)}">Open your dashboard</a></p>'
    )


# ---------------------------------------------------------------------------
# Gateways
# ---------------------------------------------------------------------------


class ResendNotificationGateway:
    """Send billing emails through the Resend HTTP API.

    Parameters
    ----------
    api_key:
        Resend API key (sent as a bearer token).
    sender:
        ``From`` header, e.g. ``"SiteDesk <billing@example.com>"``.
    api_url:
        Resend ``/emails`` endpoint.
    portal_url:
        Link included in every email.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client is
        created if not provided.
    """

    def __init__(
        self,
        api_key: str,
        sender: str,
        api_url: str = "https://api.resend.com/emails",
        portal_url: str = "http://localhost:3000",
        timeout: float = _TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._sender = sender
        self._api_url = api_url
        self._portal_url = portal_url
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def send_suspended(self, notice: BillingNotice) -> None:
        await self._send(notice, SUBJECT_SUSPENDED, render_suspended(notice, self._portal_url))

    async def send_overdue(self, notice: BillingNotice) -> None:
        await self._send(notice, SUBJECT_OVERDUE, render_overdue(notice, self._portal_url))

    async def send_activated(self, notice: BillingNotice) -> None:
        await self._send(notice, SUBJECT_ACTIVATED, render_activated(notice, self._portal_url))

    async def _send(self, notice: BillingNotice, subject: str, body: str) -> None:
        recipient = notice.contact.email
        if not recipient:
            raise NotificationDeliveryError(f"Website {notice.website_id} has no contact email")

        payload = {
            "from": self._sender,
            "to": [recipient],
            "subject": subject,
            "html": body,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}

        try:
            response = await self._client.post(self._api_url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise NotificationDeliveryError(f"Email to website {notice.website_id} timed out") from exc
        except httpx.RequestError as exc:
            raise NotificationDeliveryError(f"Email to website {notice.website_id} failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise NotificationDeliveryError(
                f"Email to website {notice.website_id} rejected: HTTP {response.status_code}"
            )

        logger.info(
            "Billing email sent: website=%s status=%s subject=%r",
            notice.website_id,
            notice.status.value,
            subject,
        )


class LoggingNotificationGateway:
    """Gateway that only logs; used when no email provider is configured."""

    async def send_suspended(self, notice: BillingNotice) -> None:
        logger.info("Suspension notice (not sent): website=%s to=%s", notice.website_id, notice.contact.email)

    async def send_overdue(self, notice: BillingNotice) -> None:
        logger.info("Overdue notice (not sent): website=%s to=%s", notice.website_id, notice.contact.email)

    async def send_activated(self, notice: BillingNotice) -> None:
        logger.info("Activation notice (not sent): website=%s to=%s", notice.website_id, notice.contact.email)

    async def close(self) -> None:
        return None


def create_notification_gateway(settings: PortalSettings) -> ResendNotificationGateway | LoggingNotificationGateway:
    """Build the gateway selected by *settings*."""
    api_key = settings.resend_api_key.get_secret_value()
    if not api_key:
        logger.warning("PORTAL_RESEND_API_KEY not set; billing emails will only be logged")
        return LoggingNotificationGateway()
    return ResendNotificationGateway(
        api_key=api_key,
        sender=settings.email_from,
        api_url=settings.resend_api_url,
        portal_url=settings.portal_url,
        timeout=settings.reconciliation_notification_timeout,
    )
