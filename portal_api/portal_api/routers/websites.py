"""Client-facing website endpoints guarded by billing status."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Response

from portal_api.dependencies import SessionDep, SettingsDep
from portal_api.services.website_billing_service import BillingAccess, WebsiteBillingService

router = APIRouter(prefix="/websites", tags=["websites"])


async def billing_guard(
    website_id: str,
    session: SessionDep,
    settings: SettingsDep,
    response: Response,
) -> BillingAccess:
    """Block suspended websites with HTTP 402; flag overdue ones with headers."""
    access = await WebsiteBillingService(session).check_access(website_id, strict=settings.billing_guard_strict)
    if not access.allowed:
        raise HTTPException(
            status_code=402,
            detail={
                "error": "Payment Required",
                "message": access.message,
                "billingStatus": access.billing_status.value if access.billing_status else None,
                "websiteId": access.website_id,
                "websiteName": access.website_name,
            },
        )
    if access.billing_status is not None and access.message:
        response.headers["X-Billing-Status"] = access.billing_status.value
        response.headers["X-Billing-Message"] = access.message
    return access


BillingGuardDep = Annotated[BillingAccess, Depends(billing_guard)]


@router.get("/{website_id}")
async def get_website(website_id: str, session: SessionDep, _access: BillingGuardDep) -> dict[str, Any]:
    return await WebsiteBillingService(session).get_website(website_id)
