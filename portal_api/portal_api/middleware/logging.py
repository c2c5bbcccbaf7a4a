"""Access logging for the portal API.

One ``portal_api.access`` record per request.  Billing-guarded responses
(402, or 200 with ``X-Billing-Status``) carry the billing status in the
record so blocked client traffic is visible without parsing bodies.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("portal_api.access")

CORRELATION_HEADER = "X-Correlation-ID"
_BILLING_STATUS_HEADER = "X-Billing-Status"

# Logged headers; credentials are replaced with a mask.
_LOGGED_HEADERS = ("user-agent", "content-type", "authorization", "cookie")
_MASKED_HEADERS = frozenset({"authorization", "cookie"})


def _header_summary(request: Request) -> dict[str, str]:
    summary: dict[str, str] = {}
    for name in _LOGGED_HEADERS:
        value = request.headers.get(name)
        if value is not None:
            summary[name] = "***" if name in _MASKED_HEADERS else value
    return summary


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with a correlation id and log its outcome.

    The id comes from ``X-Correlation-ID`` when the caller sends one and is
    echoed on the response.  Requests that raise are logged as 500 before
    the exception continues to the server.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
        request.state.correlation_id = correlation_id
        started = time.perf_counter()

        status_code = 500
        billing_status: str | None = None
        try:
            response = await call_next(request)
            status_code = response.status_code
            billing_status = response.headers.get(_BILLING_STATUS_HEADER)
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            entry: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "query": request.url.query or None,
                "status_code": status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "client": request.client.host if request.client else None,
                "headers": _header_summary(request),
            }
            logger.log(
                _level_for(status_code),
                "%s %s -> %d",
                request.method,
                request.url.path,
                status_code,
                extra={"request": entry, "correlation_id": correlation_id, "billing_status": billing_status},
            )
