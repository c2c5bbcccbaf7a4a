"""Prometheus metrics for the portal API.

HTTP traffic is recorded as RED metrics (rate, errors, duration) by
:class:`PrometheusMiddleware`.  Billing reconciliation reports one
observation per run through :func:`observe_reconciliation_run`:

- ``sitedesk_reconciliation_runs_total{trigger, result}``: completed or
  aborted runs.
- ``sitedesk_reconciliation_records_total{outcome}``: per-record outcomes
  (``pending_to_suspended``, ``active_to_overdue``, ``errors``,
  ``conflicts``, ``skipped``).
- ``sitedesk_billing_notification_failures_total``: emails that failed or
  timed out after their transition was stored.

Path labels are normalised (``/websites/9f1c...`` -> ``/websites/{id}``)
to keep label cardinality bounded.
"""

from __future__ import annotations

import re
import time
from collections.abc import Mapping

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

HTTP_REQUESTS_TOTAL = Counter(
    "sitedesk_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "sitedesk_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

RECONCILIATION_RUNS_TOTAL = Counter(
    "sitedesk_reconciliation_runs_total",
    "Billing reconciliation runs by trigger and result",
    ["trigger", "result"],
)

RECONCILIATION_RECORDS_TOTAL = Counter(
    "sitedesk_reconciliation_records_total",
    "Websites processed by billing reconciliation, by outcome",
    ["outcome"],
)

NOTIFICATION_FAILURES_TOTAL = Counter(
    "sitedesk_billing_notification_failures_total",
    "Billing emails that failed after the transition was stored",
)

RECONCILIATION_DURATION = Histogram(
    "sitedesk_reconciliation_duration_seconds",
    "Billing reconciliation run duration in seconds",
    ["trigger"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
)

# Summary counters exported per record outcome.
RECORD_OUTCOMES: tuple[str, ...] = ("pending_to_suspended", "active_to_overdue", "errors", "conflicts", "skipped")


def observe_reconciliation_run(
    trigger: str,
    counts: Mapping[str, int] | None,
    duration_seconds: float,
) -> None:
    """Record one reconciliation run.  ``counts`` is ``None`` for an aborted run."""
    RECONCILIATION_DURATION.labels(trigger=trigger).observe(duration_seconds)
    if counts is None:
        RECONCILIATION_RUNS_TOTAL.labels(trigger=trigger, result="aborted").inc()
        return

    RECONCILIATION_RUNS_TOTAL.labels(trigger=trigger, result="completed").inc()
    for outcome in RECORD_OUTCOMES:
        value = counts.get(outcome, 0)
        if value:
            RECONCILIATION_RECORDS_TOTAL.labels(outcome=outcome).inc(value)
    failures = counts.get("notification_failures", 0)
    if failures:
        NOTIFICATION_FAILURES_TOTAL.inc(failures)


# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------

_PATH_PARAM_PATTERNS = [
    # Website ids are caller-visible strings of any shape.
    (re.compile(r"(/websites)/[^/]+"), r"\1/{id}"),
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    (re.compile(r"/[0-9a-f]{12,64}(?=/|$)"), "/{id}"),
    (re.compile(r"/\d+(?=/|$)"), "/{id}"),
]


def _normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency.

    A request whose handler raises is counted as a 500 before the
    exception continues.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        status_code = 500
        start = time.monotonic()
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            HTTP_REQUESTS_TOTAL.labels(method=method, path=normalised, status_code=str(status_code)).inc()
            HTTP_REQUEST_DURATION.labels(method=method, path=normalised).observe(time.monotonic() - start)
