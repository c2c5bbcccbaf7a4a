"""Middleware components for the SiteDesk portal API."""

from __future__ import annotations

from portal_api.middleware.json_formatter import JSONFormatter, configure_json_logging
from portal_api.middleware.logging import RequestLoggingMiddleware
from portal_api.middleware.prometheus import PrometheusMiddleware, observe_reconciliation_run
from portal_api.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware

__all__ = [
    "JSONFormatter",
    "PrometheusMiddleware",
    "RateLimitConfig",
    "RateLimitMiddleware",
    "RequestLoggingMiddleware",
    "configure_json_logging",
    "observe_reconciliation_run",
]
