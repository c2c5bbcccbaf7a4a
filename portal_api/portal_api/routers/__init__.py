"""API router modules for the SiteDesk portal."""

from __future__ import annotations

from portal_api.routers import admin_billing, health, metrics, websites

__all__ = [
    "admin_billing",
    "health",
    "metrics",
    "websites",
]
