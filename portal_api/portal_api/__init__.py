"""SiteDesk portal API: billing reconciliation service and admin endpoints."""

__version__ = "0.3.0"
