"""Billing lifecycle engine for SiteDesk website deliveries."""

__version__ = "0.3.0"
