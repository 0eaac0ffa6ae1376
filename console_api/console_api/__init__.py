"""Tenant billing console API: Stripe webhooks, entitlements and billing routes."""

__version__ = "0.4.0"
