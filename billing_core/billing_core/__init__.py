"""Billing store and entitlement composition for the tenant console."""

__version__ = "0.4.0"
