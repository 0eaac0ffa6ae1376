"""API router modules for the tenant billing console."""

from __future__ import annotations

from console_api.routers import billing, entitlements, health, metrics, platform, stripe_webhooks

__all__ = [
    "billing",
    "entitlements",
    "health",
    "metrics",
    "platform",
    "stripe_webhooks",
]
