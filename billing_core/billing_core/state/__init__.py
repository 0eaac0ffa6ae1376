"""Billing state persistence layer (PostgreSQL in production, SQLite locally)."""

from billing_core.state.database import create_session_factory, get_engine, set_tenant_context
from billing_core.state.repository import (
    AddonRepository,
    BillingEventRepository,
    EntitlementRepository,
    PlanRepository,
    SubscriptionRepository,
)

__all__ = [
    "AddonRepository",
    "BillingEventRepository",
    "EntitlementRepository",
    "PlanRepository",
    "SubscriptionRepository",
    "create_session_factory",
    "get_engine",
    "set_tenant_context",
]
