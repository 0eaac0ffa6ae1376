"""Typed entities shared by the billing store and the API services."""

from billing_core.models.billing import (
    LIVE_SUBSCRIPTION_STATUSES,
    Addon,
    BillingEvent,
    EntitlementSnapshot,
    EntitlementStatus,
    MalformedRowError,
    OrgAddon,
    Plan,
    PlanLimit,
    Subscription,
    SubscriptionStatus,
)

__all__ = [
    "LIVE_SUBSCRIPTION_STATUSES",
    "Addon",
    "BillingEvent",
    "EntitlementSnapshot",
    "EntitlementStatus",
    "MalformedRowError",
    "OrgAddon",
    "Plan",
    "PlanLimit",
    "Subscription",
    "SubscriptionStatus",
]
