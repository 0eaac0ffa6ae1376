"""Entitlement composition rules."""

from billing_core.entitlements.composition import (
    apply_addons,
    build_plan_limits,
    compose_snapshot,
    derive_status,
    grace_days_remaining,
    inactive_snapshot,
    is_grace_active,
)

__all__ = [
    "apply_addons",
    "build_plan_limits",
    "compose_snapshot",
    "derive_status",
    "grace_days_remaining",
    "inactive_snapshot",
    "is_grace_active",
]
