"""Pure composition of entitlement snapshots.

Given a tenant's current subscription, its plan limits and its active
add-ons, :func:`compose_snapshot` produces the full snapshot the store keeps
for the tenant.  Nothing here touches the database or the clock: callers pass
``now`` explicitly so the same inputs always yield the same snapshot.

Add-on rules
------------
* ``extra_drivers`` is metered: its quantity is added to the plan's
  ``max_drivers`` limit.  A non-numeric plan value is replaced by the
  quantity alone, with a warning.
* ``realtime_tracking`` is a capability flag: it is recorded both as an add-on
  and as an enabled limit.
* ``audit_retention_365`` raises ``audit_retention_days`` to 365.
* Any other add-on code is recorded as an enabled add-on and leaves the
  limits untouched.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from billing_core.models.billing import (
    EntitlementSnapshot,
    EntitlementStatus,
    OrgAddon,
    Plan,
    PlanLimit,
    Subscription,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

ADDON_EXTRA_DRIVERS = "extra_drivers"
ADDON_REALTIME_TRACKING = "realtime_tracking"
ADDON_AUDIT_RETENTION_365 = "audit_retention_365"

LIMIT_MAX_DRIVERS = "max_drivers"
LIMIT_REALTIME_TRACKING = "realtime_tracking"
LIMIT_AUDIT_RETENTION_DAYS = "audit_retention_days"

EXTENDED_AUDIT_RETENTION_DAYS = 365
DEFAULT_AUDIT_RETENTION_DAYS = 30

_ONE_DAY = timedelta(days=1)


# ---------------------------------------------------------------------------
# Grace period arithmetic
# ---------------------------------------------------------------------------


def is_grace_active(grace_until: datetime | None, now: datetime) -> bool:
    """Whether a grace window ending at *grace_until* is still open at *now*.

    The comparison is strict: a window ending exactly at *now* has expired.
    """
    return grace_until is not None and grace_until > now


def grace_days_remaining(grace_until: datetime | None, now: datetime) -> int:
    """Whole days left in the grace window, rounded up; 0 once it has expired."""
    if not is_grace_active(grace_until, now):
        return 0
    assert grace_until is not None
    return math.ceil((grace_until - now) / _ONE_DAY)


def derive_status(subscription: Subscription, now: datetime) -> EntitlementStatus:
    """Map a subscription to the status recorded on its snapshot.

    A past-due subscription whose grace window is still open is reported as
    ``grace_period``; every other subscription keeps its own status.
    """
    if subscription.status == SubscriptionStatus.PAST_DUE and is_grace_active(
        subscription.grace_period_until, now
    ):
        return EntitlementStatus.GRACE_PERIOD
    return EntitlementStatus(subscription.status.value)


# ---------------------------------------------------------------------------
# Limits and add-ons
# ---------------------------------------------------------------------------


def build_plan_limits(limits: Iterable[PlanLimit]) -> dict[str, Any]:
    """Render plan limit rows into the snapshot ``limits`` mapping.

    Numeric limits are wrapped as ``{"value": n}`` so that metered add-ons
    can be composed additively; text limits are stored as the bare string.
    Rows with neither value are omitted.
    """
    rendered: dict[str, Any] = {}
    for limit in limits:
        if limit.value is not None:
            rendered[limit.limit_key] = {"value": limit.value}
        elif limit.value_text is not None:
            rendered[limit.limit_key] = limit.value_text
    return rendered


def _as_number(raw: Any) -> int | float | None:
    if isinstance(raw, dict):
        raw = raw.get("value")
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        return None
    return raw


def _numeric(raw: Any) -> int | float:
    value = _as_number(raw)
    return 0 if value is None else value


def apply_addons(
    limits: dict[str, Any],
    org_addons: Iterable[OrgAddon],
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Fold a tenant's add-ons into *limits*.

    Returns a new ``(limits, addons)`` pair; *limits* is not modified.
    Add-ons are applied in code order so the result does not depend on the
    order rows come back from the store.
    """
    composed = dict(limits)
    addons: dict[str, Any] = {}

    for org_addon in sorted(org_addons, key=lambda a: (a.addon_code, a.addon_id)):
        code = org_addon.addon_code
        if code == ADDON_EXTRA_DRIVERS:
            quantity = org_addon.quantity
            # A zero-quantity row still reports the add-on as held.
            addons[code] = addons.get(code, 0) + (quantity or 1)
            current = composed.get(LIMIT_MAX_DRIVERS)
            if current is not None and _as_number(current) is None:
                logger.warning(
                    "Plan limit %s=%r is not numeric; extra_drivers add-on for tenant %s replaces it",
                    LIMIT_MAX_DRIVERS,
                    current,
                    org_addon.tenant_id,
                )
            composed[LIMIT_MAX_DRIVERS] = {"value": _numeric(current) + quantity}
        elif code == ADDON_REALTIME_TRACKING:
            addons[code] = True
            composed[LIMIT_REALTIME_TRACKING] = True
        elif code == ADDON_AUDIT_RETENTION_365:
            addons[code] = True
            composed[LIMIT_AUDIT_RETENTION_DAYS] = EXTENDED_AUDIT_RETENTION_DAYS
        else:
            addons[code] = True

    return composed, addons


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


def inactive_snapshot(tenant_id: str, now: datetime) -> EntitlementSnapshot:
    """Snapshot for a tenant without a live subscription."""
    return EntitlementSnapshot(
        tenant_id=tenant_id,
        plan_code=None,
        status=EntitlementStatus.INACTIVE,
        limits={},
        addons={},
        updated_at=now,
    )


def compose_snapshot(
    tenant_id: str,
    subscription: Subscription | None,
    plan: Plan | None,
    plan_limits: Iterable[PlanLimit],
    org_addons: Iterable[OrgAddon],
    now: datetime,
) -> EntitlementSnapshot:
    """Compute the complete entitlement snapshot for *tenant_id*.

    Parameters
    ----------
    tenant_id:
        Tenant the snapshot belongs to.
    subscription:
        The tenant's current live subscription, or ``None``.
    plan:
        The subscription's plan.  Required when *subscription* is given.
    plan_limits:
        Limit rows of *plan*.
    org_addons:
        The tenant's active add-ons.
    now:
        Reference time for grace-period evaluation and ``updated_at``.
    """
    if subscription is None:
        return inactive_snapshot(tenant_id, now)
    if plan is None:
        raise ValueError(f"Subscription {subscription.stripe_subscription_id} has no plan")

    limits, addons = apply_addons(build_plan_limits(plan_limits), org_addons)
    return EntitlementSnapshot(
        tenant_id=tenant_id,
        plan_code=plan.code,
        status=derive_status(subscription, now),
        limits=limits,
        addons=addons,
        updated_at=now,
    )
