"""Entitlement enforcement gate.

Read-side checks that feature code calls before a state-changing action.
Business denials come back as :class:`Decision` values; only infrastructure
failures raise.

The gate reads the cached :class:`EntitlementSnapshot`.  When a tenant has
no snapshot yet it rebuilds once and re-reads; that is the only write this
module can cause.  Grace-period checks always consult the live subscription
rather than the snapshot, because the snapshot's ``grace_period`` status
does not expire on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from billing_core.entitlements.composition import (
    ADDON_AUDIT_RETENTION_365,
    DEFAULT_AUDIT_RETENTION_DAYS,
    EXTENDED_AUDIT_RETENTION_DAYS,
    LIMIT_AUDIT_RETENTION_DAYS,
    grace_days_remaining,
    is_grace_active,
)
from billing_core.models.billing import EntitlementSnapshot, EntitlementStatus, SubscriptionStatus
from billing_core.state.repository import EntitlementRepository, SubscriptionRepository
from sqlalchemy.ext.asyncio import AsyncSession

from console_api.services.entitlements_rebuilder import Clock, EntitlementsRebuilder, utcnow

logger = logging.getLogger(__name__)

REASON_NO_ENTITLEMENTS = "No entitlements found"
REASON_INACTIVE = "Subscription inactive"
REASON_GRACE_EXPIRED = "Grace period expired. Please update payment method."

_BLOCKED_STATUSES = frozenset({EntitlementStatus.INACTIVE, EntitlementStatus.CANCELED})
_GRACE_STATUSES = frozenset({EntitlementStatus.PAST_DUE, EntitlementStatus.GRACE_PERIOD})
_ACTIVE_STATUSES = frozenset({EntitlementStatus.ACTIVE, EntitlementStatus.TRIALING})


@dataclass(frozen=True)
class Decision:
    """Outcome of an enforcement check."""

    allowed: bool
    reason: str | None = None
    current_count: int | None = None
    limit: int | float | None = None


@dataclass(frozen=True)
class GracePeriodInfo:
    is_in_grace: bool
    grace_until: datetime | None = None
    days_remaining: int = 0


@dataclass(frozen=True)
class StatusInfo:
    """Subscription standing for writes that tolerate a grace period."""

    status: str
    is_active: bool
    is_in_grace: bool
    warning: str | None = None


def limit_key_for(resource_kind: str) -> str:
    """Limit key guarding *resource_kind* (``drivers`` -> ``max_drivers``)."""
    return f"max_{resource_kind}"


class EntitlementGate:
    """Authorize tenant actions against their entitlements.

    Parameters
    ----------
    session:
        Privileged session.  On a snapshot cache miss the gate's rebuild is
        flushed through it; the caller commits.
    clock:
        Source of "now" for grace comparisons.
    """

    def __init__(self, session: AsyncSession, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._entitlements = EntitlementRepository(session)
        self._subscriptions = SubscriptionRepository(session)
        self._rebuilder = EntitlementsRebuilder(session, clock=clock)

    async def get_snapshot(self, tenant_id: str) -> EntitlementSnapshot | None:
        """Return the tenant's snapshot, rebuilding once on a cache miss."""
        snapshot = await self._entitlements.get(tenant_id)
        if snapshot is not None:
            return snapshot

        logger.info("No entitlement snapshot for tenant %s; rebuilding", tenant_id)
        await self._rebuilder.rebuild(tenant_id)
        return await self._entitlements.get(tenant_id)

    async def check_grace_period(self, tenant_id: str) -> GracePeriodInfo:
        """Report the grace window of the tenant's live past-due subscription.

        Tenants without a live ``past_due`` subscription, or whose
        subscription carries no grace deadline, are never in grace.
        """
        subscription = await self._subscriptions.get_live_for_tenant(tenant_id)
        if subscription is None or subscription.status != SubscriptionStatus.PAST_DUE:
            return GracePeriodInfo(is_in_grace=False)

        grace_until = subscription.grace_period_until
        if grace_until is None:
            return GracePeriodInfo(is_in_grace=False)

        now = self._clock()
        return GracePeriodInfo(
            is_in_grace=is_grace_active(grace_until, now),
            grace_until=grace_until,
            days_remaining=grace_days_remaining(grace_until, now),
        )

    async def can_perform_limited_action(
        self,
        tenant_id: str,
        resource_kind: str,
        current_count: int,
    ) -> Decision:
        """Whether the tenant may create one more unit of *resource_kind*.

        Parameters
        ----------
        tenant_id:
            Tenant performing the action.
        resource_kind:
            Metered resource, e.g. ``"drivers"``; guarded by ``max_<kind>``.
        current_count:
            How many units the tenant holds now, as counted by the caller.
        """
        snapshot, denial = await self._gated_snapshot(tenant_id)
        if denial is not None:
            return denial
        assert snapshot is not None

        limit_key = limit_key_for(resource_kind)
        limit = snapshot.numeric_limit(limit_key)
        if limit is None:
            return Decision(allowed=False, reason=f"Invalid {limit_key} limit", current_count=current_count)

        if current_count >= limit:
            return Decision(
                allowed=False,
                reason=f"Maximum {resource_kind} limit reached ({_format_number(limit)})",
                current_count=current_count,
                limit=limit,
            )
        return Decision(allowed=True, current_count=current_count, limit=limit)

    async def can_use_feature(self, tenant_id: str, feature_key: str) -> Decision:
        """Whether *feature_key* is granted by the tenant's add-ons or limits."""
        snapshot, denial = await self._gated_snapshot(tenant_id)
        if denial is not None:
            return denial
        assert snapshot is not None

        if not snapshot.has_feature(feature_key):
            return Decision(
                allowed=False,
                reason=f"Feature '{feature_key}' requires an add-on. Please upgrade your plan.",
            )
        return Decision(allowed=True)

    async def audit_retention_days(self, tenant_id: str) -> int:
        """Days of audit history the tenant may keep."""
        snapshot = await self.get_snapshot(tenant_id)
        if snapshot is None:
            return DEFAULT_AUDIT_RETENTION_DAYS
        if snapshot.addons.get(ADDON_AUDIT_RETENTION_365):
            return EXTENDED_AUDIT_RETENTION_DAYS
        days = snapshot.numeric_limit(LIMIT_AUDIT_RETENTION_DAYS)
        return int(days) if days is not None else DEFAULT_AUDIT_RETENTION_DAYS

    async def check_status(self, tenant_id: str) -> StatusInfo:
        """Standing of the tenant for non-critical writes, with a grace warning."""
        snapshot = await self.get_snapshot(tenant_id)
        if snapshot is None:
            return StatusInfo(status=EntitlementStatus.INACTIVE.value, is_active=False, is_in_grace=False)

        is_in_grace = False
        warning: str | None = None
        if snapshot.status in _GRACE_STATUSES:
            grace = await self.check_grace_period(tenant_id)
            is_in_grace = grace.is_in_grace
            if is_in_grace:
                warning = f"Payment past due. Grace period expires in {grace.days_remaining} days."

        return StatusInfo(
            status=snapshot.status.value,
            is_active=snapshot.status in _ACTIVE_STATUSES,
            is_in_grace=is_in_grace,
            warning=warning,
        )

    async def _gated_snapshot(self, tenant_id: str) -> tuple[EntitlementSnapshot | None, Decision | None]:
        snapshot = await self.get_snapshot(tenant_id)
        if snapshot is None:
            return None, Decision(allowed=False, reason=REASON_NO_ENTITLEMENTS)
        if snapshot.status in _BLOCKED_STATUSES:
            return snapshot, Decision(allowed=False, reason=REASON_INACTIVE)
        if snapshot.status in _GRACE_STATUSES:
            grace = await self.check_grace_period(tenant_id)
            if not grace.is_in_grace:
                return snapshot, Decision(allowed=False, reason=REASON_GRACE_EXPIRED)
        return snapshot, None


def _format_number(value: int | float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
