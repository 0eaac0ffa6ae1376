"""Recompute a tenant's entitlement snapshot from the billing store.

The rebuilder reads the tenant's live subscription, its plan limits and its
active add-ons, composes the snapshot in memory with
:func:`billing_core.entitlements.compose_snapshot` and writes it with a
single upsert.  It runs inside the caller's transaction: if any read fails
the exception propagates, nothing has been written and the previous
snapshot survives the rollback.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from billing_core.entitlements.composition import compose_snapshot
from billing_core.models.billing import EntitlementSnapshot
from billing_core.state.repository import (
    AddonRepository,
    EntitlementRepository,
    PlanRepository,
    SubscriptionRepository,
)
from sqlalchemy.ext.asyncio import AsyncSession

from console_api.middleware.prometheus import BILLING_ENTITLEMENT_REBUILDS_TOTAL
from console_api.services.billing_errors import PlanNotFound

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


class EntitlementsRebuilder:
    """Materialise entitlement snapshots.

    Parameters
    ----------
    session:
        A privileged (non-RLS) session.  The caller owns the transaction.
    clock:
        Source of the reference time used for grace evaluation and the
        snapshot's ``updated_at``.
    """

    def __init__(self, session: AsyncSession, *, clock: Clock = utcnow) -> None:
        self._session = session
        self._clock = clock
        self._subscriptions = SubscriptionRepository(session)
        self._plans = PlanRepository(session)
        self._addons = AddonRepository(session)
        self._entitlements = EntitlementRepository(session)

    async def rebuild(self, tenant_id: str) -> EntitlementSnapshot:
        """Compute and persist the complete snapshot for *tenant_id*.

        Raises
        ------
        PlanNotFound
            If the live subscription references a plan that does not exist.
        MalformedRowError
            If a row read along the way fails validation.
        """
        try:
            snapshot = await self._compose(tenant_id)
            await self._entitlements.upsert(snapshot)
        except Exception:
            BILLING_ENTITLEMENT_REBUILDS_TOTAL.labels(outcome="error").inc()
            logger.warning("Entitlement rebuild failed for tenant %s", tenant_id, exc_info=True)
            raise

        BILLING_ENTITLEMENT_REBUILDS_TOTAL.labels(outcome="success").inc()
        logger.info(
            "Rebuilt entitlements tenant=%s plan=%s status=%s",
            tenant_id,
            snapshot.plan_code,
            snapshot.status.value,
        )
        return snapshot

    async def _compose(self, tenant_id: str) -> EntitlementSnapshot:
        now = self._clock()
        subscription = await self._subscriptions.get_live_for_tenant(tenant_id)
        if subscription is None:
            return compose_snapshot(tenant_id, None, None, [], [], now)

        plan = await self._plans.get(subscription.plan_id)
        if plan is None:
            raise PlanNotFound(plan_id=subscription.plan_id)

        plan_limits = await self._plans.list_limits(plan.id)
        org_addons = await self._addons.list_active_for_tenant(tenant_id)
        return compose_snapshot(tenant_id, subscription, plan, plan_limits, org_addons, now)
