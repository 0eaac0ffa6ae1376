"""Platform-operator service for cross-tenant billing administration.

Provides revenue metrics, subscription listings, plan limit management and
manual entitlement rebuilds.  All methods are cross-tenant and must only be
reached through platform-admin guarded routes.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from billing_core.models.billing import BillingEvent, EntitlementSnapshot, Plan, Subscription, SubscriptionStatus
from billing_core.state.repository import BillingEventRepository, PlanRepository, SubscriptionRepository
from sqlalchemy.ext.asyncio import AsyncSession

from console_api.services.entitlements_rebuilder import Clock, EntitlementsRebuilder, utcnow

logger = logging.getLogger(__name__)

CHURN_WINDOW_DAYS = 30


class PlatformService:
    """Cross-tenant composition layer for platform operators."""

    def __init__(self, session: AsyncSession, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._subscriptions = SubscriptionRepository(session)
        self._plans = PlanRepository(session)
        self._events = BillingEventRepository(session)
        self._rebuilder = EntitlementsRebuilder(session, clock=clock)

    async def get_metrics(self, churn_window_days: int = CHURN_WINDOW_DAYS) -> dict[str, Any]:
        """Return MRR, active tenants, churn and subscription counts.

        Churn is the number of subscriptions cancelled within the window
        divided by the active or trialing subscriptions that existed at its
        start, as a percentage.
        """
        now = self._clock()
        window_start = now - timedelta(days=churn_window_days)

        by_status = await self._subscriptions.count_by_status()
        mrr_cents = await self._subscriptions.monthly_recurring_cents()
        active_tenants = await self._subscriptions.count_active_tenants()

        active_at_start = await self._subscriptions.count_active_at(window_start)
        canceled = await self._subscriptions.count_canceled_between(window_start, now)
        churn_rate = (canceled / active_at_start) * 100 if active_at_start else 0.0

        return {
            "mrr": mrr_cents / 100,
            "mrr_cents": mrr_cents,
            "active_tenants": active_tenants,
            "churn_rate": round(churn_rate, 2),
            "churn_window_days": churn_window_days,
            "total_subscriptions": sum(by_status.values()),
            "subscriptions_by_status": {s.value: by_status.get(s.value, 0) for s in SubscriptionStatus},
        }

    async def list_subscriptions(
        self,
        *,
        status: SubscriptionStatus | None = None,
        tenant_id: str | None = None,
        plan_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Return a filtered page of subscriptions joined with plan codes."""
        rows, total = await self._subscriptions.list_page(
            status=status.value if status is not None else None,
            tenant_id=tenant_id,
            plan_id=plan_id,
            limit=limit,
            offset=offset,
        )
        plans = await self._plans.list_by_ids(sorted({row.plan_id for row in rows}))
        return {
            "items": [_subscription_view(row, plans.get(row.plan_id)) for row in rows],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    async def update_plan_limits(
        self,
        plan_id: str,
        limits: Mapping[str, int | float | str | None],
    ) -> dict[str, Any]:
        """Apply *limits* to *plan_id* and rebuild every tenant on that plan.

        Raises
        ------
        ValueError
            If the plan does not exist or a value has an unsupported type.
        """
        updated = await self._plans.set_limits(plan_id, limits)
        tenants = await self._subscriptions.list_live_tenants_on_plan(plan_id)
        for tenant_id in tenants:
            await self._rebuilder.rebuild(tenant_id)
        logger.info("Plan %s limits updated; rebuilt %d tenant(s)", plan_id, len(tenants))
        return {
            "plan_id": plan_id,
            "limits": [limit.model_dump() for limit in updated],
            "rebuilt_tenants": tenants,
        }

    async def rebuild_tenant(self, tenant_id: str) -> EntitlementSnapshot:
        """Force an entitlement rebuild for one tenant."""
        return await self._rebuilder.rebuild(tenant_id)

    async def list_dead_letters(self, limit: int = 100) -> list[BillingEvent]:
        """Dead-lettered events awaiting operator attention."""
        return await self._events.list_dead_lettered(limit)


def _subscription_view(row: Subscription, plan: Plan | None) -> dict[str, Any]:
    view = row.model_dump(mode="json")
    view["plan_code"] = plan.code if plan is not None else None
    return view
