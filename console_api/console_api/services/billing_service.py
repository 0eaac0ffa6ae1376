"""Stripe checkout, customer portal and subscription lookups for one tenant.

The service never writes subscription state: checkout only creates a Stripe
session whose metadata carries the tenant id, and the resulting
``checkout.session.completed`` webhook is what records the subscription.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Any

import stripe
from billing_core.models.billing import Subscription
from billing_core.state.repository import AddonRepository, PlanRepository, SubscriptionRepository
from sqlalchemy.ext.asyncio import AsyncSession

from console_api.config import BillingConfig

logger = logging.getLogger(__name__)


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


class BillingService:
    """Stripe billing operations for a single tenant.

    Parameters
    ----------
    session:
        Privileged database session (plans, add-ons and subscriptions live
        in the platform schema).
    config:
        Billing configuration carrying the Stripe key and redirect URLs.
    tenant_id:
        The tenant performing billing operations.
    """

    def __init__(
        self,
        session: AsyncSession,
        config: BillingConfig,
        *,
        tenant_id: str,
    ) -> None:
        self._config = config
        self._tenant_id = tenant_id
        self._plans = PlanRepository(session)
        self._addons = AddonRepository(session)
        self._subscriptions = SubscriptionRepository(session)

    async def _stripe_call(self, method: Callable[..., Any], **params: Any) -> Any:
        """Run a blocking Stripe SDK call off the event loop with per-request credentials."""
        params["api_key"] = self._config.stripe_api_key
        if self._config.stripe_api_version:
            params["stripe_version"] = self._config.stripe_api_version
        return await asyncio.to_thread(method, **params)

    async def create_checkout_session(
        self,
        price_id: str,
        addon_price_ids: Sequence[str] = (),
        *,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, str]:
        """Create a Stripe Checkout session for a plan and optional add-ons.

        Parameters
        ----------
        price_id:
            Stripe price of the plan.  Must belong to an active plan.
        addon_price_ids:
            Stripe prices of add-ons.  Prices that do not map to an active
            add-on are skipped.
        success_url, cancel_url:
            Redirect overrides; the configured defaults are used otherwise.

        Returns
        -------
        dict
            ``session_id`` and ``url`` of the checkout session.

        Raises
        ------
        ValueError
            If *price_id* does not map to an active plan.
        """
        plan = await self._plans.get_active_by_price_id(price_id)
        if plan is None:
            raise ValueError("Invalid plan")

        line_items: list[dict[str, Any]] = [{"price": price_id, "quantity": 1}]
        for addon_price_id in addon_price_ids:
            addon = await self._addons.get_active_by_price_id(addon_price_id)
            if addon is None:
                logger.info("Skipping unknown add-on price %s for tenant %s", addon_price_id, self._tenant_id)
                continue
            line_items.append({"price": addon_price_id, "quantity": 1})

        metadata = {"tenant_id": self._tenant_id}
        checkout_session = await self._stripe_call(
            stripe.checkout.Session.create,
            mode="subscription",
            line_items=line_items,
            success_url=success_url or self._config.checkout_success_url,
            cancel_url=cancel_url or self._config.checkout_cancel_url,
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
        logger.info(
            "Created checkout session %s tenant=%s plan=%s items=%d",
            checkout_session["id"],
            self._tenant_id,
            plan.code,
            len(line_items),
        )
        return {"session_id": checkout_session["id"], "url": checkout_session["url"]}

    async def create_portal_session(self, return_url: str | None = None) -> dict[str, str]:
        """Create a Stripe Customer Portal session.

        Raises
        ------
        LookupError
            If the tenant has no live subscription with a Stripe customer.
        """
        subscription = await self._subscriptions.get_live_for_tenant(self._tenant_id)
        if subscription is None or not subscription.stripe_customer_id:
            raise LookupError("No active subscription found")

        portal_session = await self._stripe_call(
            stripe.billing_portal.Session.create,
            customer=subscription.stripe_customer_id,
            return_url=return_url or self._config.portal_return_url,
        )
        return {"url": portal_session["url"]}

    async def get_subscription_info(self) -> dict[str, Any]:
        """Return the tenant's current subscription as stored locally."""
        subscription = await self._subscriptions.get_live_for_tenant(self._tenant_id)
        if subscription is None:
            return {
                "plan_code": None,
                "status": "inactive",
                "subscription_id": None,
                "current_period_start": None,
                "current_period_end": None,
                "cancel_at_period_end": False,
                "grace_period_until": None,
            }
        return await self._describe(subscription)

    async def _describe(self, subscription: Subscription) -> dict[str, Any]:
        plan = await self._plans.get(subscription.plan_id)
        return {
            "plan_code": plan.code if plan is not None else None,
            "status": subscription.status.value,
            "subscription_id": subscription.stripe_subscription_id,
            "current_period_start": _iso(subscription.current_period_start),
            "current_period_end": _iso(subscription.current_period_end),
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "grace_period_until": _iso(subscription.grace_period_until),
        }
