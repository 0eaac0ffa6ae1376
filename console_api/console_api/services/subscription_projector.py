"""Project verified Stripe events onto the subscription table.

Each handler maps one event type to a set-style mutation of a single
``platform.subscriptions`` row and then rebuilds the owning tenant's
entitlements.  Handlers never accumulate state, so replaying the same event
converges on the same row.

Supported events:

- ``checkout.session.completed``
- ``customer.subscription.created`` / ``customer.subscription.updated``
- ``customer.subscription.deleted``
- ``invoice.payment_succeeded`` (and ``invoice.paid``)
- ``invoice.payment_failed``
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import stripe
from billing_core.models.billing import Subscription, SubscriptionStatus
from billing_core.state.repository import PlanRepository, SubscriptionRepository
from sqlalchemy.ext.asyncio import AsyncSession

from console_api.config import BillingConfig
from console_api.services.billing_errors import (
    MissingTenantContext,
    PlanNotFound,
    SubscriptionNotFound,
)
from console_api.services.entitlements_rebuilder import Clock, EntitlementsRebuilder, utcnow

logger = logging.getLogger(__name__)

SubscriptionFetcher = Callable[[str], Awaitable[dict[str, Any]]]

# Metadata keys that may carry the tenant id, in lookup order.
TENANT_METADATA_KEYS: tuple[str, ...] = ("tenant_id", "organization_id")


class StripeSubscriptionFetcher:
    """Retrieve a subscription from the Stripe API as a plain dict.

    The API key is passed per request; the module-level ``stripe.api_key``
    is never touched.
    """

    def __init__(self, api_key: str, api_version: str | None = None) -> None:
        self._api_key = api_key
        self._api_version = api_version

    async def __call__(self, subscription_id: str) -> dict[str, Any]:
        params: dict[str, Any] = {"api_key": self._api_key}
        if self._api_version:
            params["stripe_version"] = self._api_version
        subscription = await asyncio.to_thread(stripe.Subscription.retrieve, subscription_id, **params)
        return json.loads(str(subscription))


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def tenant_from_metadata(metadata: dict[str, Any] | None) -> str | None:
    """Return the tenant id recorded in Stripe *metadata*, if any."""
    if not metadata:
        return None
    for key in TENANT_METADATA_KEYS:
        value = metadata.get(key)
        if value:
            return str(value)
    return None


def _object_id(ref: Any) -> str | None:
    """Accept either an id string or an expanded Stripe object."""
    if isinstance(ref, dict):
        ref = ref.get("id")
    return str(ref) if ref else None


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _price_id(subscription: dict[str, Any]) -> str | None:
    price = _first_item(subscription).get("price") or {}
    return _object_id(price)


def _epoch(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _period(subscription: dict[str, Any], key: str) -> datetime | None:
    # Newer API versions report billing periods per item.
    value = subscription.get(key)
    if value is None:
        value = _first_item(subscription).get(key)
    return _epoch(value)


def invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    """Subscription id of an invoice, or ``None`` for one-time payments."""
    ref = invoice.get("subscription")
    if ref is None:
        parent = invoice.get("parent") or {}
        ref = (parent.get("subscription_details") or {}).get("subscription")
    return _object_id(ref)


# ---------------------------------------------------------------------------
# Projector
# ---------------------------------------------------------------------------


class SubscriptionProjector:
    """Apply Stripe events to subscriptions and rebuild entitlements.

    Parameters
    ----------
    session:
        Privileged session; the dispatcher owns the transaction.
    config:
        Billing configuration (grace window, Stripe credentials).
    rebuilder:
        Entitlements rebuilder sharing *session*.  Built on demand when
        omitted.
    fetch_subscription:
        Coroutine resolving a subscription id to its Stripe object.  Defaults
        to :class:`StripeSubscriptionFetcher`.
    clock:
        Source of "now" for grace windows and ``updated_at``.
    """

    def __init__(
        self,
        session: AsyncSession,
        config: BillingConfig,
        *,
        rebuilder: EntitlementsRebuilder | None = None,
        fetch_subscription: SubscriptionFetcher | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._config = config
        self._clock = clock
        self._plans = PlanRepository(session)
        self._subscriptions = SubscriptionRepository(session)
        self._rebuilder = rebuilder or EntitlementsRebuilder(session, clock=clock)
        self._fetch_subscription = fetch_subscription or StripeSubscriptionFetcher(
            config.stripe_api_key, config.stripe_api_version
        )
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.payment_succeeded": self._on_payment_succeeded,
            "invoice.paid": self._on_payment_succeeded,
            "invoice.payment_failed": self._on_payment_failed,
        }

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def apply(self, event: dict[str, Any]) -> None:
        """Run the handler registered for ``event["type"]``.

        Raises
        ------
        KeyError
            If no handler is registered; check :meth:`handles` first.
        """
        handler = self._handlers[event["type"]]
        data_object = (event.get("data") or {}).get("object") or {}
        await handler(data_object)

    # -- checkout ----------------------------------------------------------

    async def _on_checkout_completed(self, session: dict[str, Any]) -> None:
        embedded = session.get("subscription") if isinstance(session.get("subscription"), dict) else None
        tenant_id = tenant_from_metadata(session.get("metadata"))
        if tenant_id is None and embedded is not None:
            tenant_id = tenant_from_metadata(embedded.get("metadata"))
        if tenant_id is None:
            raise MissingTenantContext("checkout.session.completed", session.get("id"))

        subscription_id = _object_id(session.get("subscription"))
        if subscription_id is None:
            logger.info("Checkout session %s has no subscription; nothing to project", session.get("id"))
            return

        subscription = embedded if embedded is not None else await self._fetch_subscription(subscription_id)
        plan_id = await self._resolve_plan_id(subscription)

        stored = await self._subscriptions.upsert(
            stripe_subscription_id=subscription_id,
            tenant_id=tenant_id,
            plan_id=plan_id,
            stripe_customer_id=_object_id(subscription.get("customer")) or _object_id(session.get("customer")),
            status=SubscriptionStatus.from_provider(subscription.get("status")),
            current_period_start=_period(subscription, "current_period_start"),
            current_period_end=_period(subscription, "current_period_end"),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
            grace_period_until=None,
            updated_at=self._clock(),
        )
        logger.info(
            "Checkout completed tenant=%s subscription=%s status=%s",
            tenant_id,
            subscription_id,
            stored.status.value,
        )
        await self._rebuilder.rebuild(tenant_id)

    # -- subscription lifecycle --------------------------------------------

    async def _on_subscription_changed(self, subscription: dict[str, Any]) -> None:
        subscription_id = str(subscription["id"])
        plan_id = await self._resolve_plan_id(subscription)

        existing = await self._subscriptions.get_by_stripe_id(subscription_id)
        if existing is None:
            raise SubscriptionNotFound(subscription_id)

        status = SubscriptionStatus.from_provider(subscription.get("status"))
        await self._subscriptions.update_by_stripe_id(
            subscription_id,
            plan_id=plan_id,
            status=status,
            current_period_start=_period(subscription, "current_period_start"),
            current_period_end=_period(subscription, "current_period_end"),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
            grace_period_until=self._carried_grace(existing, status),
            updated_at=self._clock(),
        )
        await self._rebuilder.rebuild(existing.tenant_id)

    async def _on_subscription_deleted(self, subscription: dict[str, Any]) -> None:
        subscription_id = str(subscription["id"])
        existing = await self._subscriptions.get_by_stripe_id(subscription_id)
        if existing is None:
            logger.info("Deletion of unknown subscription %s ignored", subscription_id)
            return

        await self._subscriptions.update_by_stripe_id(
            subscription_id,
            status=SubscriptionStatus.CANCELED,
            grace_period_until=None,
            updated_at=self._clock(),
        )
        await self._rebuilder.rebuild(existing.tenant_id)

    # -- invoices ----------------------------------------------------------

    async def _on_payment_succeeded(self, invoice: dict[str, Any]) -> None:
        existing = await self._invoice_subscription(invoice)
        if existing is None:
            return

        await self._subscriptions.update_by_stripe_id(
            existing.stripe_subscription_id,
            status=SubscriptionStatus.ACTIVE,
            grace_period_until=None,
            updated_at=self._clock(),
        )
        await self._rebuilder.rebuild(existing.tenant_id)

    async def _on_payment_failed(self, invoice: dict[str, Any]) -> None:
        existing = await self._invoice_subscription(invoice)
        if existing is None:
            return

        now = self._clock()
        grace_until = now + timedelta(days=self._config.grace_days)
        await self._subscriptions.update_by_stripe_id(
            existing.stripe_subscription_id,
            status=SubscriptionStatus.PAST_DUE,
            grace_period_until=grace_until,
            updated_at=now,
        )
        logger.warning(
            "Payment failed tenant=%s subscription=%s grace_until=%s",
            existing.tenant_id,
            existing.stripe_subscription_id,
            grace_until.isoformat(),
        )
        await self._rebuilder.rebuild(existing.tenant_id)

    # -- helpers -----------------------------------------------------------

    async def _resolve_plan_id(self, subscription: dict[str, Any]) -> str:
        price_id = _price_id(subscription)
        plan = await self._plans.get_active_by_price_id(price_id) if price_id else None
        if plan is None:
            raise PlanNotFound(price_id)
        return plan.id

    async def _invoice_subscription(self, invoice: dict[str, Any]) -> Subscription | None:
        subscription_id = invoice_subscription_id(invoice)
        if subscription_id is None:
            logger.debug("Invoice %s is not tied to a subscription", invoice.get("id"))
            return None
        existing = await self._subscriptions.get_by_stripe_id(subscription_id)
        if existing is None:
            logger.info("Invoice %s references unknown subscription %s", invoice.get("id"), subscription_id)
        return existing

    @staticmethod
    def _carried_grace(existing: Subscription, status: SubscriptionStatus) -> datetime | None:
        # A grace window only survives while the subscription stays past_due.
        if status == SubscriptionStatus.PAST_DUE and existing.status == SubscriptionStatus.PAST_DUE:
            return existing.grace_period_until
        return None
