"""Billing endpoints: Stripe checkout, customer portal and subscription info."""

from __future__ import annotations

import logging
from typing import Any

import stripe
from fastapi import APIRouter, HTTPException

from console_api.dependencies import BillingConfigDep, ServiceSessionDep, SessionDep, SettingsDep, TenantDep
from console_api.schemas import (
    CheckoutRequest,
    CheckoutSessionResponse,
    PortalRequest,
    PortalSessionResponse,
    SubscriptionResponse,
)
from console_api.services.billing_service import BillingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])

_BILLING_DISABLED = "Billing is not enabled for this installation."


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    session: SessionDep,
    settings: SettingsDep,
    config: BillingConfigDep,
    tenant_id: TenantDep,
) -> dict[str, Any]:
    """Return the current subscription info for the authenticated tenant."""
    if not settings.billing_enabled:
        return {"plan_code": None, "status": "inactive", "billing_enabled": False}

    service = BillingService(session, config, tenant_id=tenant_id)
    info = await service.get_subscription_info()
    info["billing_enabled"] = True
    return info


@router.post("/checkout", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    session: ServiceSessionDep,
    settings: SettingsDep,
    config: BillingConfigDep,
    tenant_id: TenantDep,
) -> dict[str, str]:
    """Create a Stripe Checkout session for a plan and optional add-ons.

    The subscription itself is recorded later by the
    ``checkout.session.completed`` webhook.
    """
    if not settings.billing_enabled:
        raise HTTPException(status_code=404, detail=_BILLING_DISABLED)

    service = BillingService(session, config, tenant_id=tenant_id)
    try:
        return await service.create_checkout_session(
            body.price_id,
            body.addons,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except stripe.StripeError as exc:
        logger.error("Stripe checkout failed for tenant %s: %s", tenant_id, exc, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create checkout session") from exc


@router.post("/portal", response_model=PortalSessionResponse)
async def create_portal_session(
    body: PortalRequest,
    session: ServiceSessionDep,
    settings: SettingsDep,
    config: BillingConfigDep,
    tenant_id: TenantDep,
) -> dict[str, str]:
    """Create a Stripe Customer Portal session for subscription management."""
    if not settings.billing_enabled:
        raise HTTPException(status_code=404, detail=_BILLING_DISABLED)

    service = BillingService(session, config, tenant_id=tenant_id)
    try:
        return await service.create_portal_session(return_url=body.return_url)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except stripe.StripeError as exc:
        logger.error("Stripe portal failed for tenant %s: %s", tenant_id, exc, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create portal session") from exc
