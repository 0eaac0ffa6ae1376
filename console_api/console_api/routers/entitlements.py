"""Entitlement endpoints for the active tenant.

``GET /entitlements`` feeds the console frontend; ``GET /entitlements/status``
and ``POST /entitlements/check`` expose the enforcement gate to feature code
that lives outside this service.
"""

from __future__ import annotations

import logging

from billing_core.entitlements.composition import (
    ADDON_AUDIT_RETENTION_365,
    ADDON_EXTRA_DRIVERS,
    ADDON_REALTIME_TRACKING,
    DEFAULT_AUDIT_RETENTION_DAYS,
    EXTENDED_AUDIT_RETENTION_DAYS,
    LIMIT_MAX_DRIVERS,
    LIMIT_REALTIME_TRACKING,
)
from fastapi import APIRouter, HTTPException

from console_api.dependencies import BillingConfigDep, EntitlementGateDep, TenantDep
from console_api.schemas import (
    DecisionResponse,
    EntitlementAddons,
    EntitlementCheckRequest,
    EntitlementLimits,
    EntitlementPlan,
    EntitlementsResponse,
    GraceInfo,
    StatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/entitlements", tags=["entitlements"])


@router.get("", response_model=EntitlementsResponse)
async def get_entitlements(
    tenant_id: TenantDep,
    gate: EntitlementGateDep,
    config: BillingConfigDep,
) -> EntitlementsResponse:
    """Return the active tenant's plan, selected limits, add-ons and grace state."""
    snapshot = await gate.get_snapshot(tenant_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No entitlements found")

    grace = await gate.check_grace_period(tenant_id)
    extra_drivers = snapshot.addons.get(ADDON_EXTRA_DRIVERS) or 0

    return EntitlementsResponse(
        plan=EntitlementPlan(code=snapshot.plan_code, status=snapshot.status.value),
        limits=EntitlementLimits(
            max_drivers=snapshot.numeric_limit(LIMIT_MAX_DRIVERS) or 0,
            realtime_tracking=bool(snapshot.limit_value(LIMIT_REALTIME_TRACKING)),
        ),
        addons=EntitlementAddons(
            extra_drivers=int(extra_drivers),
            audit_retention_days=(
                EXTENDED_AUDIT_RETENTION_DAYS
                if snapshot.addons.get(ADDON_AUDIT_RETENTION_365)
                else DEFAULT_AUDIT_RETENTION_DAYS
            ),
            realtime_tracking=bool(snapshot.addons.get(ADDON_REALTIME_TRACKING)),
        ),
        grace=GraceInfo(
            isInGrace=grace.is_in_grace,
            graceUntil=grace.grace_until.isoformat() if grace.grace_until is not None else None,
            graceDays=config.grace_days,
        ),
    )


@router.get("/status", response_model=StatusResponse)
async def get_entitlement_status(
    tenant_id: TenantDep,
    gate: EntitlementGateDep,
) -> StatusResponse:
    """Return the tenant's standing, with a warning while in grace."""
    info = await gate.check_status(tenant_id)
    return StatusResponse(
        status=info.status,
        is_active=info.is_active,
        is_in_grace=info.is_in_grace,
        warning=info.warning,
        audit_retention_days=await gate.audit_retention_days(tenant_id),
    )


@router.post("/check", response_model=DecisionResponse)
async def check_entitlement(
    body: EntitlementCheckRequest,
    tenant_id: TenantDep,
    gate: EntitlementGateDep,
) -> DecisionResponse:
    """Ask whether the tenant may perform a metered action or use a feature.

    Denials are reported in the body with ``allowed: false``; the status
    code stays 200.
    """
    if (body.resource_kind is None) == (body.feature_key is None):
        raise HTTPException(status_code=422, detail="Provide exactly one of resource_kind or feature_key")

    if body.resource_kind is not None:
        decision = await gate.can_perform_limited_action(tenant_id, body.resource_kind, body.current_count)
    else:
        assert body.feature_key is not None
        decision = await gate.can_use_feature(tenant_id, body.feature_key)

    return DecisionResponse(
        allowed=decision.allowed,
        reason=decision.reason,
        current_count=decision.current_count,
        limit=decision.limit,
    )
