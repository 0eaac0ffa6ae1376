"""Platform-operator endpoints for cross-tenant billing administration.

Every route requires the ``platform_admin`` role and runs on the privileged
service session, since the data spans tenants.
"""

from __future__ import annotations

import logging
from typing import Any

from billing_core.models.billing import SubscriptionStatus
from fastapi import APIRouter, Depends, HTTPException, Query

from console_api.dependencies import ServiceSessionDep, UserDep
from console_api.middleware.rbac import Role, require_role
from console_api.schemas import (
    DeadLetterResponse,
    EntitlementSnapshotResponse,
    PlanLimitsUpdateRequest,
    PlanLimitsUpdateResponse,
    PlatformMetricsResponse,
    SubscriptionListResponse,
)
from console_api.services.billing_errors import PlanNotFound
from console_api.services.platform_service import PlatformService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/platform", tags=["platform"])


@router.get("/metrics", response_model=PlatformMetricsResponse)
async def get_platform_metrics(
    session: ServiceSessionDep,
    churn_window_days: int = Query(default=30, ge=1, le=365),
    _role: Role = Depends(require_role(Role.PLATFORM_ADMIN)),
) -> dict[str, Any]:
    """Return MRR, active tenants, churn and subscription counts by status."""
    return await PlatformService(session).get_metrics(churn_window_days)


@router.get("/subscriptions", response_model=SubscriptionListResponse)
async def list_subscriptions(
    session: ServiceSessionDep,
    status: SubscriptionStatus | None = Query(default=None),
    tenant_id: str | None = Query(default=None),
    plan_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _role: Role = Depends(require_role(Role.PLATFORM_ADMIN)),
) -> dict[str, Any]:
    """List subscriptions across tenants, newest first."""
    return await PlatformService(session).list_subscriptions(
        status=status,
        tenant_id=tenant_id,
        plan_id=plan_id,
        limit=limit,
        offset=offset,
    )


@router.put("/plans/{plan_id}/limits", response_model=PlanLimitsUpdateResponse)
async def update_plan_limits(
    plan_id: str,
    body: PlanLimitsUpdateRequest,
    session: ServiceSessionDep,
    user: UserDep,
    _role: Role = Depends(require_role(Role.PLATFORM_ADMIN)),
) -> dict[str, Any]:
    """Set or delete limits on a plan and rebuild every tenant subscribed to it.

    A number sets ``value``, a string sets ``value_text`` and ``null``
    removes the limit.
    """
    try:
        result = await PlatformService(session).update_plan_limits(plan_id, body.limits)
    except ValueError as exc:
        status_code = 404 if "not found" in str(exc).lower() else 400
        raise HTTPException(status_code=status_code, detail=str(exc)) from exc

    logger.info("Plan %s limits changed by %s: %s", plan_id, user, sorted(body.limits))
    return result


@router.post("/tenants/{tenant_id}/entitlements/rebuild", response_model=EntitlementSnapshotResponse)
async def rebuild_tenant_entitlements(
    tenant_id: str,
    session: ServiceSessionDep,
    user: UserDep,
    _role: Role = Depends(require_role(Role.PLATFORM_ADMIN)),
) -> dict[str, Any]:
    """Recompute one tenant's entitlement snapshot from current billing state."""
    try:
        snapshot = await PlatformService(session).rebuild_tenant(tenant_id)
    except PlanNotFound as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    logger.info("Entitlements for tenant %s rebuilt by %s", tenant_id, user)
    return snapshot.model_dump(mode="json")


@router.get("/billing-events/dead-letters", response_model=list[DeadLetterResponse])
async def list_dead_letters(
    session: ServiceSessionDep,
    limit: int = Query(default=100, ge=1, le=500),
    _role: Role = Depends(require_role(Role.PLATFORM_ADMIN)),
) -> list[dict[str, Any]]:
    """Events that can never be applied and are awaiting operator attention."""
    events = await PlatformService(session).list_dead_letters(limit)
    return [
        event.model_dump(mode="json", include=set(DeadLetterResponse.model_fields))
        for event in events
    ]
