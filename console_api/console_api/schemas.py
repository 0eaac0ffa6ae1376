"""Shared Pydantic request and response models for API endpoints.

These schemas ensure that endpoint payloads are validated and documented
in the OpenAPI schema.  Routers import from here to avoid duplication.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Entitlement schemas
# ---------------------------------------------------------------------------


class EntitlementPlan(BaseModel):
    code: str | None = None
    status: str


class EntitlementLimits(BaseModel):
    """Selected limits surfaced to the console frontend."""

    max_drivers: int | float = 0
    realtime_tracking: bool = False


class EntitlementAddons(BaseModel):
    extra_drivers: int = 0
    audit_retention_days: int = 30
    realtime_tracking: bool = False


class GraceInfo(BaseModel):
    """Grace-period metadata; keys match the frontend's camelCase contract."""

    isInGrace: bool
    graceUntil: str | None = None
    graceDays: int


class EntitlementsResponse(BaseModel):
    """Response of ``GET /entitlements``."""

    plan: EntitlementPlan
    limits: EntitlementLimits
    addons: EntitlementAddons
    grace: GraceInfo


class EntitlementCheckRequest(BaseModel):
    """Ask the enforcement gate about one action.

    Exactly one of ``resource_kind`` (with ``current_count``) or
    ``feature_key`` must be given.
    """

    resource_kind: str | None = Field(default=None, min_length=1, max_length=64)
    current_count: int = Field(default=0, ge=0)
    feature_key: str | None = Field(default=None, min_length=1, max_length=64)


class DecisionResponse(BaseModel):
    allowed: bool
    reason: str | None = None
    current_count: int | None = None
    limit: int | float | None = None


class StatusResponse(BaseModel):
    """Subscription standing for writes that tolerate a grace period."""

    status: str
    is_active: bool
    is_in_grace: bool
    warning: str | None = None
    audit_retention_days: int


# ---------------------------------------------------------------------------
# Billing schemas
# ---------------------------------------------------------------------------


class CheckoutRequest(BaseModel):
    """Request body for ``POST /billing/checkout``."""

    price_id: str = Field(..., min_length=1, description="Stripe price ID of the chosen plan.")
    addons: list[str] = Field(default_factory=list, description="Stripe price IDs of add-ons to include.")
    success_url: str | None = Field(default=None, description="Override of the configured success redirect.")
    cancel_url: str | None = Field(default=None, description="Override of the configured cancel redirect.")


class CheckoutSessionResponse(BaseModel):
    """Stripe Checkout session creation response."""

    session_id: str
    url: str


class PortalRequest(BaseModel):
    """Request body for ``POST /billing/portal``."""

    return_url: str | None = Field(default=None, description="Override of the configured return URL.")


class PortalSessionResponse(BaseModel):
    """Stripe portal session creation response."""

    url: str


class SubscriptionResponse(BaseModel):
    """Current subscription info for the tenant."""

    plan_code: str | None = None
    status: str
    subscription_id: str | None = None
    current_period_start: str | None = None
    current_period_end: str | None = None
    cancel_at_period_end: bool = False
    grace_period_until: str | None = None
    billing_enabled: bool = True


# ---------------------------------------------------------------------------
# Webhook schemas
# ---------------------------------------------------------------------------


class WebhookAckResponse(BaseModel):
    received: bool = True
    status: str


# ---------------------------------------------------------------------------
# Platform-operator schemas
# ---------------------------------------------------------------------------


class PlatformMetricsResponse(BaseModel):
    """Cross-tenant revenue and subscription metrics."""

    mrr: float
    mrr_cents: int
    active_tenants: int
    churn_rate: float
    churn_window_days: int
    total_subscriptions: int
    subscriptions_by_status: dict[str, int]


class SubscriptionListResponse(BaseModel):
    items: list[dict[str, Any]]
    total: int
    limit: int
    offset: int


class PlanLimitsUpdateRequest(BaseModel):
    """Limit changes: a number sets ``value``, a string ``value_text``, null deletes."""

    limits: dict[str, int | float | str | None] = Field(..., min_length=1)


class PlanLimitsUpdateResponse(BaseModel):
    plan_id: str
    limits: list[dict[str, Any]]
    rebuilt_tenants: list[str]


class EntitlementSnapshotResponse(BaseModel):
    """A stored entitlement snapshot, as returned to platform operators."""

    tenant_id: str
    plan_code: str | None = None
    status: str
    limits: dict[str, Any]
    addons: dict[str, Any]
    updated_at: str | None = None


class DeadLetterResponse(BaseModel):
    event_id: str
    event_type: str
    attempts: int
    last_error: str | None = None
    received_at: str
    dead_lettered_at: str | None = None
