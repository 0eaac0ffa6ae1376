"""Typed entities for the billing and entitlements store.

Every row read from the ``platform`` billing tables is mapped to one of the
models below before it reaches the pipeline.  Rows that do not satisfy the
invariants of the store (unknown status values, a plan limit carrying both a
numeric and a text value, a snapshot whose ``limits`` is not a mapping) are
rejected with :class:`MalformedRowError` instead of being passed through.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class MalformedRowError(Exception):
    """A persisted row could not be mapped to its typed entity."""

    def __init__(self, table: str, key: str, detail: str) -> None:
        self.table = table
        self.key = key
        self.detail = detail
        super().__init__(f"Malformed row in {table} ({key}): {detail}")


# ---------------------------------------------------------------------------
# Status enums
# ---------------------------------------------------------------------------


class SubscriptionStatus(str, Enum):
    """Lifecycle states a stored subscription may be in."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"

    @classmethod
    def from_provider(cls, raw: str | None) -> SubscriptionStatus:
        """Normalise a Stripe subscription status into the stored vocabulary.

        Stripe reports a few states the store does not model directly; they
        are folded into the closest stored state.  ``None`` and unknown values
        raise :class:`ValueError`.
        """
        if raw is None:
            raise ValueError("Subscription status is missing")
        value = _PROVIDER_STATUS_ALIASES.get(raw, raw)
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown subscription status '{raw}'") from None


_PROVIDER_STATUS_ALIASES: dict[str, str] = {
    "unpaid": "past_due",
    "incomplete_expired": "canceled",
    "paused": "incomplete",
}

# Statuses in which a subscription still grants (possibly degraded) access.
LIVE_SUBSCRIPTION_STATUSES: tuple[SubscriptionStatus, ...] = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
)


class EntitlementStatus(str, Enum):
    """Status recorded on an entitlement snapshot."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    GRACE_PERIOD = "grace_period"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INACTIVE = "inactive"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class Plan(BaseModel):
    """A sellable plan mapped to one Stripe price."""

    id: str
    code: str = Field(..., min_length=1)
    name: str
    active: bool = True
    monthly_price_cents: int | None = Field(default=None, ge=0)
    stripe_product_id: str | None = None
    stripe_price_id: str | None = None


class PlanLimit(BaseModel):
    """A single named limit attached to a plan.

    Exactly one of ``value`` / ``value_text`` is meaningful; a row with both
    set is malformed.  A row with neither is a placeholder and contributes
    nothing to a snapshot.
    """

    plan_id: str
    limit_key: str = Field(..., min_length=1)
    value: int | float | None = None
    value_text: str | None = None

    @field_validator("value", mode="before")
    @classmethod
    def _integral_values_as_int(cls, v: Any) -> Any:
        if isinstance(v, float) and v.is_integer():
            return int(v)
        return v

    @model_validator(mode="after")
    def _single_value(self) -> PlanLimit:
        if self.value is not None and self.value_text is not None:
            raise ValueError(f"Plan limit '{self.limit_key}' carries both a numeric and a text value")
        return self


class Addon(BaseModel):
    """A purchasable add-on mapped to one Stripe price."""

    id: str
    code: str = Field(..., min_length=1)
    name: str
    active: bool = True
    stripe_price_id: str | None = None


class OrgAddon(BaseModel):
    """An add-on held by a tenant, joined with the add-on's code."""

    tenant_id: str
    addon_id: str
    addon_code: str
    quantity: int = Field(default=1, ge=0)
    status: str = "active"


# ---------------------------------------------------------------------------
# Subscription state
# ---------------------------------------------------------------------------


class Subscription(BaseModel):
    """Projection of one Stripe subscription onto a tenant."""

    id: str
    tenant_id: str = Field(..., min_length=1)
    plan_id: str
    stripe_subscription_id: str = Field(..., min_length=1)
    stripe_customer_id: str | None = None
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    grace_period_until: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _grace_only_while_past_due(self) -> Subscription:
        if self.grace_period_until is not None and self.status != SubscriptionStatus.PAST_DUE:
            raise ValueError(f"grace_period_until set on a subscription in status '{self.status.value}'")
        return self

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_SUBSCRIPTION_STATUSES


class BillingEvent(BaseModel):
    """A webhook event as recorded in the event store."""

    event_id: str = Field(..., min_length=1)
    event_type: str
    payload: dict[str, Any]
    received_at: datetime
    processed_at: datetime | None = None
    attempts: int = Field(default=0, ge=0)
    last_error: str | None = None
    dead_lettered_at: datetime | None = None

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None


# ---------------------------------------------------------------------------
# Entitlements
# ---------------------------------------------------------------------------


class EntitlementSnapshot(BaseModel):
    """Materialised entitlements for one tenant.

    ``limits`` maps a limit key to ``{"value": n}`` for numeric limits, to a
    string for text limits and to ``True`` for boolean capabilities granted by
    add-ons.  ``addons`` maps an add-on code to its quantity or ``True``.
    """

    tenant_id: str = Field(..., min_length=1)
    plan_code: str | None = None
    status: EntitlementStatus
    limits: dict[str, Any] = Field(default_factory=dict)
    addons: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime | None = None

    def limit_value(self, key: str) -> Any:
        """Return the unwrapped value of limit *key*, or ``None`` when absent."""
        raw = self.limits.get(key)
        if isinstance(raw, dict):
            return raw.get("value")
        return raw

    def numeric_limit(self, key: str) -> int | float | None:
        """Return limit *key* when it is a number (booleans excluded)."""
        value = self.limit_value(key)
        if isinstance(value, bool) or not isinstance(value, int | float):
            return None
        return value

    def has_feature(self, key: str) -> bool:
        """Whether *key* is granted by an add-on or enabled as a limit."""
        return bool(self.addons.get(key)) or bool(self.limit_value(key))
