"""SQLAlchemy 2.0 ORM table definitions for the billing store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.

Billing tables live in the PostgreSQL ``platform`` schema.  Local SQLite
engines strip the schema through ``schema_translate_map`` (see
:mod:`billing_core.state.sqlite_adapter`).
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

PLATFORM_SCHEMA = "platform"
TENANT_SCHEMA = "app"

# Cross-dialect JSON type: uses JSONB on PostgreSQL for GIN indexing and
# query operators, falls back to plain JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always round-trips as UTC.

    SQLite has no timezone support and hands back naive values; those are
    re-tagged as UTC on the way out so callers only ever see aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Event store
# ---------------------------------------------------------------------------


class BillingEventTable(Base):
    """Every Stripe webhook event accepted by the receiver.

    ``processed_at`` is set exactly once, when the event's handler has
    committed.  A row with a non-null ``processed_at`` is never reprocessed.
    """

    __tablename__ = "billing_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    dead_lettered_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_billing_events_type", "event_type"),
        Index("ix_billing_events_unprocessed", "processed_at", "received_at"),
        {"schema": PLATFORM_SCHEMA},
    )


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class PlanTable(Base):
    """Sellable plans, each mapped to at most one Stripe price."""

    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    monthly_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    stripe_product_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    stripe_price_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = ({"schema": PLATFORM_SCHEMA},)


class PlanLimitTable(Base):
    """Named limits of a plan: numeric ``value`` or textual ``value_text``."""

    __tablename__ = "plan_limits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey(f"{PLATFORM_SCHEMA}.plans.id", ondelete="CASCADE"),
        nullable=False,
    )
    limit_key: Mapped[str] = mapped_column(String(128), nullable=False)
    value: Mapped[float | None] = mapped_column(Numeric(18, 4, asdecimal=False), nullable=True)
    value_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("plan_id", "limit_key", name="uq_plan_limits_plan_key"),
        CheckConstraint("value IS NULL OR value_text IS NULL", name="ck_plan_limits_single_value"),
        {"schema": PLATFORM_SCHEMA},
    )


class AddonTable(Base):
    """Purchasable add-ons."""

    __tablename__ = "addons"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    stripe_price_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)

    __table_args__ = ({"schema": PLATFORM_SCHEMA},)


class OrgAddonTable(Base):
    """Add-ons held by a tenant."""

    __tablename__ = "org_addons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    addon_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey(f"{PLATFORM_SCHEMA}.addons.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "addon_id", "status", name="uq_org_addons_tenant_addon_status"),
        CheckConstraint("quantity >= 0", name="ck_org_addons_quantity"),
        Index("ix_org_addons_tenant", "tenant_id"),
        {"schema": PLATFORM_SCHEMA},
    )


# ---------------------------------------------------------------------------
# Subscriptions and entitlements
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """Local projection of Stripe subscriptions, keyed by the Stripe id.

    Rows are never hard-deleted; a cancelled subscription keeps its row with
    status ``canceled``.
    """

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plan_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey(f"{PLATFORM_SCHEMA}.plans.id"),
        nullable=False,
    )
    stripe_subscription_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    grace_period_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'trialing', 'past_due', 'canceled', 'incomplete')",
            name="ck_subscriptions_status",
        ),
        CheckConstraint(
            "grace_period_until IS NULL OR status = 'past_due'",
            name="ck_subscriptions_grace_past_due",
        ),
        Index("ix_subscriptions_tenant_status", "tenant_id", "status"),
        {"schema": PLATFORM_SCHEMA},
    )


class EntitlementTable(Base):
    """Materialised entitlements per tenant, overwritten on every rebuild."""

    __tablename__ = "entitlements"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    plan_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    limits: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    addons: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = ({"schema": PLATFORM_SCHEMA},)
