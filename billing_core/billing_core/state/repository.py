"""Repository classes providing typed access to the billing store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()``.

Rows leave this module as the typed entities of
:mod:`billing_core.models.billing`.  A row that cannot be mapped raises
:class:`~billing_core.models.billing.MalformedRowError`.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.models.billing import (
    LIVE_SUBSCRIPTION_STATUSES,
    Addon,
    BillingEvent,
    EntitlementSnapshot,
    MalformedRowError,
    OrgAddon,
    Plan,
    PlanLimit,
    Subscription,
    SubscriptionStatus,
)
from billing_core.state.tables import (
    AddonTable,
    BillingEventTable,
    EntitlementTable,
    OrgAddonTable,
    PlanLimitTable,
    PlanTable,
    SubscriptionTable,
)

logger = logging.getLogger(__name__)

_EntityT = TypeVar("_EntityT", bound=BaseModel)

_LIVE_STATUS_VALUES = [s.value for s in LIVE_SUBSCRIPTION_STATUSES]


def _to_entity(model: type[_EntityT], table: str, key: str, data: Mapping[str, Any]) -> _EntityT:
    """Validate *data* into *model*, converting failures to ``MalformedRowError``."""
    try:
        return model.model_validate(dict(data))
    except ValidationError as exc:
        raise MalformedRowError(table, key, str(exc)) from exc


def _columns(row: Any) -> dict[str, Any]:
    return {col.key: getattr(row, col.key) for col in row.__table__.columns}


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
    update_expressions: dict[str, Any] | None = None,
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to overwrite with the incoming values on conflict.
    update_expressions:
        Extra ``column -> SQL expression`` assignments applied on conflict,
        evaluated against the existing row (e.g. counters).

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        set_ = {col: getattr(stmt.excluded, col) for col in update_columns}
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        set_ = {col: values[col] for col in update_columns}

    set_.update(update_expressions or {})
    stmt = stmt.on_conflict_do_update(index_elements=index_elements, set_=set_)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# BillingEventRepository
# ---------------------------------------------------------------------------


class BillingEventRepository:
    """Event store over ``platform.billing_events``.

    The ``event_id`` primary key is the deduplication key for webhook
    deliveries.  ``processed_at`` is only ever written by
    :meth:`mark_processed`, which refuses to overwrite it.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, event_id: str) -> BillingEvent | None:
        """Fetch an event by its provider id."""
        stmt = (
            select(BillingEventTable)
            .execution_options(populate_existing=True)
            .where(BillingEventTable.event_id == event_id)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return _to_entity(BillingEvent, "billing_events", event_id, _columns(row))

    async def record_receipt(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        *,
        received_at: datetime | None = None,
    ) -> None:
        """Insert the event, or refresh an unprocessed one, counting the attempt.

        ``processed_at`` is never touched here, so a concurrent delivery that
        already completed stays completed.
        """
        values = {
            "event_id": event_id,
            "event_type": event_type,
            "payload": payload,
            "received_at": received_at or datetime.now(UTC),
            "attempts": 1,
        }
        await _dialect_upsert(
            self._session,
            BillingEventTable,
            values=values,
            index_elements=["event_id"],
            update_columns=["event_type", "payload", "received_at"],
            update_expressions={"attempts": BillingEventTable.__table__.c.attempts + 1},
        )
        await self._session.flush()

    async def mark_processed(self, event_id: str, processed_at: datetime | None = None) -> bool:
        """Set ``processed_at`` if it is still null.

        Returns ``True`` when this call recorded completion, ``False`` when
        the event was already processed (or does not exist).
        """
        stmt = (
            update(BillingEventTable)
            .where(
                BillingEventTable.event_id == event_id,
                BillingEventTable.processed_at.is_(None),
            )
            .values(processed_at=processed_at or datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def record_failure(self, event_id: str, error: str) -> None:
        """Store the error of the latest failed attempt."""
        stmt = update(BillingEventTable).where(BillingEventTable.event_id == event_id).values(last_error=error[:4000])
        await self._session.execute(stmt)
        await self._session.flush()

    async def mark_dead_lettered(self, event_id: str, error: str, at: datetime | None = None) -> None:
        """Flag an event whose payload can never be processed."""
        stmt = (
            update(BillingEventTable)
            .where(BillingEventTable.event_id == event_id)
            .values(last_error=error[:4000], dead_lettered_at=at or datetime.now(UTC))
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def list_dead_lettered(self, limit: int = 100) -> list[BillingEvent]:
        """Return dead-lettered, unprocessed events, newest first."""
        stmt = (
            select(BillingEventTable).execution_options(populate_existing=True)
            .where(
                BillingEventTable.dead_lettered_at.is_not(None),
                BillingEventTable.processed_at.is_(None),
            )
            .order_by(BillingEventTable.dead_lettered_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [_to_entity(BillingEvent, "billing_events", r.event_id, _columns(r)) for r in result.scalars().all()]


# ---------------------------------------------------------------------------
# Catalog repositories
# ---------------------------------------------------------------------------


class PlanRepository:
    """Read access to ``platform.plans`` and management of ``plan_limits``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, plan_id: str) -> Plan | None:
        """Fetch a plan by id."""
        row = await self._session.get(PlanTable, plan_id)
        if row is None:
            return None
        return _to_entity(Plan, "plans", plan_id, _columns(row))

    async def get_active_by_price_id(self, stripe_price_id: str) -> Plan | None:
        """Resolve an active plan from its Stripe price id."""
        stmt = select(PlanTable).execution_options(populate_existing=True).where(
            PlanTable.stripe_price_id == stripe_price_id,
            PlanTable.active.is_(True),
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return _to_entity(Plan, "plans", row.id, _columns(row))

    async def list_by_ids(self, plan_ids: Sequence[str]) -> dict[str, Plan]:
        """Return the plans among *plan_ids*, keyed by id."""
        if not plan_ids:
            return {}
        stmt = select(PlanTable).execution_options(populate_existing=True).where(PlanTable.id.in_(list(plan_ids)))
        result = await self._session.execute(stmt)
        return {row.id: _to_entity(Plan, "plans", row.id, _columns(row)) for row in result.scalars().all()}

    async def list_limits(self, plan_id: str) -> list[PlanLimit]:
        """Return every limit row of *plan_id*, ordered by key."""
        stmt = (
            select(PlanLimitTable)
            .execution_options(populate_existing=True)
            .where(PlanLimitTable.plan_id == plan_id)
            .order_by(PlanLimitTable.limit_key)
        )
        result = await self._session.execute(stmt)
        return [
            _to_entity(
                PlanLimit,
                "plan_limits",
                f"{plan_id}/{row.limit_key}",
                {
                    "plan_id": row.plan_id,
                    "limit_key": row.limit_key,
                    "value": row.value,
                    "value_text": row.value_text,
                },
            )
            for row in result.scalars().all()
        ]

    async def set_limits(self, plan_id: str, limits: Mapping[str, int | float | str | None]) -> list[PlanLimit]:
        """Create, overwrite or delete limits of *plan_id*.

        A number is stored in ``value``, a string in ``value_text`` (the
        other column is cleared) and ``None`` deletes the limit.

        Raises
        ------
        ValueError
            If the plan does not exist or a value has an unsupported type.
        """
        if await self._session.get(PlanTable, plan_id) is None:
            raise ValueError(f"Plan {plan_id} not found")

        for key, raw in limits.items():
            if raw is None:
                await self._session.execute(
                    delete(PlanLimitTable).where(
                        PlanLimitTable.plan_id == plan_id,
                        PlanLimitTable.limit_key == key,
                    )
                )
                continue
            if isinstance(raw, bool) or not isinstance(raw, int | float | str):
                raise ValueError(f"Unsupported value for limit '{key}': {raw!r}")
            values = {
                "plan_id": plan_id,
                "limit_key": key,
                "value": None if isinstance(raw, str) else raw,
                "value_text": raw if isinstance(raw, str) else None,
            }
            await _dialect_upsert(
                self._session,
                PlanLimitTable,
                values=values,
                index_elements=["plan_id", "limit_key"],
                update_columns=["value", "value_text"],
            )

        await self._session.flush()
        logger.info("Updated %d limit(s) of plan %s", len(limits), plan_id)
        return await self.list_limits(plan_id)


class AddonRepository:
    """Read access to ``platform.addons`` and ``platform.org_addons``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_active_by_price_id(self, stripe_price_id: str) -> Addon | None:
        """Resolve an active add-on from its Stripe price id."""
        stmt = select(AddonTable).execution_options(populate_existing=True).where(
            AddonTable.stripe_price_id == stripe_price_id,
            AddonTable.active.is_(True),
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return _to_entity(Addon, "addons", row.id, _columns(row))

    async def list_active_for_tenant(self, tenant_id: str) -> list[OrgAddon]:
        """Return the tenant's active add-ons joined with their codes."""
        stmt = (
            select(OrgAddonTable, AddonTable.code).execution_options(populate_existing=True)
            .join(AddonTable, AddonTable.id == OrgAddonTable.addon_id)
            .where(
                OrgAddonTable.tenant_id == tenant_id,
                OrgAddonTable.status == "active",
            )
            .order_by(AddonTable.code)
        )
        result = await self._session.execute(stmt)
        return [
            _to_entity(
                OrgAddon,
                "org_addons",
                f"{tenant_id}/{code}",
                {
                    "tenant_id": row.tenant_id,
                    "addon_id": row.addon_id,
                    "addon_code": code,
                    "quantity": row.quantity,
                    "status": row.status,
                },
            )
            for row, code in result.all()
        ]


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Projection store over ``platform.subscriptions``.

    .. warning:: **Cross-tenant**

       Lookups by Stripe id are not scoped to a tenant: webhook events carry
       no tenant context of their own.  Only the privileged service session
       may be handed to this repository.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def _entity(row: SubscriptionTable) -> Subscription:
        return _to_entity(Subscription, "subscriptions", row.stripe_subscription_id, _columns(row))

    async def get_by_stripe_id(self, stripe_subscription_id: str) -> Subscription | None:
        """Fetch a subscription by its Stripe id."""
        stmt = (
            select(SubscriptionTable)
            .execution_options(populate_existing=True)
            .where(SubscriptionTable.stripe_subscription_id == stripe_subscription_id)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return None if row is None else self._entity(row)

    async def get_live_for_tenant(self, tenant_id: str) -> Subscription | None:
        """Return the tenant's current subscription among the live statuses.

        When more than one live row exists (a plan change whose old
        subscription has not been cancelled yet) the most recently updated
        one wins.
        """
        stmt = (
            select(SubscriptionTable).execution_options(populate_existing=True)
            .where(
                SubscriptionTable.tenant_id == tenant_id,
                SubscriptionTable.status.in_(_LIVE_STATUS_VALUES),
            )
            .order_by(SubscriptionTable.updated_at.desc(), SubscriptionTable.id.desc())
        )
        result = await self._session.execute(stmt)
        rows = list(result.scalars().all())
        if not rows:
            return None
        if len(rows) > 1:
            logger.warning(
                "Tenant %s has %d live subscriptions; using %s",
                tenant_id,
                len(rows),
                rows[0].stripe_subscription_id,
            )
        return self._entity(rows[0])

    async def upsert(
        self,
        *,
        stripe_subscription_id: str,
        tenant_id: str,
        plan_id: str,
        stripe_customer_id: str | None,
        status: SubscriptionStatus,
        current_period_start: datetime | None,
        current_period_end: datetime | None,
        cancel_at_period_end: bool,
        grace_period_until: datetime | None,
        updated_at: datetime | None = None,
    ) -> Subscription:
        """Insert or overwrite a subscription keyed by its Stripe id."""
        now = updated_at or datetime.now(UTC)
        values: dict[str, Any] = {
            "stripe_subscription_id": stripe_subscription_id,
            "tenant_id": tenant_id,
            "plan_id": plan_id,
            "stripe_customer_id": stripe_customer_id,
            "status": status.value,
            "current_period_start": current_period_start,
            "current_period_end": current_period_end,
            "cancel_at_period_end": cancel_at_period_end,
            "grace_period_until": grace_period_until,
            "created_at": now,
            "updated_at": now,
        }
        await _dialect_upsert(
            self._session,
            SubscriptionTable,
            values=values,
            index_elements=["stripe_subscription_id"],
            update_columns=[
                "tenant_id",
                "plan_id",
                "stripe_customer_id",
                "status",
                "current_period_start",
                "current_period_end",
                "cancel_at_period_end",
                "grace_period_until",
                "updated_at",
            ],
        )
        await self._session.flush()
        subscription = await self.get_by_stripe_id(stripe_subscription_id)
        assert subscription is not None
        return subscription

    async def update_by_stripe_id(self, stripe_subscription_id: str, **fields: Any) -> bool:
        """Overwrite *fields* of an existing subscription.

        ``status`` may be passed as a :class:`SubscriptionStatus`.  Returns
        ``False`` when no row matched.
        """
        if isinstance(fields.get("status"), SubscriptionStatus):
            fields["status"] = fields["status"].value
        fields.setdefault("updated_at", datetime.now(UTC))
        stmt = (
            update(SubscriptionTable)
            .where(SubscriptionTable.stripe_subscription_id == stripe_subscription_id)
            .values(**fields)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def list_page(
        self,
        *,
        status: str | None = None,
        tenant_id: str | None = None,
        plan_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Subscription], int]:
        """Return a page of subscriptions and the total matching count."""
        filters = []
        if status is not None:
            filters.append(SubscriptionTable.status == status)
        if tenant_id is not None:
            filters.append(SubscriptionTable.tenant_id == tenant_id)
        if plan_id is not None:
            filters.append(SubscriptionTable.plan_id == plan_id)

        count_stmt = select(func.count()).select_from(SubscriptionTable).where(*filters)
        total = (await self._session.execute(count_stmt)).scalar_one()

        stmt = (
            select(SubscriptionTable).execution_options(populate_existing=True)
            .where(*filters)
            .order_by(SubscriptionTable.created_at.desc(), SubscriptionTable.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return [self._entity(row) for row in result.scalars().all()], int(total)

    async def list_live_tenants_on_plan(self, plan_id: str) -> list[str]:
        """Distinct tenants holding a live subscription to *plan_id*."""
        stmt = (
            select(SubscriptionTable.tenant_id)
            .where(
                SubscriptionTable.plan_id == plan_id,
                SubscriptionTable.status.in_(_LIVE_STATUS_VALUES),
            )
            .distinct()
            .order_by(SubscriptionTable.tenant_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        """Number of subscriptions per status."""
        stmt = select(SubscriptionTable.status, func.count()).group_by(SubscriptionTable.status)
        result = await self._session.execute(stmt)
        return {status: int(count) for status, count in result.all()}

    async def monthly_recurring_cents(self) -> int:
        """Sum of plan prices over active and trialing subscriptions."""
        stmt = (
            select(func.coalesce(func.sum(PlanTable.monthly_price_cents), 0))
            .select_from(SubscriptionTable)
            .join(PlanTable, PlanTable.id == SubscriptionTable.plan_id)
            .where(
                SubscriptionTable.status.in_(
                    [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value],
                )
            )
        )
        return int((await self._session.execute(stmt)).scalar_one())

    async def count_active_tenants(self) -> int:
        """Distinct tenants with an active or trialing subscription."""
        stmt = select(func.count(func.distinct(SubscriptionTable.tenant_id))).where(
            SubscriptionTable.status.in_(
                [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value],
            )
        )
        return int((await self._session.execute(stmt)).scalar_one())

    async def count_active_at(self, at: datetime) -> int:
        """Subscriptions created on or before *at* that are active or trialing now."""
        stmt = (
            select(func.count())
            .select_from(SubscriptionTable)
            .where(
                SubscriptionTable.created_at <= at,
                SubscriptionTable.status.in_(
                    [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value],
                ),
            )
        )
        return int((await self._session.execute(stmt)).scalar_one())

    async def count_canceled_between(self, start: datetime, end: datetime) -> int:
        """Subscriptions whose cancellation was recorded within ``[start, end]``."""
        stmt = (
            select(func.count())
            .select_from(SubscriptionTable)
            .where(
                SubscriptionTable.status == SubscriptionStatus.CANCELED.value,
                SubscriptionTable.updated_at >= start,
                SubscriptionTable.updated_at <= end,
            )
        )
        return int((await self._session.execute(stmt)).scalar_one())


# ---------------------------------------------------------------------------
# EntitlementRepository
# ---------------------------------------------------------------------------


class EntitlementRepository:
    """Snapshot cache over ``platform.entitlements``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id: str) -> EntitlementSnapshot | None:
        """Fetch the tenant's snapshot, or ``None`` on a cache miss."""
        row = await self._session.get(EntitlementTable, tenant_id, populate_existing=True)
        if row is None:
            return None
        return _to_entity(EntitlementSnapshot, "entitlements", tenant_id, _columns(row))

    async def upsert(self, snapshot: EntitlementSnapshot) -> None:
        """Overwrite the tenant's snapshot wholesale."""
        values = {
            "tenant_id": snapshot.tenant_id,
            "plan_code": snapshot.plan_code,
            "status": snapshot.status.value,
            "limits": snapshot.limits,
            "addons": snapshot.addons,
            "updated_at": snapshot.updated_at or datetime.now(UTC),
        }
        await _dialect_upsert(
            self._session,
            EntitlementTable,
            values=values,
            index_elements=["tenant_id"],
            update_columns=["plan_code", "status", "limits", "addons", "updated_at"],
        )
        await self._session.flush()
