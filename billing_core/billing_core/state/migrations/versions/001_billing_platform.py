"""Create the billing platform tables.

Creates the ``platform`` schema holding the plan catalog, add-ons, the
Stripe webhook event store, the subscription projection and the
materialised entitlement snapshots.

Row-level security is enabled on the tenant-keyed tables (``subscriptions``,
``org_addons``, ``entitlements``) so that tenant-scoped sessions only see
their own rows.  RLS is enabled but not forced: the privileged service
session used by the billing pipeline connects as the table owner and is
therefore exempt.

Revision ID: 001
Revises:
Create Date: 2026-09-28 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_SCHEMA = "platform"

_TENANT_TABLES: list[str] = [
    "subscriptions",
    "org_addons",
    "entitlements",
]


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.execute(f"CREATE SCHEMA IF NOT EXISTS {_SCHEMA}")

    op.create_table(
        "billing_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("payload", JSONB(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("dead_lettered_at", sa.DateTime(timezone=True), nullable=True),
        schema=_SCHEMA,
    )
    op.create_index("ix_billing_events_type", "billing_events", ["event_type"], schema=_SCHEMA)
    op.create_index(
        "ix_billing_events_unprocessed",
        "billing_events",
        ["processed_at", "received_at"],
        schema=_SCHEMA,
    )

    op.create_table(
        "plans",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("code", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("monthly_price_cents", sa.Integer(), nullable=True),
        sa.Column("stripe_product_id", sa.String(256), nullable=True),
        sa.Column("stripe_price_id", sa.String(256), nullable=True, unique=True),
        *_timestamps(),
        schema=_SCHEMA,
    )

    op.create_table(
        "plan_limits",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "plan_id",
            sa.String(64),
            sa.ForeignKey(f"{_SCHEMA}.plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("limit_key", sa.String(128), nullable=False),
        sa.Column("value", sa.Numeric(18, 4), nullable=True),
        sa.Column("value_text", sa.Text(), nullable=True),
        sa.UniqueConstraint("plan_id", "limit_key", name="uq_plan_limits_plan_key"),
        sa.CheckConstraint("value IS NULL OR value_text IS NULL", name="ck_plan_limits_single_value"),
        schema=_SCHEMA,
    )

    op.create_table(
        "addons",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("code", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("stripe_price_id", sa.String(256), nullable=True, unique=True),
        schema=_SCHEMA,
    )

    op.create_table(
        "org_addons",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column(
            "addon_id",
            sa.String(64),
            sa.ForeignKey(f"{_SCHEMA}.addons.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "addon_id", "status", name="uq_org_addons_tenant_addon_status"),
        sa.CheckConstraint("quantity >= 0", name="ck_org_addons_quantity"),
        schema=_SCHEMA,
    )
    op.create_index("ix_org_addons_tenant", "org_addons", ["tenant_id"], schema=_SCHEMA)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("plan_id", sa.String(64), sa.ForeignKey(f"{_SCHEMA}.plans.id"), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=False, unique=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("grace_period_until", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('active', 'trialing', 'past_due', 'canceled', 'incomplete')",
            name="ck_subscriptions_status",
        ),
        sa.CheckConstraint(
            "grace_period_until IS NULL OR status = 'past_due'",
            name="ck_subscriptions_grace_past_due",
        ),
        schema=_SCHEMA,
    )
    op.create_index(
        "ix_subscriptions_tenant_status",
        "subscriptions",
        ["tenant_id", "status"],
        schema=_SCHEMA,
    )

    op.create_table(
        "entitlements",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("plan_code", sa.String(64), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("limits", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("addons", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        schema=_SCHEMA,
    )

    for table in _TENANT_TABLES:
        op.execute(f"ALTER TABLE {_SCHEMA}.{table} ENABLE ROW LEVEL SECURITY")
        # missing_ok=true: sessions without the variable see zero rows.
        op.execute(
            f"CREATE POLICY tenant_isolation_{table} ON {_SCHEMA}.{table} "
            f"USING (tenant_id = current_setting('app.tenant_id', true)) "
            f"WITH CHECK (tenant_id = current_setting('app.tenant_id', true))"
        )


def downgrade() -> None:
    for table in reversed(_TENANT_TABLES):
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation_{table} ON {_SCHEMA}.{table}")
        op.execute(f"ALTER TABLE {_SCHEMA}.{table} DISABLE ROW LEVEL SECURITY")

    op.drop_table("entitlements", schema=_SCHEMA)
    op.drop_index("ix_subscriptions_tenant_status", table_name="subscriptions", schema=_SCHEMA)
    op.drop_table("subscriptions", schema=_SCHEMA)
    op.drop_index("ix_org_addons_tenant", table_name="org_addons", schema=_SCHEMA)
    op.drop_table("org_addons", schema=_SCHEMA)
    op.drop_table("addons", schema=_SCHEMA)
    op.drop_table("plan_limits", schema=_SCHEMA)
    op.drop_table("plans", schema=_SCHEMA)
    op.drop_index("ix_billing_events_unprocessed", table_name="billing_events", schema=_SCHEMA)
    op.drop_index("ix_billing_events_type", table_name="billing_events", schema=_SCHEMA)
    op.drop_table("billing_events", schema=_SCHEMA)
