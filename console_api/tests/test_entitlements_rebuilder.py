"""Tests for rebuilding entitlement snapshots from the billing store."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from billing_core.models.billing import EntitlementStatus, SubscriptionStatus
from billing_core.state.repository import EntitlementRepository, PlanRepository, SubscriptionRepository
from prometheus_client import REGISTRY

from console_api.services.billing_errors import PlanNotFound
from console_api.services.entitlements_rebuilder import EntitlementsRebuilder


def _rebuild_count(outcome: str) -> float:
    return REGISTRY.get_sample_value("billing_entitlement_rebuilds_total", {"outcome": outcome}) or 0.0


@pytest.fixture
def subscribe(session_factory, clock):
    async def _subscribe(
        tenant_id: str = "tenant-a",
        plan_id: str = "plan-pro",
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        grace_period_until=None,
        sub_id: str = "sub_1",
    ) -> None:
        async with session_factory() as session, session.begin():
            await SubscriptionRepository(session).upsert(
                stripe_subscription_id=sub_id,
                tenant_id=tenant_id,
                plan_id=plan_id,
                stripe_customer_id="cus_1",
                status=status,
                current_period_start=clock.now,
                current_period_end=clock.now + timedelta(days=30),
                cancel_at_period_end=False,
                grace_period_until=grace_period_until,
                updated_at=clock.now,
            )

    return _subscribe


@pytest.fixture
def rebuild(session_factory, clock):
    async def _rebuild(tenant_id: str = "tenant-a"):
        async with session_factory() as session, session.begin():
            return await EntitlementsRebuilder(session, clock=clock).rebuild(tenant_id)

    return _rebuild


async def _stored(session_factory, tenant_id: str = "tenant-a"):
    async with session_factory() as session:
        return await EntitlementRepository(session).get(tenant_id)


class TestRebuild:
    @pytest.mark.asyncio
    async def test_no_subscription_is_inactive(self, rebuild, session_factory, clock):
        snapshot = await rebuild()

        assert snapshot.status == EntitlementStatus.INACTIVE
        assert snapshot.plan_code is None
        assert snapshot.limits == {} and snapshot.addons == {}
        assert await _stored(session_factory) == snapshot
        assert snapshot.updated_at == clock.now

    @pytest.mark.asyncio
    async def test_active_without_addons(self, subscribe, rebuild):
        await subscribe()

        snapshot = await rebuild()

        assert snapshot.status == EntitlementStatus.ACTIVE
        assert snapshot.plan_code == "pro"
        assert snapshot.limits == {"max_drivers": {"value": 25}, "audit_retention_days": {"value": 90}}
        assert snapshot.addons == {}

    @pytest.mark.asyncio
    async def test_metered_addon_adds_to_plan_limit(self, subscribe, rebuild, grant_addon):
        await subscribe()
        await grant_addon("tenant-a", "addon-drivers", quantity=10)

        snapshot = await rebuild()

        assert snapshot.numeric_limit("max_drivers") == 35
        assert snapshot.addons == {"extra_drivers": 10}

    @pytest.mark.asyncio
    async def test_capability_addons(self, subscribe, rebuild, grant_addon):
        await subscribe()
        await grant_addon("tenant-a", "addon-rt")
        await grant_addon("tenant-a", "addon-audit")

        snapshot = await rebuild()

        assert snapshot.has_feature("realtime_tracking")
        assert snapshot.limit_value("audit_retention_days") == 365
        assert snapshot.addons == {"audit_retention_365": True, "realtime_tracking": True}

    @pytest.mark.asyncio
    async def test_inactive_addon_rows_ignored(self, subscribe, rebuild, grant_addon):
        await subscribe()
        await grant_addon("tenant-a", "addon-rt", status="canceled")

        snapshot = await rebuild()

        assert not snapshot.has_feature("realtime_tracking")

    @pytest.mark.asyncio
    async def test_past_due_within_grace(self, subscribe, rebuild, clock):
        await subscribe(status=SubscriptionStatus.PAST_DUE, grace_period_until=clock.now + timedelta(days=3))
        assert (await rebuild()).status == EntitlementStatus.GRACE_PERIOD

    @pytest.mark.asyncio
    async def test_past_due_after_grace(self, subscribe, rebuild, clock):
        await subscribe(status=SubscriptionStatus.PAST_DUE, grace_period_until=clock.now - timedelta(seconds=1))
        assert (await rebuild()).status == EntitlementStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_canceled_subscription_is_inactive(self, subscribe, rebuild):
        await subscribe(status=SubscriptionStatus.CANCELED)
        assert (await rebuild()).status == EntitlementStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_rebuild_overwrites_previous_snapshot(self, subscribe, rebuild, session_factory, grant_addon):
        await subscribe()
        await grant_addon("tenant-a", "addon-rt")
        await rebuild()

        async with session_factory() as session, session.begin():
            await SubscriptionRepository(session).update_by_stripe_id("sub_1", plan_id="plan-starter")
        snapshot = await rebuild()

        assert snapshot.plan_code == "starter"
        assert "audit_retention_days" not in snapshot.limits
        assert (await _stored(session_factory)).limits == snapshot.limits

    @pytest.mark.asyncio
    async def test_success_counted(self, rebuild):
        before = _rebuild_count("success")
        await rebuild()
        assert _rebuild_count("success") == before + 1


class TestRebuildFailures:
    @pytest.mark.asyncio
    async def test_missing_plan_raises_and_keeps_previous_snapshot(self, subscribe, rebuild, session_factory):
        await subscribe()
        previous = await rebuild()
        before = _rebuild_count("error")

        with patch.object(PlanRepository, "get", AsyncMock(return_value=None)):
            with pytest.raises(PlanNotFound, match="plan-pro"):
                await rebuild()

        assert _rebuild_count("error") == before + 1
        assert await _stored(session_factory) == previous

    @pytest.mark.asyncio
    async def test_read_failure_propagates(self, subscribe, rebuild):
        await subscribe()
        with patch.object(PlanRepository, "list_limits", AsyncMock(side_effect=RuntimeError("db gone"))):
            with pytest.raises(RuntimeError, match="db gone"):
                await rebuild()
