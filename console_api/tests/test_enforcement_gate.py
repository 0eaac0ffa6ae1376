"""Tests for the entitlement enforcement gate."""

from __future__ import annotations

from datetime import timedelta

import pytest
from billing_core.models.billing import SubscriptionStatus
from billing_core.state.repository import EntitlementRepository, SubscriptionRepository

from console_api.services.enforcement import (
    REASON_GRACE_EXPIRED,
    REASON_INACTIVE,
    EntitlementGate,
    limit_key_for,
)
from console_api.services.entitlements_rebuilder import EntitlementsRebuilder


@pytest.fixture
def provision(session_factory, clock):
    """Store a subscription and rebuild the tenant's snapshot at ``clock.now``."""

    async def _provision(
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        grace_period_until=None,
        plan_id: str = "plan-pro",
        tenant_id: str = "tenant-a",
    ) -> None:
        async with session_factory() as session, session.begin():
            await SubscriptionRepository(session).upsert(
                stripe_subscription_id=f"sub_{tenant_id}",
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
            await EntitlementsRebuilder(session, clock=clock).rebuild(tenant_id)

    return _provision


@pytest.fixture
def gate_call(session_factory, clock):
    """Run one gate method in a fresh session."""

    async def _call(method: str, *args):
        async with session_factory() as session, session.begin():
            gate = EntitlementGate(session, clock=clock)
            return await getattr(gate, method)(*args)

    return _call


def test_limit_key_for() -> None:
    assert limit_key_for("drivers") == "max_drivers"


class TestLimitedActions:
    @pytest.mark.asyncio
    async def test_below_limit_allowed(self, provision, gate_call):
        await provision()

        decision = await gate_call("can_perform_limited_action", "tenant-a", "drivers", 24)

        assert decision.allowed
        assert decision.limit == 25
        assert decision.current_count == 24

    @pytest.mark.asyncio
    async def test_at_limit_denied(self, provision, gate_call):
        await provision()

        decision = await gate_call("can_perform_limited_action", "tenant-a", "drivers", 25)

        assert not decision.allowed
        assert decision.reason == "Maximum drivers limit reached (25)"

    @pytest.mark.asyncio
    async def test_addon_raises_limit(self, provision, gate_call, grant_addon):
        await grant_addon("tenant-a", "addon-drivers", quantity=10)
        await provision()

        decision = await gate_call("can_perform_limited_action", "tenant-a", "drivers", 30)

        assert decision.allowed
        assert decision.limit == 35

    @pytest.mark.asyncio
    async def test_unlimited_kind_without_limit_is_denied(self, provision, gate_call):
        await provision()

        decision = await gate_call("can_perform_limited_action", "tenant-a", "vehicles", 0)

        assert not decision.allowed
        assert decision.reason == "Invalid max_vehicles limit"

    @pytest.mark.asyncio
    async def test_unknown_tenant_is_inactive(self, gate_call):
        decision = await gate_call("can_perform_limited_action", "tenant-new", "drivers", 0)

        assert not decision.allowed
        assert decision.reason == REASON_INACTIVE

    @pytest.mark.asyncio
    async def test_snapshot_cache_miss_rebuilds(self, session_factory, gate_call, clock):
        async with session_factory() as session, session.begin():
            await SubscriptionRepository(session).upsert(
                stripe_subscription_id="sub_cold",
                tenant_id="tenant-cold",
                plan_id="plan-starter",
                stripe_customer_id=None,
                status=SubscriptionStatus.ACTIVE,
                current_period_start=None,
                current_period_end=None,
                cancel_at_period_end=False,
                grace_period_until=None,
            )

        decision = await gate_call("can_perform_limited_action", "tenant-cold", "drivers", 3)

        assert decision.allowed
        assert decision.limit == 10
        async with session_factory() as session:
            assert (await EntitlementRepository(session).get("tenant-cold")).plan_code == "starter"


class TestGracePeriod:
    @pytest.mark.asyncio
    async def test_one_second_before_deadline_is_in_grace(self, provision, gate_call, clock):
        await provision(SubscriptionStatus.PAST_DUE, grace_period_until=clock.now + timedelta(seconds=1))

        grace = await gate_call("check_grace_period", "tenant-a")
        decision = await gate_call("can_perform_limited_action", "tenant-a", "drivers", 0)

        assert grace.is_in_grace
        assert grace.days_remaining == 1
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_deadline_equal_to_now_has_expired(self, provision, gate_call, clock):
        await provision(SubscriptionStatus.PAST_DUE, grace_period_until=clock.now)

        grace = await gate_call("check_grace_period", "tenant-a")
        decision = await gate_call("can_perform_limited_action", "tenant-a", "drivers", 0)

        assert not grace.is_in_grace
        assert grace.days_remaining == 0
        assert decision.reason == REASON_GRACE_EXPIRED

    @pytest.mark.asyncio
    async def test_grace_snapshot_expires_without_rebuild(self, provision, gate_call, clock):
        await provision(SubscriptionStatus.PAST_DUE, grace_period_until=clock.now + timedelta(days=2))
        assert (await gate_call("can_use_feature", "tenant-a", "max_drivers")).allowed

        clock.advance(days=3)

        decision = await gate_call("can_use_feature", "tenant-a", "max_drivers")
        assert not decision.allowed
        assert decision.reason == REASON_GRACE_EXPIRED

    @pytest.mark.asyncio
    async def test_active_tenant_not_in_grace(self, provision, gate_call):
        await provision()
        assert not (await gate_call("check_grace_period", "tenant-a")).is_in_grace


class TestFeatures:
    @pytest.mark.asyncio
    async def test_feature_from_addon(self, provision, gate_call, grant_addon):
        await grant_addon("tenant-a", "addon-rt")
        await provision()

        assert (await gate_call("can_use_feature", "tenant-a", "realtime_tracking")).allowed

    @pytest.mark.asyncio
    async def test_feature_missing(self, provision, gate_call):
        await provision()

        decision = await gate_call("can_use_feature", "tenant-a", "realtime_tracking")

        assert not decision.allowed
        assert decision.reason == "Feature 'realtime_tracking' requires an add-on. Please upgrade your plan."

    @pytest.mark.asyncio
    async def test_canceled_tenant_denied(self, provision, gate_call):
        await provision(SubscriptionStatus.CANCELED)

        decision = await gate_call("can_use_feature", "tenant-a", "max_drivers")

        assert decision.reason == REASON_INACTIVE


class TestStatus:
    @pytest.mark.asyncio
    async def test_grace_warning(self, provision, gate_call, clock):
        await provision(SubscriptionStatus.PAST_DUE, grace_period_until=clock.now + timedelta(days=6, hours=1))

        info = await gate_call("check_status", "tenant-a")

        assert info.status == "grace_period"
        assert info.is_in_grace
        assert not info.is_active
        assert info.warning == "Payment past due. Grace period expires in 7 days."

    @pytest.mark.asyncio
    async def test_active_has_no_warning(self, provision, gate_call):
        await provision()

        info = await gate_call("check_status", "tenant-a")

        assert info.is_active
        assert info.warning is None

    @pytest.mark.asyncio
    async def test_audit_retention_from_plan(self, provision, gate_call):
        await provision()
        assert await gate_call("audit_retention_days", "tenant-a") == 90

    @pytest.mark.asyncio
    async def test_audit_retention_addon(self, provision, gate_call, grant_addon):
        await grant_addon("tenant-a", "addon-audit")
        await provision(plan_id="plan-starter")
        assert await gate_call("audit_retention_days", "tenant-a") == 365

    @pytest.mark.asyncio
    async def test_audit_retention_default(self, provision, gate_call):
        await provision(plan_id="plan-starter")
        assert await gate_call("audit_retention_days", "tenant-a") == 30
