"""End-to-end billing lifecycle through the HTTP surface.

Each scenario delivers signed Stripe events to the webhook endpoint and
observes the result the way the console and feature code would: through
``/api/v1/entitlements`` and a route guarded by ``require_feature``.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import pytest
from fastapi import Depends

from console_api.dependencies import require_feature

LIVE_TRACKING = "/api/v1/tracking/live"


@pytest.fixture
def guarded_app(app):
    """Mount a realtime-tracking route behind the feature gate."""

    async def start_live_tracking() -> dict[str, bool]:
        return {"started": True}

    app.router.add_api_route(
        LIVE_TRACKING,
        start_live_tracking,
        methods=["POST"],
        dependencies=[Depends(require_feature("realtime_tracking"))],
    )
    return app


@pytest.fixture
def deliver(client, sign_payload):
    async def _deliver(event) -> dict:
        body = json.dumps(event).encode()
        resp = await client.post(
            "/api/v1/billing/webhooks/stripe",
            content=body,
            headers={"Stripe-Signature": sign_payload(body)},
        )
        assert resp.status_code == 200, resp.text
        return resp.json()

    return _deliver


@pytest.fixture
def entitlements(client, auth_headers):
    async def _get(tenant_id: str = "tenant-a") -> dict:
        resp = await client.get("/api/v1/entitlements", headers=auth_headers(tenant_id=tenant_id))
        assert resp.status_code == 200, resp.text
        return resp.json()

    return _get


class TestSubscriptionLifecycle:
    @pytest.mark.asyncio
    async def test_checkout_failed_payment_recovery(self, deliver, entitlements, stripe_events):
        await deliver(stripe_events.checkout_completed())
        assert (await entitlements())["plan"] == {"code": "pro", "status": "active"}

        before = datetime.now(UTC)
        await deliver(stripe_events.payment_failed())
        after = datetime.now(UTC)

        body = await entitlements()
        assert body["plan"]["status"] == "grace_period"
        assert body["grace"]["isInGrace"] is True
        grace_until = datetime.fromisoformat(body["grace"]["graceUntil"])
        assert before + timedelta(days=7) <= grace_until <= after + timedelta(days=7)
        assert body["limits"]["max_drivers"] == 25

        await deliver(stripe_events.payment_succeeded())

        body = await entitlements()
        assert body["plan"]["status"] == "active"
        assert body["grace"]["isInGrace"] is False
        assert body["grace"]["graceUntil"] is None

    @pytest.mark.asyncio
    async def test_plan_change_and_cancellation(self, deliver, entitlements, stripe_events):
        await deliver(stripe_events.checkout_completed(price_id="price_starter"))
        assert (await entitlements())["limits"]["max_drivers"] == 10

        await deliver(stripe_events.subscription_updated(price_id="price_pro"))
        body = await entitlements()
        assert body["plan"]["code"] == "pro"
        assert body["limits"]["max_drivers"] == 25

        await deliver(stripe_events.subscription_deleted())
        assert (await entitlements())["plan"] == {"code": None, "status": "inactive"}

    @pytest.mark.asyncio
    async def test_out_of_order_delivery_converges(self, client, sign_payload, deliver, entitlements, stripe_events):
        early = stripe_events.subscription_updated(event_id="evt_early", price_id="price_starter")
        body = json.dumps(early).encode()

        first = await client.post(
            "/api/v1/billing/webhooks/stripe",
            content=body,
            headers={"Stripe-Signature": sign_payload(body)},
        )
        assert first.status_code == 500

        await deliver(stripe_events.checkout_completed(price_id="price_pro"))
        retried = await deliver(early)

        assert retried["status"] == "processed"
        assert (await entitlements())["plan"]["code"] == "starter"

    @pytest.mark.asyncio
    async def test_redelivery_does_not_reapply(self, deliver, entitlements, stripe_events):
        checkout = stripe_events.checkout_completed()
        await deliver(checkout)
        await deliver(stripe_events.subscription_deleted())

        replay = await deliver(checkout)

        assert replay["status"] == "duplicate"
        assert (await entitlements())["plan"]["status"] == "inactive"


class TestFeatureGate:
    @pytest.mark.asyncio
    async def test_feature_allowed_with_addon(
        self, guarded_app, client, auth_headers, deliver, stripe_events, grant_addon
    ):
        await grant_addon("tenant-a", "addon-rt")
        await deliver(stripe_events.checkout_completed())

        resp = await client.post(LIVE_TRACKING, headers=auth_headers())

        assert resp.status_code == 200
        assert resp.json() == {"started": True}

    @pytest.mark.asyncio
    async def test_feature_denied_without_addon(self, guarded_app, client, auth_headers, deliver, stripe_events):
        await deliver(stripe_events.checkout_completed())

        resp = await client.post(LIVE_TRACKING, headers=auth_headers())

        assert resp.status_code == 403
        assert resp.json()["detail"] == "Feature 'realtime_tracking' requires an add-on. Please upgrade your plan."

    @pytest.mark.asyncio
    async def test_canceled_tenant_denied(
        self, guarded_app, client, auth_headers, deliver, stripe_events, grant_addon
    ):
        await grant_addon("tenant-a", "addon-rt")
        await deliver(stripe_events.checkout_completed())
        await deliver(stripe_events.subscription_deleted())

        resp = await client.post(LIVE_TRACKING, headers=auth_headers())

        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_unsubscribed_tenant_denied(self, guarded_app, client, auth_headers):
        resp = await client.post(LIVE_TRACKING, headers=auth_headers(tenant_id="tenant-new"))
        assert resp.status_code == 403
