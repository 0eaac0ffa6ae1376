"""Tests for the liveness, readiness and Prometheus scrape endpoints."""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from console_api import __version__
from console_api.dependencies import get_service_session


@pytest.fixture
def broken_db(app):
    """Make every ``SELECT 1`` fail as if the database were unreachable."""
    session = AsyncMock()
    session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))

    async def _session() -> AsyncGenerator[AsyncMock, None]:
        yield session

    app.dependency_overrides[get_service_session] = _session
    return session


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, client) -> None:
        resp = await client.get("/api/v1/health")

        assert resp.status_code == 200
        assert resp.json() == {
            "status": "healthy",
            "version": __version__,
            "db": "ok",
            "billing_enabled": True,
        }

    @pytest.mark.asyncio
    async def test_database_down_is_degraded(self, client, broken_db) -> None:
        resp = await client.get("/api/v1/health")

        assert resp.status_code == 200
        assert resp.json()["db"] == "degraded"


class TestReadiness:
    @pytest.mark.asyncio
    async def test_ready(self, client) -> None:
        resp = await client.get("/ready")

        assert resp.status_code == 200
        assert resp.json()["status"] == "ready"
        assert resp.json()["checks"] == {"db": "ok"}

    @pytest.mark.asyncio
    async def test_not_ready(self, client, broken_db) -> None:
        resp = await client.get("/ready")

        assert resp.status_code == 503
        assert resp.json()["status"] == "not_ready"
        assert resp.json()["checks"] == {"db": "unavailable"}


class TestMetricsEndpoint:
    @pytest.mark.asyncio
    async def test_prometheus_text_format(self, client) -> None:
        resp = await client.get("/metrics")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert "tenantdesk_http_requests_total" in resp.text

    @pytest.mark.asyncio
    async def test_billing_counters_exposed(self, client, sign_payload, stripe_events) -> None:
        body = json.dumps(stripe_events.checkout_completed()).encode()
        await client.post(
            "/api/v1/billing/webhooks/stripe",
            content=body,
            headers={"Stripe-Signature": sign_payload(body)},
        )

        text = (await client.get("/metrics")).text

        assert 'billing_webhook_events_total{event_type="checkout.session.completed",outcome="processed"}' in text
        assert 'billing_entitlement_rebuilds_total{outcome="success"}' in text
