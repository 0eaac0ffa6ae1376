"""Shared fixtures for console API tests.

Provides an in-memory SQLite billing store seeded with a small catalog,
session-token and Stripe-signature helpers, Stripe event payload builders,
and an ``httpx.AsyncClient`` bound to the FastAPI app.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from billing_core.state.sqlite_adapter import create_local_tables, get_local_engine
from billing_core.state.tables import AddonTable, OrgAddonTable, PlanLimitTable, PlanTable
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from console_api.config import APISettings, BillingConfig
from console_api.dependencies import get_session_factory, get_settings
from console_api.main import create_app

TEST_SESSION_SECRET = "test-session-secret"
TEST_WEBHOOK_SECRET = "whsec_test_secret"

PERIOD_START = datetime(2026, 3, 1, tzinfo=UTC)
PERIOD_END = datetime(2026, 4, 1, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> APISettings:
    return APISettings(
        _env_file=None,  # type: ignore[call-arg]
        database_url="sqlite+aiosqlite:///:memory:",
        session_secret=SecretStr(TEST_SESSION_SECRET),
        billing_enabled=True,
        stripe_secret_key=SecretStr("sk_test_123"),
        stripe_webhook_secret=SecretStr(TEST_WEBHOOK_SECRET),
        billing_grace_days=7,
    )


@pytest.fixture
def billing_config(settings: APISettings) -> BillingConfig:
    return BillingConfig.from_settings(settings)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory billing store with two plans and three add-ons.

    * ``plan-starter`` (``price_starter``): 10 drivers, $19.
    * ``plan-pro`` (``price_pro``): 25 drivers, 90 days of audit history, $49.
    * ``plan-legacy`` (``price_legacy``): inactive.
    """
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        session.add_all(
            [
                PlanTable(
                    id="plan-starter",
                    code="starter",
                    name="Starter",
                    monthly_price_cents=1900,
                    stripe_price_id="price_starter",
                ),
                PlanTable(
                    id="plan-pro",
                    code="pro",
                    name="Pro",
                    monthly_price_cents=4900,
                    stripe_price_id="price_pro",
                ),
                PlanTable(
                    id="plan-legacy",
                    code="legacy",
                    name="Legacy",
                    active=False,
                    stripe_price_id="price_legacy",
                ),
                AddonTable(
                    id="addon-drivers",
                    code="extra_drivers",
                    name="Extra drivers",
                    stripe_price_id="price_extra_drivers",
                ),
                AddonTable(
                    id="addon-rt",
                    code="realtime_tracking",
                    name="Realtime tracking",
                    stripe_price_id="price_realtime",
                ),
                AddonTable(
                    id="addon-audit",
                    code="audit_retention_365",
                    name="Audit retention 365",
                    stripe_price_id="price_audit",
                ),
            ]
        )
        await session.flush()
        session.add_all(
            [
                PlanLimitTable(plan_id="plan-starter", limit_key="max_drivers", value=10),
                PlanLimitTable(plan_id="plan-pro", limit_key="max_drivers", value=25),
                PlanLimitTable(plan_id="plan-pro", limit_key="audit_retention_days", value=90),
            ]
        )
        await session.commit()

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def grant_addon(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    """Give a tenant an add-on row, as the provisioning side would."""

    async def _grant(tenant_id: str, addon_id: str, quantity: int = 1, status: str = "active") -> None:
        async with session_factory() as session:
            session.add(OrgAddonTable(tenant_id=tenant_id, addon_id=addon_id, quantity=quantity, status=status))
            await session.commit()

    return _grant


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@pytest.fixture
def make_token() -> Callable[..., str]:
    """Build ``tdsess.`` bearer tokens signed with the test secret."""

    def _make(
        tenant_id: str | None = "tenant-a",
        sub: str = "user@example.com",
        role: str | None = "member",
        expires_in: float = 3600,
    ) -> str:
        claims: dict[str, Any] = {"sub": sub, "exp": time.time() + expires_in}
        if tenant_id is not None:
            claims["tenant_id"] = tenant_id
        if role is not None:
            claims["role"] = role
        claims_json = json.dumps(claims)
        signature = hmac.new(
            TEST_SESSION_SECRET.encode("utf-8"),
            claims_json.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        encoded = base64.urlsafe_b64encode(claims_json.encode("utf-8")).decode("ascii")
        return f"tdsess.{encoded}.{signature}"

    return _make


@pytest.fixture
def auth_headers(make_token: Callable[..., str]) -> Callable[..., dict[str, str]]:
    def _headers(**kwargs: Any) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(**kwargs)}"}

    return _headers


# ---------------------------------------------------------------------------
# Stripe webhooks
# ---------------------------------------------------------------------------


@pytest.fixture
def sign_payload() -> Callable[..., str]:
    """Compute a ``Stripe-Signature`` header for a raw body."""

    def _sign(payload: bytes | str, secret: str = TEST_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        ts = int(time.time()) if timestamp is None else timestamp
        digest = hmac.new(secret.encode("utf-8"), f"{ts}.{body}".encode(), hashlib.sha256).hexdigest()
        return f"t={ts},v1={digest}"

    return _sign


class StripeEvents:
    """Builders for the Stripe event payloads the projector handles."""

    def __init__(self) -> None:
        self._counter = 0

    def _event(self, event_type: str, data_object: dict[str, Any], event_id: str | None = None) -> dict[str, Any]:
        self._counter += 1
        return {
            "id": event_id or f"evt_{self._counter:04d}",
            "object": "event",
            "type": event_type,
            "data": {"object": data_object},
        }

    @staticmethod
    def subscription(
        sub_id: str = "sub_1",
        tenant_id: str | None = "tenant-a",
        price_id: str = "price_pro",
        status: str = "active",
        customer: str = "cus_1",
        cancel_at_period_end: bool = False,
        current_period_start: datetime = PERIOD_START,
        current_period_end: datetime = PERIOD_END,
    ) -> dict[str, Any]:
        return {
            "id": sub_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "current_period_start": int(current_period_start.timestamp()),
            "current_period_end": int(current_period_end.timestamp()),
            "metadata": {"tenant_id": tenant_id} if tenant_id else {},
            "items": {"object": "list", "data": [{"id": "si_1", "price": {"id": price_id}}]},
        }

    def checkout_completed(
        self,
        tenant_id: str | None = "tenant-a",
        sub_id: str = "sub_1",
        price_id: str = "price_pro",
        status: str = "active",
        event_id: str | None = None,
        embed: bool = True,
    ) -> dict[str, Any]:
        session: dict[str, Any] = {
            "id": "cs_test_1",
            "object": "checkout.session",
            "mode": "subscription",
            "customer": "cus_1",
            "metadata": {"tenant_id": tenant_id} if tenant_id else {},
            "subscription": (
                self.subscription(sub_id, tenant_id, price_id, status) if embed else sub_id
            ),
        }
        return self._event("checkout.session.completed", session, event_id)

    def subscription_updated(self, event_id: str | None = None, **kwargs: Any) -> dict[str, Any]:
        return self._event("customer.subscription.updated", self.subscription(**kwargs), event_id)

    def subscription_deleted(self, event_id: str | None = None, **kwargs: Any) -> dict[str, Any]:
        kwargs.setdefault("status", "canceled")
        return self._event("customer.subscription.deleted", self.subscription(**kwargs), event_id)

    def payment_succeeded(self, sub_id: str = "sub_1", event_id: str | None = None) -> dict[str, Any]:
        return self._event(
            "invoice.payment_succeeded",
            {"id": "in_paid", "object": "invoice", "subscription": sub_id},
            event_id,
        )

    def payment_failed(self, sub_id: str = "sub_1", event_id: str | None = None) -> dict[str, Any]:
        return self._event(
            "invoice.payment_failed",
            {"id": "in_failed", "object": "invoice", "subscription": sub_id},
            event_id,
        )


@pytest.fixture
def stripe_events() -> StripeEvents:
    return StripeEvents()


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FrozenClock:
    """A settable clock for grace-window arithmetic."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 10, 12, 0, 0, tzinfo=UTC))


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture
def app(settings: APISettings, session_factory: async_sessionmaker[AsyncSession]):
    application = create_app(settings)
    application.dependency_overrides[get_settings] = lambda: settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
