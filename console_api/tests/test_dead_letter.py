"""Tests for the dead-letter operations notifier."""

from __future__ import annotations

import asyncio
import json
import logging

import httpx
import pytest

from console_api.services.billing_errors import MissingTenantContext
from console_api.services.dead_letter import HttpDeadLetterNotifier

URL = "https://ops.example.test/hooks/billing"


def _notifier(handler) -> tuple[HttpDeadLetterNotifier, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpDeadLetterNotifier(URL, http_client=client, backoff_base=0), client


class TestHttpDeadLetterNotifier:
    @pytest.mark.asyncio
    async def test_posts_notice(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        notifier, client = _notifier(handler)
        async with client:
            await notifier("evt_1", "checkout.session.completed", MissingTenantContext("checkout.session.completed"))
            await notifier.drain()

        [request] = seen
        assert str(request.url) == URL
        body = json.loads(request.content)
        assert body["kind"] == "billing_event_dead_lettered"
        assert body["event_id"] == "evt_1"
        assert body["error_class"] == "MissingTenantContext"
        assert "tenant_id" in body["error"]

    @pytest.mark.asyncio
    async def test_returns_before_delivery_completes(self) -> None:
        release = asyncio.Event()
        delivered: list[str] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            await release.wait()
            delivered.append(json.loads(request.content)["event_id"])
            return httpx.Response(200)

        notifier, client = _notifier(handler)
        async with client:
            await notifier("evt_slow", "invoice.payment_failed", MissingTenantContext("invoice.payment_failed"))

            assert notifier.pending == 1
            assert delivered == []

            release.set()
            await notifier.drain()

        assert delivered == ["evt_slow"]
        assert notifier.pending == 0

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self) -> None:
        statuses = iter([503, 502, 200])
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(next(statuses))

        notifier, client = _notifier(handler)
        async with client:
            await notifier("evt_1", "invoice.payment_failed", MissingTenantContext("invoice.payment_failed"))
            await notifier.drain()

        assert calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self, caplog: pytest.LogCaptureFixture) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ConnectError("refused", request=request)

        notifier, client = _notifier(handler)
        with caplog.at_level(logging.WARNING, logger="console_api.services.dead_letter"):
            async with client:
                await notifier("evt_9", "invoice.payment_failed", MissingTenantContext("invoice.payment_failed"))
                await notifier.drain()

        assert calls == 3
        assert "Giving up on dead-letter notice for event evt_9" in caplog.text

    @pytest.mark.asyncio
    async def test_drain_timeout_cancels_stuck_notice(self, caplog: pytest.LogCaptureFixture) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.Event().wait()
            return httpx.Response(200)

        notifier, client = _notifier(handler)
        with caplog.at_level(logging.WARNING, logger="console_api.services.dead_letter"):
            async with client:
                await notifier("evt_stuck", "invoice.payment_failed", MissingTenantContext("invoice.payment_failed"))
                await notifier.drain(timeout=0.01)

        assert notifier.pending == 0
        assert "Dropping 1 undelivered dead-letter notice(s)" in caplog.text

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self) -> None:
        notifier, client = _notifier(lambda request: httpx.Response(200))

        await notifier.close()

        assert not client.is_closed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_close_drains_then_closes_owned_client(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        notifier = HttpDeadLetterNotifier(URL, backoff_base=0)
        await notifier._client.aclose()
        notifier._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        await notifier("evt_2", "invoice.payment_failed", MissingTenantContext("invoice.payment_failed"))
        await notifier.close()

        assert len(seen) == 1
        assert notifier.pending == 0
        assert notifier._client.is_closed
