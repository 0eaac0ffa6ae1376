"""Tests for the JSON log formatter and the request-logging middleware."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from console_api.middleware.json_formatter import JSONFormatter


def _record(msg: str = "test message", level: int = logging.INFO, name: str = "test.logger", exc_info=None):
    return logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


class TestJSONFormatter:
    """Verify structured JSON output from the formatter."""

    def test_basic_format(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test.logger"
        assert data["message"] == "test message"
        assert "+00:00" in data["timestamp"]

    def test_single_line_output(self, formatter: JSONFormatter) -> None:
        assert "\n" not in formatter.format(_record("warn msg", logging.WARNING))

    def test_request_context_included(self, formatter: JSONFormatter) -> None:
        record = _record("request completed", name="console_api.access")
        record.request = {  # type: ignore[attr-defined]
            "method": "GET",
            "path": "/api/v1/entitlements",
            "status_code": 200,
            "tenant_id": "tenant-a",
        }

        data = json.loads(formatter.format(record))

        assert data["request"]["path"] == "/api/v1/entitlements"
        assert data["request"]["tenant_id"] == "tenant-a"

    def test_billing_event_context_included(self, formatter: JSONFormatter) -> None:
        record = _record("Billing event dead-lettered", logging.ERROR)
        record.billing_event = {  # type: ignore[attr-defined]
            "event_id": "evt_1",
            "event_type": "checkout.session.completed",
            "attempts": 1,
        }

        data = json.loads(formatter.format(record))

        assert data["billing_event"]["event_id"] == "evt_1"
        assert "request" not in data

    def test_no_structured_context_omitted(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record("plain msg")))
        assert "request" not in data
        assert "billing_event" not in data

    def test_exception_info_included(self, formatter: JSONFormatter) -> None:
        try:
            raise ValueError("test error")
        except ValueError:
            exc_info = sys.exc_info()

        data = json.loads(formatter.format(_record("error occurred", logging.ERROR, exc_info=exc_info)))

        assert "ValueError: test error" in data["exc_info"]
        assert "Traceback" in data["exc_info"]

    def test_non_serialisable_values_stringified(self, formatter: JSONFormatter) -> None:
        record = _record()
        record.billing_event = {"received_at": object()}  # type: ignore[attr-defined]

        data = json.loads(formatter.format(record))

        assert data["billing_event"]["received_at"].startswith("<object object")


class TestRequestLogging:
    @pytest.mark.asyncio
    async def test_correlation_id_echoed(self, client) -> None:
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "corr-123"})
        assert resp.headers["X-Correlation-ID"] == "corr-123"

    @pytest.mark.asyncio
    async def test_correlation_id_generated(self, client) -> None:
        resp = await client.get("/api/v1/health")
        assert len(resp.headers["X-Correlation-ID"]) == 36

    @pytest.mark.asyncio
    async def test_sensitive_headers_masked(self, client, auth_headers, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="console_api.access"):
            await client.get("/api/v1/entitlements/status", headers=auth_headers())

        [record] = [r for r in caplog.records if r.name == "console_api.access"]
        assert record.request["headers"]["authorization"] == "***"
        assert record.request["tenant_id"] == "tenant-a"
        assert record.request["status_code"] == 200

    @pytest.mark.asyncio
    async def test_client_errors_logged_as_warning(self, client, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="console_api.access"):
            await client.get("/api/v1/entitlements")

        [record] = [r for r in caplog.records if r.name == "console_api.access"]
        assert record.levelno == logging.WARNING
        assert record.request["tenant_id"] == "anonymous"
