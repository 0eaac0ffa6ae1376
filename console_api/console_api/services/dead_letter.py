"""Operator notification for dead-lettered billing events.

A dead-lettered event will never be applied automatically, so someone has
to look at it.  :class:`HttpDeadLetterNotifier` posts a short JSON notice to
an operations webhook (chat relay, incident tool).  Delivery is
best-effort: it retries a few times with exponential backoff and then gives
up with a warning; the event row itself stays flagged in the store either
way.

Notices are sent from background tasks so the webhook request that
dead-lettered the event is answered without waiting on the operations
endpoint.  :meth:`HttpDeadLetterNotifier.close` drains them at shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from console_api.services.billing_errors import FatalEventError

logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 5.0
_MAX_RETRIES = 3
_BACKOFF_BASE = 1.0  # seconds: 1, 2, 4
_DRAIN_TIMEOUT_SECONDS = 20.0


class HttpDeadLetterNotifier:
    """Post dead-letter notices to *url*.

    Parameters
    ----------
    url:
        Operations webhook endpoint.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client is
        created if not provided.
    backoff_base:
        Initial retry delay in seconds.
    """

    def __init__(
        self,
        url: str,
        http_client: httpx.AsyncClient | None = None,
        *,
        backoff_base: float = _BACKOFF_BASE,
    ) -> None:
        self._url = url
        self._client = http_client or httpx.AsyncClient(timeout=_TIMEOUT_SECONDS)
        self._owns_client = http_client is None
        self._backoff_base = backoff_base
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        """Number of notices still being delivered."""
        return len(self._pending)

    async def __call__(self, event_id: str, event_type: str, error: FatalEventError) -> None:
        """Schedule a notice for *event_id* and return immediately."""
        body = {
            "kind": "billing_event_dead_lettered",
            "event_id": event_id,
            "event_type": event_type,
            "error": str(error),
            "error_class": type(error).__name__,
            "at": datetime.now(UTC).isoformat(),
        }
        task = asyncio.create_task(self._deliver(event_id, body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight notices, cancelling any still running after *timeout*."""
        if not self._pending:
            return
        _, unfinished = await asyncio.wait(set(self._pending), timeout=timeout)
        if unfinished:
            logger.warning("Dropping %d undelivered dead-letter notice(s)", len(unfinished))
            for task in unfinished:
                task.cancel()
            await asyncio.gather(*unfinished, return_exceptions=True)

    async def close(self) -> None:
        """Drain pending notices, then close the HTTP client if we own it."""
        await self.drain(_DRAIN_TIMEOUT_SECONDS)
        if self._owns_client:
            await self._client.aclose()

    async def _deliver(self, event_id: str, body: dict[str, Any]) -> None:
        for attempt in range(_MAX_RETRIES):
            try:
                response = await self._client.post(self._url, json=body)
                if response.status_code < 400:
                    return
                logger.warning(
                    "Dead-letter notice for %s got HTTP %d (attempt %d/%d)",
                    event_id,
                    response.status_code,
                    attempt + 1,
                    _MAX_RETRIES,
                )
            except httpx.HTTPError as exc:
                logger.warning(
                    "Dead-letter notice for %s failed (attempt %d/%d): %s",
                    event_id,
                    attempt + 1,
                    _MAX_RETRIES,
                    exc,
                )
            if attempt < _MAX_RETRIES - 1:
                await asyncio.sleep(self._backoff_base * (2**attempt))

        logger.warning("Giving up on dead-letter notice for event %s", event_id)
