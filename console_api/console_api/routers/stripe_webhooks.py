"""Stripe webhook receiver.

``POST /billing/webhooks/stripe`` bypasses session authentication; the
delivery is authenticated by its ``Stripe-Signature`` header instead.  The
raw body is handed to the dispatcher untouched because the signature covers
its exact bytes.

Response contract (Stripe retries any non-2xx answer):

==============================  ======  ===============================
Outcome                         Status  Body
==============================  ======  ===============================
processed / duplicate           200     ``{"received": true, ...}``
dead-lettered                   200     ``{"received": true, ...}``
missing or invalid signature    400     ``{"error": ...}``
retryable processing failure    500     ``{"error", "message"}``
==============================  ======  ===============================
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from console_api.dependencies import SettingsDep, WebhookDispatcherDep
from console_api.services.webhook_dispatcher import DispatchOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing/webhooks", tags=["billing"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    dispatcher: WebhookDispatcherDep,
) -> JSONResponse:
    """Verify, record and apply one Stripe event delivery."""
    if not settings.billing_enabled:
        return JSONResponse(status_code=200, content={"received": True, "status": "billing_disabled"})

    body = await request.body()
    result = await dispatcher.dispatch(body, request.headers.get("stripe-signature"))

    if result.outcome == DispatchOutcome.REJECTED:
        return JSONResponse(status_code=400, content={"error": result.error or "Invalid signature"})
    if result.outcome == DispatchOutcome.FAILED:
        return JSONResponse(
            status_code=500,
            content={"error": "Processing failed", "message": result.error or "Unknown error"},
        )
    return JSONResponse(
        status_code=200,
        content={"received": True, "status": result.outcome.value, "event_id": result.event_id},
    )
