"""Stripe webhook signature verification.

Checks the ``Stripe-Signature`` header against the exact raw request body
before any byte of the payload is trusted.  The HMAC comparison and the
timestamp tolerance are delegated to the Stripe library; this module only
adds the decoding and shape checks the dispatcher relies on.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import stripe

from console_api.services.billing_errors import InvalidSignature, MissingSignature

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


class StripeSignatureVerifier:
    """Authenticate webhook deliveries signed with a Stripe endpoint secret.

    Parameters
    ----------
    secret:
        The endpoint's ``whsec_...`` signing secret.
    tolerance_seconds:
        Maximum age of the signed timestamp.  Older deliveries are rejected
        as replays.
    """

    def __init__(self, secret: str, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS) -> None:
        self._secret = secret
        self._tolerance = tolerance_seconds

    def verify(self, raw_body: bytes, signature_header: str | None) -> dict[str, Any]:
        """Verify *raw_body* and return the decoded event.

        Raises
        ------
        MissingSignature
            If *signature_header* is empty.
        InvalidSignature
            If the secret is not configured, the signature or timestamp does
            not verify, or the body is not a JSON event object.
        """
        if not signature_header:
            raise MissingSignature()
        if not self._secret:
            raise InvalidSignature("Webhook secret not configured")

        try:
            payload_text = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidSignature("Invalid payload: body is not UTF-8") from None

        try:
            stripe.WebhookSignature.verify_header(payload_text, signature_header, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise InvalidSignature(f"Signature verification failed: {exc}") from exc

        try:
            event = json.loads(payload_text)
        except ValueError:
            raise InvalidSignature("Invalid payload: body is not JSON") from None

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise InvalidSignature("Invalid payload: event id or type missing")
        return event
