"""Inbound Stripe webhook dispatcher.

Orchestrates one webhook delivery end to end:

1. verify the signature against the raw body;
2. short-circuit deliveries whose event was already processed;
3. durably record the event (own transaction) so a crash below is retried;
4. apply the event through :class:`SubscriptionProjector` and mark it
   processed in a single transaction;
5. on failure leave the event unprocessed and record the error.

INVARIANT: ``processed_at`` is written only in the transaction that applied
the event's mutations, so a row with ``processed_at`` set always reflects a
committed projection.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from billing_core.state.repository import BillingEventRepository
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from console_api.config import BillingConfig
from console_api.middleware.prometheus import BILLING_WEBHOOK_EVENTS_TOTAL
from console_api.services.billing_errors import FatalEventError, WebhookRejected
from console_api.services.entitlements_rebuilder import Clock, utcnow
from console_api.services.signature_verifier import StripeSignatureVerifier
from console_api.services.subscription_projector import SubscriptionFetcher, SubscriptionProjector

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    """Result of one webhook delivery."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class DispatchResult:
    outcome: DispatchOutcome
    event_id: str | None = None
    event_type: str | None = None
    error: str | None = None

    @property
    def acknowledged(self) -> bool:
        """Whether the provider should stop redelivering this event."""
        return self.outcome in (DispatchOutcome.PROCESSED, DispatchOutcome.DUPLICATE, DispatchOutcome.DEAD_LETTERED)


# Called with (event_id, event_type, error) after an event is dead-lettered.
DeadLetterHook = Callable[[str, str, FatalEventError], Awaitable[None]]


class StripeWebhookDispatcher:
    """Verify, record and apply Stripe webhook deliveries.

    Parameters
    ----------
    session_factory:
        Factory for privileged (non-RLS) sessions.  Each delivery opens its
        own sessions; nothing is shared between deliveries.
    config:
        Billing configuration.
    verifier:
        Signature verifier.  Built from *config* when omitted.
    fetch_subscription:
        Passed through to the projector (Stripe API by default).
    dead_letter_hook:
        Optional coroutine notified of every dead-lettered event.  It is
        awaited inside the webhook request, so it must return promptly.
    clock:
        Source of ``received_at`` / ``processed_at`` and of the projector's
        notion of now.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: BillingConfig,
        *,
        verifier: StripeSignatureVerifier | None = None,
        fetch_subscription: SubscriptionFetcher | None = None,
        dead_letter_hook: DeadLetterHook | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._verifier = verifier or StripeSignatureVerifier(config.webhook_secret, config.webhook_tolerance_seconds)
        self._fetch_subscription = fetch_subscription
        self._dead_letter_hook = dead_letter_hook
        self._clock = clock

    async def dispatch(self, raw_body: bytes, signature_header: str | None) -> DispatchResult:
        """Process one delivery and report how the provider should be answered."""
        try:
            event = self._verifier.verify(raw_body, signature_header)
        except WebhookRejected as exc:
            logger.warning("Rejected Stripe webhook: %s", exc)
            return self._finish(DispatchResult(DispatchOutcome.REJECTED, error=str(exc)))

        event_id = str(event["id"])
        event_type = str(event["type"])

        try:
            async with self._session_factory() as session:
                events = BillingEventRepository(session)
                existing = await events.get(event_id)
                if existing is not None and existing.is_processed:
                    logger.info("Duplicate delivery of processed event %s (%s)", event_id, event_type)
                    return self._finish(DispatchResult(DispatchOutcome.DUPLICATE, event_id, event_type))
                await events.record_receipt(event_id, event_type, event, received_at=self._clock())
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("Could not record event %s (%s)", event_id, event_type, exc_info=True)
            return self._finish(DispatchResult(DispatchOutcome.FAILED, event_id, event_type, str(exc)))

        try:
            await self._apply(event_id, event_type, event)
        except FatalEventError as exc:
            if not await self._dead_letter(event_id, event_type, exc):
                return self._finish(DispatchResult(DispatchOutcome.FAILED, event_id, event_type, str(exc)))
            return self._finish(DispatchResult(DispatchOutcome.DEAD_LETTERED, event_id, event_type, str(exc)))
        except Exception as exc:
            logger.error(
                "Processing of event %s (%s) failed; awaiting redelivery",
                event_id,
                event_type,
                exc_info=True,
                extra={"billing_event": {"event_id": event_id, "event_type": event_type}},
            )
            await self._record_failure(event_id, f"{type(exc).__name__}: {exc}")
            return self._finish(DispatchResult(DispatchOutcome.FAILED, event_id, event_type, str(exc)))

        return self._finish(DispatchResult(DispatchOutcome.PROCESSED, event_id, event_type))

    async def _apply(self, event_id: str, event_type: str, event: dict[str, Any]) -> None:
        async with self._session_factory() as session, session.begin():
            projector = SubscriptionProjector(
                session,
                self._config,
                fetch_subscription=self._fetch_subscription,
                clock=self._clock,
            )
            if projector.handles(event_type):
                await projector.apply(event)
            else:
                logger.info("Unhandled Stripe event type %s (%s); acknowledging", event_type, event_id)

            if not await BillingEventRepository(session).mark_processed(event_id, self._clock()):
                logger.info("Event %s was completed by a concurrent delivery", event_id)

    async def _dead_letter(self, event_id: str, event_type: str, exc: FatalEventError) -> bool:
        """Flag *event_id* as never processable; ``False`` if the flag could not be stored."""
        try:
            async with self._session_factory() as session, session.begin():
                await BillingEventRepository(session).mark_dead_lettered(event_id, str(exc), self._clock())
        except SQLAlchemyError:
            logger.error("Could not dead-letter event %s", event_id, exc_info=True)
            return False

        logger.error(
            "Dead-lettered event %s (%s): %s",
            event_id,
            event_type,
            exc,
            extra={"billing_event": {"event_id": event_id, "event_type": event_type, "dead_lettered": True}},
        )
        if self._dead_letter_hook is not None:
            try:
                await self._dead_letter_hook(event_id, event_type, exc)
            except Exception:
                logger.warning("Dead-letter hook failed for event %s", event_id, exc_info=True)
        return True

    async def _record_failure(self, event_id: str, error: str) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                await BillingEventRepository(session).record_failure(event_id, error)
        except SQLAlchemyError:
            logger.warning("Could not record failure of event %s", event_id, exc_info=True)

    @staticmethod
    def _finish(result: DispatchResult) -> DispatchResult:
        BILLING_WEBHOOK_EVENTS_TOTAL.labels(
            event_type=result.event_type or "unknown",
            outcome=result.outcome.value,
        ).inc()
        return result
