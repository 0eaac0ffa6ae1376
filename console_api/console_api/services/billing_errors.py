"""Error taxonomy of the billing webhook pipeline.

The webhook dispatcher is the single place these errors are turned into
responses:

* :class:`WebhookRejected` -- the delivery is not authentic; nothing is
  recorded and the provider gets a 400.
* :class:`FatalEventError` -- the event is authentic but can never be
  applied; it is dead-lettered and the provider is told not to retry.
* :class:`RetryableEventError` -- the event may succeed on redelivery
  (missing catalog data, ordering races); the provider gets a 500.

Any other exception raised while applying an event (database errors,
malformed rows) is treated as retryable.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for billing pipeline errors."""


# ---------------------------------------------------------------------------
# Authenticity
# ---------------------------------------------------------------------------


class WebhookRejected(BillingError):
    """The webhook delivery could not be authenticated."""


class MissingSignature(WebhookRejected):
    def __init__(self) -> None:
        super().__init__("Missing stripe-signature header")


class InvalidSignature(WebhookRejected):
    def __init__(self, reason: str = "Invalid signature") -> None:
        self.reason = reason
        super().__init__(reason)


# ---------------------------------------------------------------------------
# Non-retryable
# ---------------------------------------------------------------------------


class FatalEventError(BillingError):
    """The event can never be applied, however often it is redelivered."""


class MissingTenantContext(FatalEventError):
    def __init__(self, event_type: str, object_id: str | None = None) -> None:
        self.event_type = event_type
        self.object_id = object_id
        super().__init__(f"{event_type} for {object_id or 'unknown object'} carries no tenant_id metadata")


# ---------------------------------------------------------------------------
# Retryable
# ---------------------------------------------------------------------------


class RetryableEventError(BillingError):
    """The event may apply cleanly on a later delivery."""


class PlanNotFound(RetryableEventError):
    """No plan matches a Stripe price id (or a stored plan id vanished)."""

    def __init__(self, price_id: str | None = None, *, plan_id: str | None = None) -> None:
        self.price_id = price_id
        self.plan_id = plan_id
        if plan_id is not None:
            super().__init__(f"Plan {plan_id} does not exist")
        else:
            super().__init__(f"No active plan for price {price_id!r}")


class SubscriptionNotFound(RetryableEventError):
    def __init__(self, stripe_subscription_id: str) -> None:
        self.stripe_subscription_id = stripe_subscription_id
        super().__init__(f"Subscription {stripe_subscription_id} is not known yet")
