import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

import stripe

from app.core.errors import ProviderConfigurationError, ProviderError
from app.services.providers.base import BeginPaymentRequest, BeginPaymentResult, ProviderAdapter, SettlementEvent

logger = logging.getLogger(__name__)

# PaymentIntent event type -> settlement outcome; other event types are acknowledged and ignored
EVENT_OUTCOMES = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "failed",
    "payment_intent.processing": "processing",
}


@dataclass
class StripeConfig:
    secret_key: str
    timeout: float = 20.0


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents) -> Decimal | None:
    if cents is None:
        return None
    return (Decimal(int(cents)) / 100).quantize(Decimal("0.01"))


class StripeAdapter(ProviderAdapter):
    """Card payments (plain card, Google Pay, Apple Pay) through Stripe PaymentIntents.

    Confirmation happens in the browser with the returned client secret; the result
    arrives later as a signed webhook, so begin_payment never settles anything.
    """

    name = "stripe"

    def __init__(self, cfg: StripeConfig):
        self.cfg = cfg
        self._client: stripe.StripeClient | None = None

    def _stripe(self) -> stripe.StripeClient:
        if not self.cfg.secret_key:
            raise ProviderConfigurationError("Stripe is not configured (missing STRIPE_SECRET_KEY)")
        if self._client is None:
            self._client = stripe.StripeClient(
                self.cfg.secret_key,
                http_client=stripe.RequestsClient(timeout=self.cfg.timeout),
                max_network_retries=0,
            )
        return self._client

    def begin_payment(self, req: BeginPaymentRequest) -> BeginPaymentResult:
        client = self._stripe()
        params = {
            "amount": to_cents(req.amount),
            "currency": req.currency.lower(),
            "description": req.description,
            "automatic_payment_methods": {"enabled": True},
            "metadata": {
                "transaction_id": req.transaction_id,
                "username": req.username,
                "credits": str(req.credits),
                "wallet": req.identity.get("wallet") or "",
            },
        }
        try:
            intent = client.payment_intents.create(params=params, options={"idempotency_key": req.transaction_id})
        except stripe.CardError as e:
            return BeginPaymentResult(provider_reference="", succeeded=False, error=e.user_message or str(e))
        except stripe.AuthenticationError as e:
            raise ProviderConfigurationError(f"Stripe rejected the API key: {e}")
        except stripe.StripeError as e:
            raise ProviderError(f"Stripe error creating PaymentIntent for {req.transaction_id}: {e}")

        logger.info("Stripe PaymentIntent %s created for transaction %s", intent.id, req.transaction_id)
        return BeginPaymentResult(
            provider_reference=intent.id,
            client_secret=intent.client_secret,
            provider_transaction_id=intent.id,
        )

    def fetch_outcome(self, provider_reference: str) -> SettlementEvent:
        """Ask Stripe for the current state of a PaymentIntent (used by the reconciliation job)."""
        client = self._stripe()
        try:
            intent = client.payment_intents.retrieve(provider_reference)
        except stripe.StripeError as e:
            raise ProviderError(f"Stripe error retrieving {provider_reference}: {e}")

        status = intent.status
        outcome = None
        error = None
        if status == "succeeded":
            outcome = "succeeded"
        elif status == "canceled":
            outcome = "failed"
            error = "PaymentIntent canceled"
        elif status == "processing":
            outcome = "processing"
        elif status == "requires_payment_method" and intent.last_payment_error:
            outcome = "failed"
            error = intent.last_payment_error.message
        amount = from_cents(intent.amount_received) if outcome == "succeeded" else from_cents(intent.amount)
        return SettlementEvent(
            provider_reference=intent.id,
            outcome=outcome,
            amount=amount,
            event_type=f"reconcile.{status}",
            error=error,
        )


def parse_stripe_event(event: dict) -> SettlementEvent | None:
    """Map a verified Stripe event body to a settlement event. None for event types we do not handle."""
    event_type = event.get("type") or ""
    if not isinstance(event_type, str):
        raise ValueError("event type is not a string")
    outcome = EVENT_OUTCOMES.get(event_type)
    if outcome is None:
        return None
    data = event.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise ValueError("event without a data.object")
    ref = obj.get("id")
    if not ref or not isinstance(ref, str):
        raise ValueError("PaymentIntent event without an id")
    cents = obj.get("amount_received") if outcome == "succeeded" else obj.get("amount")
    cents = cents if cents else obj.get("amount")
    if cents is not None and (isinstance(cents, bool) or not isinstance(cents, int) or cents < 0):
        raise ValueError("PaymentIntent amount is not a whole number of cents")
    error = None
    if outcome == "failed":
        last_error = obj.get("last_payment_error")
        error = ((last_error.get("message") if isinstance(last_error, dict) else None)
                 or obj.get("cancellation_reason")
                 or "Payment failed")
    return SettlementEvent(
        provider_reference=ref,
        outcome=outcome,
        amount=from_cents(cents),
        event_type=event_type,
        event_id=str(event.get("id") or ""),
        error=error,
    )
