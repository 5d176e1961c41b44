import json
from decimal import Decimal
from types import SimpleNamespace

import pytest
import requests
import stripe

from app.core.config import Settings
from app.core.errors import ProviderConfigurationError, ProviderError, ValidationError
from app.models.transaction import PaymentMethod
from app.services.providers.base import BeginPaymentRequest
from app.services.providers.cellpay_client import CellPayAdapter, CellPayConfig
from app.services.providers.registry import build_adapters
from app.services.providers.stripe_client import StripeAdapter, StripeConfig, parse_stripe_event, to_cents
from app.services.providers.trustly_client import TrustlyAdapter, TrustlyConfig


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload) if payload is not None else ""

    def json(self):
        return self._payload


def begin_request(**kw):
    values = dict(transaction_id="tx-123", amount=Decimal("25.00"), currency="USD",
                  description="Credit purchase - 2500 credits", username="player_one", credits=2500)
    values.update(kw)
    return BeginPaymentRequest(**values)


# -- stripe -----------------------------------------------------------------------------


class FakeIntents:
    def __init__(self, intent=None, error=None):
        self.intent = intent
        self.error = error
        self.created = []

    def create(self, params=None, options=None):
        self.created.append((params, options))
        if self.error:
            raise self.error
        return self.intent

    def retrieve(self, intent_id):
        return self.intent


def stripe_adapter(intents):
    adapter = StripeAdapter(StripeConfig(secret_key="sk_test_123"))
    adapter._client = SimpleNamespace(payment_intents=intents)
    return adapter


def test_to_cents_rounds_half_up():
    assert to_cents(Decimal("25.00")) == 2500
    assert to_cents(Decimal("0.015")) == 2


def test_stripe_creates_intent_with_idempotency_key():
    intents = FakeIntents(intent=SimpleNamespace(id="pi_1", client_secret="pi_1_secret"))
    result = stripe_adapter(intents).begin_payment(begin_request(identity={"wallet": "google_pay"}))

    assert result.succeeded
    assert result.provider_reference == "pi_1"
    assert result.client_secret == "pi_1_secret"
    params, options = intents.created[0]
    assert params["amount"] == 2500
    assert params["currency"] == "usd"
    assert params["metadata"]["transaction_id"] == "tx-123"
    assert params["metadata"]["wallet"] == "google_pay"
    assert options == {"idempotency_key": "tx-123"}


def test_stripe_card_error_is_a_decline():
    intents = FakeIntents(error=stripe.CardError("Your card was declined.", "card", "card_declined"))
    result = stripe_adapter(intents).begin_payment(begin_request())
    assert result.succeeded is False
    assert "declined" in result.error


def test_stripe_api_error_is_provider_error():
    intents = FakeIntents(error=stripe.APIConnectionError("connection reset"))
    with pytest.raises(ProviderError):
        stripe_adapter(intents).begin_payment(begin_request())


def test_stripe_without_key_is_not_configured():
    with pytest.raises(ProviderConfigurationError):
        StripeAdapter(StripeConfig(secret_key="")).begin_payment(begin_request())


def test_stripe_fetch_outcome_maps_intent_status():
    intent = SimpleNamespace(id="pi_1", status="succeeded", amount=2500, amount_received=2500, last_payment_error=None)
    event = stripe_adapter(FakeIntents(intent=intent)).fetch_outcome("pi_1")
    assert event.outcome == "succeeded"
    assert event.amount == Decimal("25.00")

    intent = SimpleNamespace(id="pi_1", status="requires_payment_method", amount=2500, amount_received=0,
                             last_payment_error=SimpleNamespace(message="Card expired"))
    event = stripe_adapter(FakeIntents(intent=intent)).fetch_outcome("pi_1")
    assert event.outcome == "failed"
    assert event.error == "Card expired"

    intent = SimpleNamespace(id="pi_1", status="requires_action", amount=2500, amount_received=0,
                             last_payment_error=None)
    assert stripe_adapter(FakeIntents(intent=intent)).fetch_outcome("pi_1").outcome is None


def test_parse_stripe_event():
    event = {"id": "evt_1", "type": "payment_intent.canceled",
             "data": {"object": {"id": "pi_9", "amount": 1000, "cancellation_reason": "abandoned"}}}
    settlement = parse_stripe_event(event)
    assert settlement.outcome == "failed"
    assert settlement.error == "abandoned"
    assert settlement.amount == Decimal("10.00")
    assert parse_stripe_event({"type": "customer.created", "data": {"object": {}}}) is None
    with pytest.raises(ValueError):
        parse_stripe_event({"type": "payment_intent.succeeded", "data": {"object": {}}})


# -- trustly ----------------------------------------------------------------------------------


def trustly_adapter(**kw):
    values = dict(api_url="https://test.trustly.com/api/1", username="merchant", password="pw",
                  notification_url="http://localhost:5000/api/trustly-webhook",
                  success_url="http://localhost:5000?payment=success", fail_url="http://localhost:5000?payment=error")
    values.update(kw)
    return TrustlyAdapter(TrustlyConfig(**values))


BANK_IDENTITY = {"country": "SE", "firstName": "Ada", "lastName": "Lovelace", "email": "ada@example.com"}


def test_trustly_deposit_returns_redirect(monkeypatch):
    calls = []

    def fake_post(url, json=None, timeout=None):
        calls.append(json)
        return FakeResponse(200, {"result": {"data": {"url": "https://trustly.example/select", "orderid": "1987"}}})

    monkeypatch.setattr(requests, "post", fake_post)
    result = trustly_adapter().begin_payment(begin_request(identity=BANK_IDENTITY, provider_reference="tx-123"))

    assert result.succeeded
    assert result.provider_reference == "tx-123"
    assert result.redirect_url == "https://trustly.example/select"
    assert result.provider_transaction_id == "1987"
    data = calls[0]["params"]["Data"]
    assert calls[0]["method"] == "Deposit"
    assert data["MessageID"] == "tx-123"
    assert data["Attributes"]["Amount"] == "25.00"
    assert data["Attributes"]["Country"] == "SE"


def test_trustly_error_response_is_a_decline(monkeypatch):
    monkeypatch.setattr(requests, "post", lambda url, json=None, timeout=None: FakeResponse(
        200, {"error": {"message": "ERROR_INVALID_CREDENTIALS", "error": {"data": {"message": "Bank unavailable"}}}}))
    result = trustly_adapter().begin_payment(begin_request(identity=BANK_IDENTITY))
    assert result.succeeded is False
    assert result.error == "Bank unavailable"


def test_trustly_timeout_is_provider_error(monkeypatch):
    def timeout(url, json=None, timeout=None):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(requests, "post", timeout)
    with pytest.raises(ProviderError):
        trustly_adapter().begin_payment(begin_request(identity=BANK_IDENTITY))


def test_trustly_sandbox_and_missing_credentials():
    result = trustly_adapter(sandbox=True).begin_payment(begin_request(identity=BANK_IDENTITY))
    assert result.redirect_url == "https://test.trustly.com/select-bank?token=mock_tx-123"
    with pytest.raises(ProviderConfigurationError):
        trustly_adapter(username="").begin_payment(begin_request(identity=BANK_IDENTITY))


def test_trustly_notification_parsing():
    adapter = trustly_adapter()
    event = adapter.verify_or_settle({"method": "credit", "params": {"data": {"messageid": "tx-1", "amount": "40"}}})
    assert event.provider_reference == "tx-1"
    assert event.outcome == "succeeded"
    assert event.amount == Decimal("40.00")

    flat = adapter.verify_or_settle({"method": "cancel", "params": {"messageid": "tx-2"}})
    assert flat.outcome == "failed"

    with pytest.raises(ValidationError):
        adapter.verify_or_settle({"method": "credit", "params": {"data": {"messageid": "tx-1", "amount": "lots"}}})


# -- cellpay ------------------------------------------------------------------------------------


def cellpay_adapter(**kw):
    values = dict(api_url="https://api.cellpay.example/v1", api_key="cp_key")
    values.update(kw)
    return CellPayAdapter(CellPayConfig(**values))


CARRIER_IDENTITY = {"phoneNumber": "+15551234567"}


def test_cellpay_approved_charge(monkeypatch):
    calls = []

    def fake_request(method=None, url=None, json=None, headers=None, timeout=None):
        calls.append((method, url, json, headers))
        return FakeResponse(201, {"id": "ch_77", "status": "approved"})

    monkeypatch.setattr(requests, "request", fake_request)
    result = cellpay_adapter().begin_payment(begin_request(identity=CARRIER_IDENTITY))

    assert result.succeeded
    assert result.provider_reference == "ch_77"
    method, url, body, headers = calls[0]
    assert (method, url) == ("POST", "https://api.cellpay.example/v1/charges")
    assert body["phone_number"] == "+15551234567"
    assert headers["Idempotency-Key"] == "tx-123"
    assert headers["Authorization"] == "Bearer cp_key"


def test_cellpay_decline(monkeypatch):
    monkeypatch.setattr(requests, "request", lambda **kw: FakeResponse(
        402, {"id": "ch_78", "status": "declined", "message": "Insufficient carrier balance"}))
    result = cellpay_adapter().begin_payment(begin_request(identity=CARRIER_IDENTITY))
    assert result.succeeded is False
    assert result.provider_reference == "ch_78"
    assert result.error == "Insufficient carrier balance"


@pytest.mark.parametrize("status_code,error", [(401, ProviderConfigurationError), (503, ProviderError)])
def test_cellpay_upstream_errors(monkeypatch, status_code, error):
    monkeypatch.setattr(requests, "request", lambda **kw: FakeResponse(status_code, {"message": "nope"}))
    with pytest.raises(error):
        cellpay_adapter().begin_payment(begin_request(identity=CARRIER_IDENTITY))


def test_cellpay_unexpected_status_is_provider_error(monkeypatch):
    monkeypatch.setattr(requests, "request", lambda **kw: FakeResponse(200, {"id": "ch_79", "status": "queued"}))
    with pytest.raises(ProviderError):
        cellpay_adapter().begin_payment(begin_request(identity=CARRIER_IDENTITY))


# -- registry ------------------------------------------------------------------------------------


def test_registry_covers_every_method():
    adapters = build_adapters(Settings(DATABASE_URL="sqlite://", BASE_URL="https://pay.example/"))
    assert set(adapters) == set(PaymentMethod)
    assert adapters[PaymentMethod.STRIPE_APPLE_PAY] is adapters[PaymentMethod.STRIPE_CARD]
    assert adapters[PaymentMethod.TRUSTLY].cfg.notification_url == "https://pay.example/api/trustly-webhook"
    assert adapters[PaymentMethod.TRUSTLY].assigns_reference is True


@pytest.mark.parametrize("amount", ["NaN", "sNaN", "Infinity", "-1"])
def test_trustly_notification_rejects_non_finite_amounts(amount):
    with pytest.raises(ValidationError):
        trustly_adapter().verify_or_settle({"method": "credit", "params": {"data": {"messageid": "tx-1",
                                                                                    "amount": amount}}})


@pytest.mark.parametrize("event", [
    {"type": "payment_intent.succeeded", "data": "oops"},
    {"type": "payment_intent.succeeded", "data": {"object": "pi_1"}},
    {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1", "amount_received": "2500"}}},
])
def test_parse_stripe_event_rejects_malformed_objects(event):
    with pytest.raises(ValueError):
        parse_stripe_event(event)
