import hashlib
import hmac
import json
import os
import time
from decimal import Decimal

# Settings are read at import time, so the environment must be in place first.
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["TRUSTLY_WEBHOOK_SECRET"] = "trustly_test_secret"
os.environ["TRUSTLY_SETTLE_ON_DISPATCH"] = "false"
os.environ["SENDGRID_API_KEY"] = ""

import pytest
from fastapi.testclient import TestClient

from app.api.deps import get_adapters, get_notifier
from app.core.config import settings
from app.db.session import Base, SessionLocal, engine
from app.main import app
from app.models.audit_log import AuditLog  # noqa: F401
from app.models.credit_package import CreditPackage
from app.models.email_log import EmailLog  # noqa: F401
from app.models.transaction import PaymentMethod
from app.models.user import User
from app.services.payment_orchestrator import PaymentOrchestrator
from app.services.providers.base import BeginPaymentResult, ProviderAdapter, SettlementEvent
from app.services.providers.trustly_client import TrustlyAdapter
from app.services.transaction_store import TransactionStore


class FakeAdapter(ProviderAdapter):
    """Stands in for a provider: records requests and answers with a canned result."""

    def __init__(self, name: str, ref_prefix: str, assigns_reference: bool = False):
        self.name = name
        self.ref_prefix = ref_prefix
        self.assigns_reference = assigns_reference
        self.calls = []
        self.result = None
        self.error = None
        self.on_begin = None
        self.outcomes = {}

    def begin_payment(self, req):
        self.calls.append(req)
        if self.on_begin:
            self.on_begin(req)
        if self.error:
            raise self.error
        if self.result is not None:
            return self.result
        ref = req.provider_reference or f"{self.ref_prefix}_{req.transaction_id[:8]}"
        return BeginPaymentResult(
            provider_reference=ref,
            client_secret=f"{ref}_secret_abc",
            redirect_url=f"https://bank.example/select?token={ref}",
            provider_transaction_id=ref,
        )

    def fetch_outcome(self, provider_reference):
        outcome = self.outcomes.get(provider_reference)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or SettlementEvent(provider_reference=provider_reference, outcome=None)


class FakeTrustlyAdapter(FakeAdapter):
    verify_or_settle = TrustlyAdapter.verify_or_settle


class RecordingNotifier:
    def __init__(self):
        self.outcomes = []

    def notify(self, outcome):
        self.outcomes.append(outcome)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def card_adapter():
    return FakeAdapter("stripe", "pi")


@pytest.fixture
def trustly_adapter():
    return FakeTrustlyAdapter("trustly", "trustly", assigns_reference=True)


@pytest.fixture
def cellpay_adapter():
    return FakeAdapter("cellpay", "ch")


@pytest.fixture
def adapters(card_adapter, trustly_adapter, cellpay_adapter):
    return {
        PaymentMethod.STRIPE_CARD: card_adapter,
        PaymentMethod.STRIPE_GOOGLE_PAY: card_adapter,
        PaymentMethod.STRIPE_APPLE_PAY: card_adapter,
        PaymentMethod.TRUSTLY: trustly_adapter,
        PaymentMethod.CELLPAY: cellpay_adapter,
    }


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(db, adapters, notifier):
    return PaymentOrchestrator(db, adapters, notifier, settings)


@pytest.fixture
def client(db, adapters, notifier):
    app.dependency_overrides[get_adapters] = lambda: adapters
    app.dependency_overrides[get_notifier] = lambda: notifier
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def packages(db):
    rows = [
        CreditPackage(id="pkg-starter", name="Starter", credits=1000, price=Decimal("10.00"), bonus_percentage=0),
        CreditPackage(id="pkg-boost", name="Boost", credits=2750, price=Decimal("25.00"), bonus_percentage=10),
        CreditPackage(id="pkg-retired", name="Retired", credits=9999, price=Decimal("5.00"), is_active=False),
    ]
    db.add_all(rows)
    db.commit()
    return {p.id: p for p in rows}


@pytest.fixture
def player(db):
    user = User(id="user-1", username="player_one", display_name="Player One", current_credits=500,
                total_spent=Decimal("0.00"))
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def store(db):
    return TransactionStore(db)


@pytest.fixture
def stripe_signed():
    """Body and Stripe-Signature header for an event, signed with the test webhook secret."""

    def _sign(event: dict, secret: str | None = None, timestamp: int | None = None):
        body = json.dumps(event)
        ts = timestamp or int(time.time())
        key = (secret or settings.STRIPE_WEBHOOK_SECRET).encode("utf-8")
        sig = hmac.new(key, f"{ts}.{body}".encode("utf-8"), hashlib.sha256).hexdigest()
        return body, f"t={ts},v1={sig}"

    return _sign


def intent_event(event_type: str, intent_id: str, amount_cents: int = 2500, event_id: str = "evt_1", **extra) -> dict:
    obj = {"id": intent_id, "object": "payment_intent", "amount": amount_cents, "amount_received": amount_cents}
    obj.update(extra)
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


@pytest.fixture
def make_intent_event():
    return intent_event


@pytest.fixture
def status_of(db):
    def _status(transaction_id: str) -> str:
        db.expire_all()
        return TransactionStore(db).get_by_id(transaction_id).payment_status

    return _status


