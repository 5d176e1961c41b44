from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.core.errors import ProviderError
from app.models.transaction import PaymentMethod
from app.services.providers.base import SettlementEvent
from app.services.transaction_store import TransactionDraft
from app.tasks.worker_jobs import reconcile_stale_payments


@pytest.fixture
def stale_card_tx(db, store):
    def _make(ref):
        tx = store.create(TransactionDraft(username="player_one", amount=Decimal("25.00"), credits=2500,
                                           payment_method=PaymentMethod.STRIPE_CARD))
        store.attach_provider_reference(tx.id, ref)
        store.get_by_id(tx.id).created_at = datetime.now(timezone.utc) - timedelta(hours=1)
        db.commit()
        return tx.id

    return _make


def test_reconciler_settles_from_provider_state(db, adapters, card_adapter, notifier, player, stale_card_tx,
                                                status_of):
    paid = stale_card_tx("pi_paid")
    lost = stale_card_tx("pi_lost")
    waiting = stale_card_tx("pi_waiting")
    card_adapter.outcomes = {
        "pi_paid": SettlementEvent(provider_reference="pi_paid", outcome="succeeded", amount=Decimal("25.00")),
        "pi_lost": SettlementEvent(provider_reference="pi_lost", outcome="failed", error="PaymentIntent canceled"),
    }

    counts = reconcile_stale_payments(db=db, adapters=adapters, notifier=notifier)

    assert counts["checked"] == 3
    assert counts["processed"] == 2
    assert counts["ignored"] == 1
    assert status_of(paid) == "completed"
    assert status_of(lost) == "failed"
    assert status_of(waiting) == "pending"
    assert sorted(o.success for o in notifier.outcomes) == [False, True]


def test_reconciler_and_late_webhook_notify_once(db, adapters, card_adapter, notifier, orchestrator, stale_card_tx):
    paid = stale_card_tx("pi_paid")
    event = SettlementEvent(provider_reference="pi_paid", outcome="succeeded", amount=Decimal("25.00"))
    card_adapter.outcomes = {"pi_paid": event}

    reconcile_stale_payments(db=db, adapters=adapters, notifier=notifier)
    assert orchestrator.apply_settlement(event, actor="stripe") == "duplicate"
    assert [o.transaction_id for o in notifier.outcomes] == [paid]


def test_reconciler_skips_fresh_transactions(db, adapters, notifier, store):
    tx = store.create(TransactionDraft(username="player_one", amount=Decimal("25.00"), credits=2500,
                                       payment_method=PaymentMethod.STRIPE_CARD))
    store.attach_provider_reference(tx.id, "pi_fresh")
    counts = reconcile_stale_payments(db=db, adapters=adapters, notifier=notifier)
    assert counts["checked"] == 0


def test_reconciler_counts_provider_errors(db, adapters, card_adapter, notifier, stale_card_tx, status_of):
    tx_id = stale_card_tx("pi_flaky")
    card_adapter.outcomes = {"pi_flaky": ProviderError("stripe unavailable")}
    counts = reconcile_stale_payments(db=db, adapters=adapters, notifier=notifier)
    assert counts["errors"] == 1
    assert status_of(tx_id) == "pending"


def test_abandoned_intents_do_not_starve_newer_payments(db, adapters, card_adapter, notifier, stale_card_tx,
                                                         status_of):
    stale_card_tx("pi_abandoned_1")
    stale_card_tx("pi_abandoned_2")
    paid = stale_card_tx("pi_paid")
    # abandoned checkouts never leave requires_payment_method, so Stripe reports no outcome for them
    card_adapter.outcomes = {
        "pi_paid": SettlementEvent(provider_reference="pi_paid", outcome="succeeded", amount=Decimal("25.00")),
    }

    first = reconcile_stale_payments(limit=2, db=db, adapters=adapters, notifier=notifier)
    assert first["ignored"] == 2
    assert status_of(paid) == "pending"

    second = reconcile_stale_payments(limit=2, db=db, adapters=adapters, notifier=notifier)
    assert second["processed"] == 1
    assert status_of(paid) == "completed"
    assert [o.transaction_id for o in notifier.outcomes] == [paid]
