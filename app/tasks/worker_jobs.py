import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session
from sqlalchemy.exc import ProgrammingError, OperationalError

from app.core.config import settings
from app.core.errors import ProviderError
from app.db.session import SessionLocal
from app.models.transaction import CARD_METHODS, PaymentMethod, PaymentStatus
from app.services.notifier import EmailNotifier, Notifier
from app.services.payment_orchestrator import PaymentOrchestrator
from app.services.providers.registry import build_adapters

logger = logging.getLogger(__name__)


def reconcile_stale_payments(limit: int = 100, db: Session | None = None, adapters=None,
                             notifier: Notifier | None = None) -> dict:
    """Re-check card payments that never got a webhook and settle them from Stripe's view.

    Only observes provider state; settlement uses the same compare-and-set as webhooks,
    so a late webhook and this job can't both notify.
    """
    own_session = db is None
    db = db or SessionLocal()
    adapters = adapters or build_adapters(settings)
    orchestrator = PaymentOrchestrator(db, adapters, notifier or EmailNotifier(), settings)
    card_adapter = adapters[PaymentMethod.STRIPE_CARD]
    try:
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=settings.RECONCILE_AFTER_MINUTES)
        try:
            stale = orchestrator.store.list_stale(
                methods=[m.value for m in CARD_METHODS],
                statuses=[PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value],
                older_than=cutoff,
                limit=limit,
            )
        except (ProgrammingError, OperationalError):
            # DB not migrated yet; don't crash the worker.
            db.rollback()
            return {"skipped": True, "reason": "missing_tables"}

        counts = {"checked": 0, "processed": 0, "duplicate": 0, "ignored": 0, "unknown_reference": 0, "errors": 0}
        # ids first: settlement commits expire the loaded rows
        refs = [(tx.id, tx.provider_reference) for tx in stale]
        for tx_id, ref in refs:
            counts["checked"] += 1
            # checked rows go to the back of the next run's queue
            orchestrator.store.mark_reconciled(tx_id)
            try:
                event = card_adapter.fetch_outcome(ref)
            except ProviderError:
                logger.exception("Could not fetch Stripe state for transaction %s", tx_id)
                counts["errors"] += 1
                continue
            counts[orchestrator.apply_settlement(event, actor="reconciler")] += 1
        return counts
    finally:
        if own_session:
            db.close()
