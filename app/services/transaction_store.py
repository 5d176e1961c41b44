import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, StoreError, ValidationError
from app.models.transaction import PaymentMethod, PaymentStatus, Transaction
from app.services.payment_state import can_transition

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")


@dataclass
class TransactionDraft:
    username: str
    amount: Decimal
    credits: int
    payment_method: PaymentMethod
    currency: str = "USD"
    package_id: str | None = None
    provider_reference: str | None = None
    metadata_json: str = "{}"
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


class TransactionStore:
    """Persistence for transactions. Rows are never deleted; status only moves forward."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, draft: TransactionDraft) -> Transaction:
        try:
            amount = Decimal(draft.amount)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError("amount must be a decimal")
        if not amount.is_finite() or amount <= 0 or amount != amount.quantize(TWO_PLACES):
            raise ValidationError("amount must be a positive amount with at most two decimal places")
        if not isinstance(draft.credits, int) or isinstance(draft.credits, bool) or draft.credits < 0:
            raise ValidationError("credits must be a non-negative integer")

        now = datetime.now(timezone.utc)
        tx = Transaction(
            id=draft.id,
            username=draft.username,
            package_id=draft.package_id,
            amount=amount.quantize(TWO_PLACES),
            credits=draft.credits,
            currency=draft.currency,
            payment_method=PaymentMethod(draft.payment_method).value,
            payment_status=PaymentStatus.PENDING.value,
            provider_reference=draft.provider_reference,
            metadata_json=draft.metadata_json,
            created_at=now,
            updated_at=now,
        )
        self.db.add(tx)
        self.db.commit()
        self.db.refresh(tx)
        return tx

    def get_by_id(self, transaction_id: str) -> Transaction | None:
        return self.db.get(Transaction, transaction_id)

    def get_by_provider_reference(self, ref: str) -> Transaction | None:
        if not ref:
            return None
        return self.db.query(Transaction).filter(Transaction.provider_reference == ref).first()

    def update_status(self, transaction_id: str, new_status: PaymentStatus, error_message: str | None = None) -> Transaction:
        tx = self.get_by_id(transaction_id)
        if not tx:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if tx.payment_status != PaymentStatus(new_status).value and not can_transition(tx.payment_status, new_status):
            logger.error("Refusing transition %s -> %s for transaction %s", tx.payment_status, new_status, transaction_id)
            raise StoreError(f"Illegal status transition {tx.payment_status} -> {PaymentStatus(new_status).value}")
        tx.payment_status = PaymentStatus(new_status).value
        tx.updated_at = _later_than(tx.created_at)
        if error_message is not None:
            tx.error_message = error_message
        self.db.commit()
        self.db.refresh(tx)
        return tx

    def transition_if_current(self, transaction_id: str, expected: list[str], new_status: PaymentStatus,
                              error_message: str | None = None) -> bool:
        """Compare-and-set on the stored status.

        Returns True only for the caller whose UPDATE moved the row. Does not commit,
        so the caller can record side effects in the same database transaction.
        """
        values = {"payment_status": PaymentStatus(new_status).value, "updated_at": datetime.now(timezone.utc)}
        if error_message is not None:
            values["error_message"] = error_message
        result = self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.payment_status.in_(expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def attach_provider_reference(self, transaction_id: str, ref: str, provider_transaction_id: str | None = None) -> Transaction:
        tx = self.get_by_id(transaction_id)
        if not tx:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if tx.provider_reference and tx.provider_reference != ref:
            raise StoreError(f"Transaction {transaction_id} already has provider reference {tx.provider_reference}")
        tx.provider_reference = ref
        if provider_transaction_id:
            tx.provider_transaction_id = provider_transaction_id
        tx.updated_at = _later_than(tx.created_at)
        self.db.commit()
        self.db.refresh(tx)
        return tx

    def list_stale(self, methods: list[str], statuses: list[str], older_than: datetime, limit: int = 100) -> list[Transaction]:
        """Open rows older than `older_than`, never-checked first, then least recently checked."""
        return (
            self.db.query(Transaction)
            .filter(
                Transaction.payment_method.in_(methods),
                Transaction.payment_status.in_(statuses),
                Transaction.provider_reference.isnot(None),
                Transaction.created_at < older_than,
            )
            .order_by(Transaction.last_reconciled_at.asc().nulls_first(), Transaction.created_at.asc())
            .limit(limit)
            .all()
        )

    def mark_reconciled(self, transaction_id: str) -> None:
        self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .values(last_reconciled_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()


def _later_than(created_at: datetime) -> datetime:
    now = datetime.now(timezone.utc)
    if created_at is not None and created_at.tzinfo is None:
        # SQLite drops tzinfo on read
        created_at = created_at.replace(tzinfo=timezone.utc)
    return max(now, created_at) if created_at is not None else now
