"""Reload payment lifecycle: validate, record, dispatch to a provider, settle from webhooks.

Every status change after creation that can race (webhooks, the reconciliation job,
synchronous settlement) goes through TransactionStore.transition_if_current, and only
the caller that wins the compare-and-set sends a notification.
"""
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.errors import (
    AuthenticationError,
    NotFoundError,
    PaymentError,
    ProviderDeclinedError,
    ProviderError,
    ValidationError,
)
from app.models.transaction import CARD_METHODS, PaymentMethod, PaymentStatus, Transaction
from app.services.audit_service import log_audit
from app.services.credit_catalog import CreditCatalog
from app.services.notifier import Notifier, PaymentOutcome
from app.services.payment_state import is_terminal, sources_for
from app.services.providers.base import BeginPaymentRequest, BeginPaymentResult, ProviderAdapter, SettlementEvent
from app.services.providers.stripe_client import parse_stripe_event
from app.services.transaction_store import TWO_PLACES, TransactionDraft, TransactionStore
from app.services.user_service import apply_credits
from app.services.webhook_signatures import verify_stripe_signature, verify_trustly_signature

logger = logging.getLogger(__name__)

CUSTOM_PACKAGE_ID = "custom"
MAX_USERNAME_LENGTH = 64

SETTLEMENT_TARGETS = {
    "succeeded": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "processing": PaymentStatus.PROCESSING,
}


@dataclass
class BeginPaymentCommand:
    username: str
    amount: object
    method: str
    package_id: Optional[str] = None
    identity: Optional[BaseModel] = None


@dataclass
class BeginPaymentResponse:
    transaction_id: str
    status: str
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None
    provider_transaction_id: Optional[str] = None


def parse_amount(raw) -> Decimal:
    if raw is None or isinstance(raw, bool) or (isinstance(raw, str) and not raw.strip()):
        raise ValidationError("Amount is required")
    try:
        amount = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a number")
    if not amount.is_finite():
        raise ValidationError("Amount must be a number")
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    if amount != amount.quantize(TWO_PLACES):
        raise ValidationError("Amount must have at most two decimal places")
    return amount.quantize(TWO_PLACES)


def derive_credits(amount: Decimal, credits_per_dollar: int) -> int:
    """Whole dollars times the configured multiplier; cents earn nothing."""
    return int(amount) * credits_per_dollar


class PaymentOrchestrator:
    def __init__(self, db: Session, adapters: dict[PaymentMethod, ProviderAdapter], notifier: Notifier, config: Settings):
        self.db = db
        self.adapters = adapters
        self.notifier = notifier
        self.config = config
        self.store = TransactionStore(db)
        self.catalog = CreditCatalog(db)

    # -- begin payment ---------------------------------------------------

    def _validate(self, cmd: BeginPaymentCommand) -> tuple[str, PaymentMethod, Decimal, int, Optional[str]]:
        username = (cmd.username or "").strip()
        if not username:
            raise ValidationError("Username is required")
        if len(username) > MAX_USERNAME_LENGTH:
            raise ValidationError(f"Username must be at most {MAX_USERNAME_LENGTH} characters")

        try:
            method = PaymentMethod(cmd.method)
        except ValueError:
            raise ValidationError(f"Unsupported payment method: {cmd.method}")

        package_id = (cmd.package_id or "").strip() or None
        if package_id == CUSTOM_PACKAGE_ID:
            package_id = None

        if package_id:
            pkg = self.catalog.get_by_id(package_id)
            if not pkg:
                raise NotFoundError("Credit package not found")
            price = Decimal(pkg.price).quantize(TWO_PLACES)
            if cmd.amount not in (None, "") and parse_amount(cmd.amount) != price:
                raise ValidationError("Amount does not match the selected package price")
            amount, credits = price, int(pkg.credits)
        else:
            amount = parse_amount(cmd.amount)
            credits = derive_credits(amount, self.config.CREDITS_PER_DOLLAR)

        lo, hi = self.config.MIN_RELOAD_AMOUNT, self.config.MAX_RELOAD_AMOUNT
        if amount < lo or amount > hi:
            raise ValidationError(f"Amount must be between ${lo:.2f} and ${hi:.2f}")
        return username, method, amount, credits, package_id

    def begin_payment(self, cmd: BeginPaymentCommand) -> BeginPaymentResponse:
        username, method, amount, credits, package_id = self._validate(cmd)
        adapter = self.adapters.get(method)
        if adapter is None:
            raise ValidationError(f"Payment method {method.value} is not available")

        identity = cmd.identity.model_dump() if cmd.identity is not None else {}
        tx_id = str(uuid.uuid4())
        draft = TransactionDraft(
            id=tx_id,
            username=username,
            amount=amount,
            credits=credits,
            payment_method=method,
            currency=self.config.CURRENCY,
            package_id=package_id,
            # push-style providers echo our id back in notifications, so it is the join key from the start
            provider_reference=tx_id if adapter.assigns_reference else None,
            metadata_json=cmd.identity.model_dump_json() if cmd.identity is not None else "{}",
        )
        log_audit(self.db, "public", "payment.created", "transaction", tx_id,
                  {"method": method.value, "amount": str(amount), "credits": credits, "packageId": package_id})
        tx = self.store.create(draft)
        logger.info("Transaction %s created: %s %s via %s", tx.id, amount, self.config.CURRENCY, method.value)

        req = BeginPaymentRequest(
            transaction_id=tx.id,
            amount=amount,
            currency=self.config.CURRENCY,
            description=f"Credit purchase - {credits} credits",
            username=username,
            credits=credits,
            identity=identity,
            provider_reference=tx.provider_reference,
        )
        try:
            result = adapter.begin_payment(req)
        except ProviderError as e:
            self._dispatch_failed(tx, e)
            raise
        except Exception as e:
            self._dispatch_failed(tx, e)
            raise ProviderError(f"{adapter.name} adapter crashed for {tx.id}: {e}")

        if method in CARD_METHODS:
            return self._after_card_dispatch(tx, result)
        if method == PaymentMethod.TRUSTLY:
            return self._after_redirect_dispatch(tx, result)
        return self._after_carrier_dispatch(tx, result)

    def _dispatch_failed(self, tx: Transaction, exc: Exception):
        # Provider state is unknown: leave the row pending so a webhook or the reconciler can still settle it
        logger.exception("Provider dispatch failed for transaction %s", tx.id)
        log_audit(self.db, "public", "payment.dispatch_failed", "transaction", tx.id, {"error": str(exc)[:500]})
        self.db.commit()
        public = exc.public_message if isinstance(exc, PaymentError) else ProviderError.default_public_message
        self._notify(tx, success=False, error=public)

    def _after_card_dispatch(self, tx: Transaction, result: BeginPaymentResult) -> BeginPaymentResponse:
        if not result.succeeded:
            self._settle_declined(tx, result)
        tx = self.store.attach_provider_reference(tx.id, result.provider_reference, result.provider_transaction_id)
        log_audit(self.db, "public", "payment.dispatched", "transaction", tx.id, {"providerReference": tx.provider_reference})
        self.db.commit()
        return BeginPaymentResponse(transaction_id=tx.id, status=tx.payment_status, client_secret=result.client_secret,
                                    provider_transaction_id=result.provider_transaction_id)

    def _after_redirect_dispatch(self, tx: Transaction, result: BeginPaymentResult) -> BeginPaymentResponse:
        if not result.succeeded:
            self._settle_declined(tx, result)
        if result.provider_transaction_id:
            tx.provider_transaction_id = result.provider_transaction_id
        if self.config.TRUSTLY_SETTLE_ON_DISPATCH:
            self._settle(tx, PaymentStatus.COMPLETED, actor="trustly")
        else:
            self._settle(tx, PaymentStatus.PROCESSING, actor="trustly")
        return BeginPaymentResponse(transaction_id=tx.id, status=tx.payment_status, redirect_url=result.redirect_url,
                                    provider_transaction_id=result.provider_transaction_id)

    def _after_carrier_dispatch(self, tx: Transaction, result: BeginPaymentResult) -> BeginPaymentResponse:
        self.store.attach_provider_reference(tx.id, result.provider_reference, result.provider_transaction_id)
        if not result.succeeded:
            self._settle_declined(tx, result)
        self._settle(tx, PaymentStatus.COMPLETED, actor="cellpay")
        return BeginPaymentResponse(transaction_id=tx.id, status=tx.payment_status,
                                    provider_transaction_id=result.provider_transaction_id)

    def _settle_declined(self, tx: Transaction, result: BeginPaymentResult):
        error = result.error or "Payment failed"
        self._settle(tx, PaymentStatus.FAILED, actor=self.adapters[PaymentMethod(tx.payment_method)].name, error=error)
        raise ProviderDeclinedError(error)

    # -- settlement --------------------------------------------------------

    def _settle(self, tx: Transaction, target: PaymentStatus, actor: str, amount: Decimal | None = None,
                error: str | None = None) -> bool:
        """Move an open transaction to `target` if nobody else got there first. Commits."""
        moved = self.store.transition_if_current(tx.id, sources_for(target), target,
                                                 error_message=error if target == PaymentStatus.FAILED else None)
        if not moved:
            self.db.rollback()
            logger.info("Transaction %s already settled elsewhere; %s ignored", tx.id, target.value)
            return False
        settled_amount = amount if amount is not None else Decimal(tx.amount)
        if target == PaymentStatus.COMPLETED:
            apply_credits(self.db, tx.username, tx.credits, settled_amount)
        log_audit(self.db, actor, f"payment.{target.value}", "transaction", tx.id,
                  {"amount": str(settled_amount), "error": error})
        self.db.commit()
        logger.info("Transaction %s -> %s", tx.id, target.value)
        if target in (PaymentStatus.COMPLETED, PaymentStatus.FAILED):
            self._notify(tx, success=target == PaymentStatus.COMPLETED, error=error, amount=settled_amount)
        return True

    def apply_settlement(self, event: SettlementEvent, actor: str) -> str:
        """Reconcile a provider statement with the stored transaction.

        Returns "processed", "duplicate", "unknown_reference" or "ignored"; none of these is an error.
        """
        if event.outcome is None:
            logger.info("%s event %s for %s needs no action", actor, event.event_type, event.provider_reference)
            return "ignored"

        tx = self.store.get_by_provider_reference(event.provider_reference)
        if not tx:
            logger.warning("%s event %s references unknown provider reference %s",
                           actor, event.event_type, event.provider_reference)
            return "unknown_reference"

        target = SETTLEMENT_TARGETS[event.outcome]
        if is_terminal(tx.payment_status) or tx.payment_status == target.value:
            logger.info("Duplicate %s event %s for transaction %s (status %s)",
                        actor, event.event_type, tx.id, tx.payment_status)
            return "duplicate"

        if not self._settle(tx, target, actor=actor, amount=event.amount, error=event.error):
            return "duplicate"
        return "processed"

    # -- webhooks ------------------------------------------------------------

    def _reject_webhook(self, provider: str, exc: AuthenticationError):
        logger.warning("security: rejected %s webhook: %s", provider, exc)
        log_audit(self.db, provider, "webhook.rejected", "webhook", provider, {"reason": str(exc)})
        self.db.commit()

    def _record_webhook(self, provider: str, event: SettlementEvent):
        log_audit(self.db, provider, "webhook.received", "webhook", event.event_id or event.provider_reference,
                  {"type": event.event_type, "providerReference": event.provider_reference})
        self.db.commit()

    def handle_stripe_webhook(self, body: bytes, sig_header: str | None) -> str:
        try:
            event = verify_stripe_signature(body, sig_header, self.config.STRIPE_WEBHOOK_SECRET)
        except AuthenticationError as e:
            self._reject_webhook("stripe", e)
            raise
        try:
            settlement = parse_stripe_event(event)
        except (ValueError, TypeError, AttributeError) as e:
            raise ValidationError(f"Malformed Stripe event: {e}")
        if settlement is None:
            logger.info("Ignoring Stripe event type %s", event.get("type"))
            return "ignored"
        self._record_webhook("stripe", settlement)
        return self.apply_settlement(settlement, actor="stripe")

    def handle_trustly_webhook(self, body: bytes, sig_header: str | None) -> str:
        try:
            notification = verify_trustly_signature(body, sig_header, self.config.TRUSTLY_WEBHOOK_SECRET)
        except AuthenticationError as e:
            self._reject_webhook("trustly", e)
            raise
        settlement = self.adapters[PaymentMethod.TRUSTLY].verify_or_settle(notification)
        self._record_webhook("trustly", settlement)
        return self.apply_settlement(settlement, actor="trustly")

    # -- notifications --------------------------------------------------------

    def _notify(self, tx: Transaction, success: bool, error: str | None = None, amount: Decimal | None = None):
        outcome = PaymentOutcome(
            username=tx.username,
            amount=amount if amount is not None else Decimal(tx.amount),
            method=tx.payment_method,
            transaction_id=tx.id,
            success=success,
            credits=tx.credits,
            error=error,
        )
        try:
            self.notifier.notify(outcome)
        except Exception:
            logger.exception("Notifier raised for transaction %s", tx.id)
