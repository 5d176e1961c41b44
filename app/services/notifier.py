import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Protocol

from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import SessionLocal
from app.services.email_service import queue_email

logger = logging.getLogger(__name__)

METHOD_LABELS = {
    "stripe_card": "Stripe",
    "stripe_google_pay": "Google Pay (Stripe)",
    "stripe_apple_pay": "Apple Pay (Stripe)",
    "trustly": "Trustly",
    "cellpay": "CellPay",
}


@dataclass(frozen=True)
class PaymentOutcome:
    username: str
    amount: Decimal
    method: str
    transaction_id: str
    success: bool
    credits: int | None = None
    error: str | None = None


class Notifier(Protocol):
    def notify(self, outcome: PaymentOutcome) -> None: ...


def render_outcome_email(outcome: PaymentOutcome) -> tuple[str, str]:
    method = METHOD_LABELS.get(outcome.method, outcome.method)
    amount = f"{Decimal(outcome.amount):.2f}"
    if outcome.success:
        subject = f"Payment Received - ${amount} from {outcome.username}"
        headline = "A successful payment has been processed:"
    else:
        subject = f"Payment Failed - ${amount} from {outcome.username}"
        headline = "A payment attempt failed:"
    lines = [
        "Captain Cashout - Payment Notification",
        "",
        headline,
        "",
        f"Username: {outcome.username}",
        f"Amount: ${amount}",
    ]
    if outcome.credits is not None:
        lines.append(f"Credits: {outcome.credits:,}")
    lines += [
        f"Payment Method: {method}",
        f"Transaction ID: {outcome.transaction_id}",
        f"Date: {datetime.now(timezone.utc):%Y-%m-%d %H:%M:%S} UTC",
    ]
    if outcome.error:
        lines.append(f"Error: {outcome.error}")
    lines += ["", "This is an automated notification from Captain Cashout payment system."]
    return subject, "\n".join(lines)


class EmailNotifier:
    """Emails the operator. Never raises: delivery problems are logged and dropped."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, recipient: str | None = None):
        self.session_factory = session_factory
        self.recipient = recipient or settings.NOTIFY_EMAIL

    def notify(self, outcome: PaymentOutcome) -> None:
        try:
            subject, body = render_outcome_email(outcome)
            db = self.session_factory()
            try:
                queue_email(db, self.recipient, subject, body, related_transaction_id=outcome.transaction_id)
            finally:
                db.close()
            logger.info("Payment notification sent for transaction %s", outcome.transaction_id)
        except Exception:
            logger.exception("Failed to send payment notification for transaction %s", outcome.transaction_id)


class BackgroundNotifier:
    """Defers delivery until after the HTTP response has been sent."""

    def __init__(self, background_tasks: BackgroundTasks, inner: Notifier):
        self.background_tasks = background_tasks
        self.inner = inner

    def notify(self, outcome: PaymentOutcome) -> None:
        self.background_tasks.add_task(self.inner.notify, outcome)
