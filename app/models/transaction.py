import enum
from decimal import Decimal
from sqlalchemy import String, Integer, DateTime, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from app.db.session import Base


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    STRIPE_CARD = "stripe_card"
    STRIPE_GOOGLE_PAY = "stripe_google_pay"
    STRIPE_APPLE_PAY = "stripe_apple_pay"
    TRUSTLY = "trustly"
    CELLPAY = "cellpay"


CARD_METHODS = (PaymentMethod.STRIPE_CARD, PaymentMethod.STRIPE_GOOGLE_PAY, PaymentMethod.STRIPE_APPLE_PAY)


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    username: Mapped[str] = mapped_column(String(64), index=True)
    package_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    credits: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    payment_method: Mapped[str] = mapped_column(String(30), index=True)
    payment_status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value, index=True)

    # Join key for webhook reconciliation: Stripe PaymentIntent id, Trustly message id, CellPay charge id
    provider_reference: Mapped[str | None] = mapped_column(String(120), unique=True, nullable=True)
    provider_transaction_id: Mapped[str | None] = mapped_column(String(120), nullable=True)

    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # last time the reconciliation job asked the provider about this row
    last_reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
