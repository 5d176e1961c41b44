from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, field_serializer
from typing import Optional


class CreditPackageOut(BaseModel):
    id: str
    name: str
    credits: int
    price: Decimal
    bonusPercentage: int = 0
    isActive: bool = True

    @field_serializer("price")
    def _price(self, v: Decimal) -> str:
        return f"{v:.2f}"

    @classmethod
    def from_model(cls, p) -> "CreditPackageOut":
        return cls(id=p.id, name=p.name, credits=p.credits, price=p.price,
                   bonusPercentage=p.bonus_percentage, isActive=p.is_active)


class UserOut(BaseModel):
    username: str
    displayName: str
    currentCredits: Optional[int] = None


class TransactionOut(BaseModel):
    id: str
    username: str
    packageId: Optional[str] = None
    amount: Decimal
    credits: int
    currency: str
    paymentMethod: str
    paymentStatus: str
    providerTransactionId: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime

    @field_serializer("amount")
    def _amount(self, v: Decimal) -> str:
        return f"{v:.2f}"

    @classmethod
    def from_model(cls, t) -> "TransactionOut":
        return cls(
            id=t.id,
            username=t.username,
            packageId=t.package_id,
            amount=t.amount,
            credits=t.credits,
            currency=t.currency,
            paymentMethod=t.payment_method,
            paymentStatus=t.payment_status,
            providerTransactionId=t.provider_transaction_id,
            createdAt=t.created_at,
            updatedAt=t.updated_at,
        )
