from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError
from typing import Annotated, Literal, Optional, Union

from app.core.errors import ValidationError


# Method-specific context stored on Transaction.metadata_json. Field names match the request bodies.

class CardIdentity(BaseModel):
    kind: Literal["card"] = "card"
    wallet: Optional[Literal["google_pay", "apple_pay"]] = None


class BankRedirectIdentity(BaseModel):
    kind: Literal["bank_redirect"] = "bank_redirect"
    country: str = Field(min_length=2, max_length=2)
    firstName: str = Field(min_length=1, max_length=100)
    lastName: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    @field_validator("country")
    @classmethod
    def upper_country(cls, v: str) -> str:
        return v.upper()


class CarrierBillingIdentity(BaseModel):
    kind: Literal["carrier_billing"] = "carrier_billing"
    # E.164, e.g. +15551234567
    phoneNumber: str = Field(pattern=r"^\+[1-9]\d{7,14}$")

    @field_validator("phoneNumber", mode="before")
    @classmethod
    def strip_separators(cls, v):
        if isinstance(v, str):
            return v.replace(" ", "").replace("-", "").replace("(", "").replace(")", "")
        return v


TransactionMetadata = Annotated[
    Union[CardIdentity, BankRedirectIdentity, CarrierBillingIdentity],
    Field(discriminator="kind"),
]


metadata_adapter = TypeAdapter(TransactionMetadata)


def parse_identity(model_cls, **fields):
    """Build a method identity, turning pydantic errors into a 400 with a readable reason."""
    try:
        return model_cls(**fields)
    except PydanticValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(p) for p in err.get("loc", ())) or "request"
        raise ValidationError(f"Invalid {field}: {err.get('msg', 'invalid value')}")


# Amount may arrive as "25.00" or 25; the orchestrator parses it to Decimal.
AmountIn = Optional[Union[str, int, float]]


class PaymentIntentRequest(BaseModel):
    username: str = ""
    amount: AmountIn = None
    packageId: Optional[str] = None
    paymentMethod: str = "stripe_card"


class TrustlyPaymentRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: str = ""
    amount: AmountIn = None
    packageId: Optional[str] = None
    country: str = "US"
    firstName: str
    lastName: str
    email: str


class CellPayPaymentRequest(BaseModel):
    username: str = ""
    amount: AmountIn = None
    packageId: Optional[str] = None
    phoneNumber: str


class PaymentIntentOut(BaseModel):
    success: bool = True
    clientSecret: str
    transactionId: str


class RedirectPaymentOut(BaseModel):
    success: bool = True
    transactionId: str
    providerTransactionId: Optional[str] = None
    redirectUrl: Optional[str] = None
    status: str


class CarrierPaymentOut(BaseModel):
    success: bool = True
    transactionId: str
    providerTransactionId: Optional[str] = None
    status: str
