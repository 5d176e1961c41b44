from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Literal, Optional

SettlementOutcome = Literal["succeeded", "failed", "processing"]


@dataclass
class BeginPaymentRequest:
    transaction_id: str
    amount: Decimal
    currency: str
    description: str
    username: str
    credits: int
    identity: dict = field(default_factory=dict)  # method-specific fields (country, email, phoneNumber, wallet...)
    provider_reference: Optional[str] = None  # pre-assigned for push-style providers


@dataclass
class BeginPaymentResult:
    provider_reference: str
    succeeded: bool = True
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SettlementEvent:
    """A provider's statement about one payment attempt."""
    provider_reference: str
    outcome: Optional[SettlementOutcome]  # None: informational, nothing to settle
    amount: Optional[Decimal] = None
    event_type: str = ""
    event_id: str = ""
    error: Optional[str] = None


class ProviderAdapter(ABC):
    name: str = ""
    # push-style providers get a reference from us before dispatch (stored at creation)
    assigns_reference: bool = False

    @abstractmethod
    def begin_payment(self, req: BeginPaymentRequest) -> BeginPaymentResult:
        """Start a payment upstream.

        Raises ProviderConfigurationError when credentials are missing and ProviderError
        when the call fails or times out. A decline is returned with succeeded=False.
        """

    def verify_or_settle(self, notification: dict) -> SettlementEvent:
        raise NotImplementedError(f"{self.name} does not settle through notifications")
