from app.core.config import Settings
from app.models.transaction import PaymentMethod
from app.services.providers.base import ProviderAdapter
from app.services.providers.cellpay_client import CellPayAdapter, CellPayConfig
from app.services.providers.stripe_client import StripeAdapter, StripeConfig
from app.services.providers.trustly_client import TrustlyAdapter, TrustlyConfig


def build_adapters(s: Settings) -> dict[PaymentMethod, ProviderAdapter]:
    """One adapter per payment method, configured explicitly from settings."""
    base_url = s.BASE_URL.rstrip("/")
    stripe_adapter = StripeAdapter(StripeConfig(secret_key=s.STRIPE_SECRET_KEY, timeout=s.PROVIDER_TIMEOUT_SECONDS))
    trustly_adapter = TrustlyAdapter(TrustlyConfig(
        api_url=s.TRUSTLY_API_URL,
        username=s.TRUSTLY_USERNAME,
        password=s.TRUSTLY_PASSWORD,
        notification_url=f"{base_url}/api/trustly-webhook",
        success_url=f"{base_url}?payment=success",
        fail_url=f"{base_url}?payment=error",
        sandbox=s.TRUSTLY_SANDBOX,
        timeout=s.PROVIDER_TIMEOUT_SECONDS,
    ))
    cellpay_adapter = CellPayAdapter(CellPayConfig(
        api_url=s.CELLPAY_API_URL,
        api_key=s.CELLPAY_API_KEY,
        sandbox=s.CELLPAY_SANDBOX,
        timeout=s.PROVIDER_TIMEOUT_SECONDS,
    ))
    return {
        PaymentMethod.STRIPE_CARD: stripe_adapter,
        PaymentMethod.STRIPE_GOOGLE_PAY: stripe_adapter,
        PaymentMethod.STRIPE_APPLE_PAY: stripe_adapter,
        PaymentMethod.TRUSTLY: trustly_adapter,
        PaymentMethod.CELLPAY: cellpay_adapter,
    }
