from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "local"
    APP_NAME: str = "Captain Cashout Payments API"
    # Comma-separated origins for CORS. If empty, uses localhost defaults.
    CORS_ORIGINS: str = ""
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str

    @field_validator("DATABASE_URL", mode="after")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Render and others give postgres://; SQLAlchemy expects postgresql+psycopg2://."""
        if v and v.startswith("postgres://"):
            return "postgresql+psycopg2://" + v[11:]
        return v
    REDIS_URL: str = "redis://localhost:6379/0"

    BASE_URL: str = "http://localhost:5000"  # public URL used for provider callbacks and redirects

    # Reload rules
    CURRENCY: str = "USD"
    MIN_RELOAD_AMOUNT: Decimal = Decimal("1.00")
    MAX_RELOAD_AMOUNT: Decimal = Decimal("500.00")
    CREDITS_PER_DOLLAR: int = 100
    PROVIDER_TIMEOUT_SECONDS: float = 20.0

    # Stripe (card + wallets)
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    # Trustly (bank redirect)
    TRUSTLY_API_URL: str = "https://test.trustly.com/api/1"
    TRUSTLY_USERNAME: str = ""
    TRUSTLY_PASSWORD: str = ""
    TRUSTLY_WEBHOOK_SECRET: str = ""
    TRUSTLY_SANDBOX: bool = False  # If True, skip the real Trustly call and return a mock redirect
    TRUSTLY_SETTLE_ON_DISPATCH: bool = False  # If True, a successful dispatch completes the transaction immediately

    # CellPay (carrier billing)
    CELLPAY_API_URL: str = "https://api.cellpay.example/v1"
    CELLPAY_API_KEY: str = ""
    CELLPAY_SANDBOX: bool = False

    # Operator notifications
    NOTIFY_EMAIL: str = "captaincashout@my.com"
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 25
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = "noreply@captaincashout.com"

    SENDGRID_API_KEY: str = ""
    SENDGRID_FROM_EMAIL: str = ""

    # Reconciliation job: card payments still open after this many minutes are re-checked with Stripe
    RECONCILE_AFTER_MINUTES: int = 30

    @field_validator("MAX_RELOAD_AMOUNT", mode="after")
    @classmethod
    def check_amount_bounds(cls, v: Decimal, info) -> Decimal:
        lo = info.data.get("MIN_RELOAD_AMOUNT")
        if lo is not None and v < lo:
            raise ValueError("MAX_RELOAD_AMOUNT must be >= MIN_RELOAD_AMOUNT")
        return v


settings = Settings()
