import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import requests

from app.core.errors import ProviderConfigurationError, ProviderError, ValidationError
from app.services.providers.base import BeginPaymentRequest, BeginPaymentResult, ProviderAdapter, SettlementEvent

logger = logging.getLogger(__name__)

# Trustly notification method -> settlement outcome
NOTIFICATION_OUTCOMES = {
    "credit": "succeeded",
    "cancel": "failed",
    "pending": "processing",
}


@dataclass
class TrustlyConfig:
    api_url: str            # https://test.trustly.com/api/1 OR https://api.trustly.com/1
    username: str
    password: str
    notification_url: str   # our /api/trustly-webhook
    success_url: str
    fail_url: str
    sandbox: bool = False
    timeout: float = 20.0


class TrustlyAdapter(ProviderAdapter):
    """Bank-redirect deposits. The message id is ours and is stored before dispatch."""

    name = "trustly"
    assigns_reference = True

    def __init__(self, cfg: TrustlyConfig):
        self.cfg = cfg

    def _rpc(self, method: str, data: dict) -> dict:
        payload = {
            "method": method,
            "version": "1.1",
            "params": {
                "UUID": str(uuid.uuid4()),
                "Data": {"Username": self.cfg.username, "Password": self.cfg.password, **data},
            },
        }
        try:
            r = requests.post(self.cfg.api_url, json=payload, timeout=self.cfg.timeout)
        except requests.Timeout:
            raise ProviderError(f"Trustly {method} timed out after {self.cfg.timeout}s")
        except requests.RequestException as e:
            raise ProviderError(f"Trustly {method} request failed: {e}")
        try:
            body = r.json() if r.text else {}
        except ValueError:
            body = {"raw": r.text}
        if r.status_code >= 400:
            raise ProviderError(f"Trustly {r.status_code}: {body}")
        return body

    def begin_payment(self, req: BeginPaymentRequest) -> BeginPaymentResult:
        message_id = req.provider_reference or req.transaction_id
        if self.cfg.sandbox:
            return BeginPaymentResult(
                provider_reference=message_id,
                provider_transaction_id=f"sandbox-{message_id}",
                redirect_url=f"https://test.trustly.com/select-bank?token=mock_{message_id}",
            )
        if not (self.cfg.username and self.cfg.password):
            raise ProviderConfigurationError("Trustly is not configured (missing TRUSTLY_USERNAME/TRUSTLY_PASSWORD)")

        ident = req.identity
        body = self._rpc("Deposit", {
            "NotificationURL": self.cfg.notification_url,
            "EndUserID": ident.get("email", ""),
            "MessageID": message_id,
            "Attributes": {
                "Amount": f"{req.amount:.2f}",
                "Currency": req.currency,
                "Country": ident.get("country", ""),
                "Firstname": ident.get("firstName", ""),
                "Lastname": ident.get("lastName", ""),
                "Email": ident.get("email", ""),
                "Locale": "en_US",
                "ShopperStatement": req.description[:35],
                "SuccessURL": self.cfg.success_url,
                "FailURL": self.cfg.fail_url,
            },
        })

        if body.get("error"):
            err = body["error"]
            detail = ((err.get("error") or {}).get("data") or {}).get("message") or err.get("message") or "Trustly payment failed"
            logger.info("Trustly declined deposit %s: %s", message_id, detail)
            return BeginPaymentResult(provider_reference=message_id, succeeded=False, error=detail)

        data = ((body.get("result") or {}).get("data")) or {}
        if not data.get("url"):
            raise ProviderError(f"Trustly Deposit response without redirect url: {body}")
        return BeginPaymentResult(
            provider_reference=message_id,
            provider_transaction_id=str(data.get("orderid") or ""),
            redirect_url=data["url"],
        )

    def verify_or_settle(self, notification: dict) -> SettlementEvent:
        """Interpret an already signature-checked notification."""
        if not isinstance(notification, dict):
            raise ValidationError("Malformed Trustly notification")
        method = str(notification.get("method") or "").lower()
        params = notification.get("params") or {}
        if not isinstance(params, dict):
            raise ValidationError("Malformed Trustly notification params")
        # Real notifications nest under params.data; older callers post the fields directly in params
        data = params.get("data", params)
        if not isinstance(data, dict):
            raise ValidationError("Malformed Trustly notification data")
        message_id = data.get("messageid") or data.get("MessageID")
        if not message_id or isinstance(message_id, (dict, list)):
            raise ValidationError("Trustly notification without messageid")

        amount = None
        if data.get("amount") not in (None, ""):
            try:
                amount = Decimal(str(data["amount"]))
            except InvalidOperation:
                raise ValidationError("Trustly notification with invalid amount")
            if not amount.is_finite() or amount < 0:
                raise ValidationError("Trustly notification with invalid amount")
            amount = amount.quantize(Decimal("0.01"))

        outcome = NOTIFICATION_OUTCOMES.get(method)
        return SettlementEvent(
            provider_reference=str(message_id),
            outcome=outcome,
            amount=amount,
            event_type=method,
            event_id=str(data.get("notificationid") or params.get("uuid") or ""),
            error="Cancelled at the bank" if outcome == "failed" else None,
        )
