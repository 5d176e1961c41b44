import logging
from dataclasses import dataclass

import requests

from app.core.errors import ProviderConfigurationError, ProviderError
from app.services.providers.base import BeginPaymentRequest, BeginPaymentResult, ProviderAdapter

logger = logging.getLogger(__name__)

DECLINED_STATUSES = ("declined", "failed", "rejected", "insufficient_funds")


@dataclass
class CellPayConfig:
    api_url: str
    api_key: str
    sandbox: bool = False
    timeout: float = 20.0


class CellPayAdapter(ProviderAdapter):
    """Carrier billing: the charge is approved or declined within the request."""

    name = "cellpay"

    def __init__(self, cfg: CellPayConfig):
        self.cfg = cfg

    def request(self, method: str, path: str, payload: dict | None = None, idempotency_key: str = "") -> tuple[int, dict]:
        url = f"{self.cfg.api_url.rstrip('/')}{path}"
        headers = {"Authorization": f"Bearer {self.cfg.api_key}", "Accept": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            r = requests.request(method=method.upper(), url=url, json=payload or {}, headers=headers, timeout=self.cfg.timeout)
        except requests.Timeout:
            raise ProviderError(f"CellPay {method} {path} timed out after {self.cfg.timeout}s")
        except requests.RequestException as e:
            raise ProviderError(f"CellPay {method} {path} failed: {e}")
        try:
            data = r.json() if r.text else {}
        except ValueError:
            data = {"raw": r.text}
        if r.status_code in (401, 403):
            raise ProviderConfigurationError(f"CellPay rejected credentials ({r.status_code})")
        if r.status_code >= 500:
            raise ProviderError(f"CellPay {r.status_code}: {data}")
        return r.status_code, data

    def begin_payment(self, req: BeginPaymentRequest) -> BeginPaymentResult:
        phone = req.identity.get("phoneNumber", "")
        if self.cfg.sandbox:
            return BeginPaymentResult(provider_reference=f"sandbox-{req.transaction_id}",
                                      provider_transaction_id=f"sandbox-{req.transaction_id}")
        if not self.cfg.api_key:
            raise ProviderConfigurationError("CellPay is not configured (missing CELLPAY_API_KEY)")

        status_code, data = self.request("POST", "/charges", {
            "amount": f"{req.amount:.2f}",
            "currency": req.currency,
            "phone_number": phone,
            "reference": req.transaction_id,
            "description": req.description,
        }, idempotency_key=req.transaction_id)

        charge_id = str(data.get("id") or "")
        status = str(data.get("status") or "").lower()
        if status_code >= 400 or status in DECLINED_STATUSES:
            reason = data.get("message") or data.get("error") or "Carrier billing payment was declined"
            logger.info("CellPay declined charge for transaction %s: %s", req.transaction_id, reason)
            return BeginPaymentResult(provider_reference=charge_id or f"cellpay-{req.transaction_id}",
                                      provider_transaction_id=charge_id or None, succeeded=False, error=str(reason))
        if status != "approved" or not charge_id:
            raise ProviderError(f"Unexpected CellPay charge response: {data}")
        return BeginPaymentResult(provider_reference=charge_id, provider_transaction_id=charge_id)
