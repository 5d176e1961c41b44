"""Authenticity checks for inbound provider webhooks. Both fail closed."""
import base64
import hashlib
import hmac
import json
import logging

import stripe

from app.core.errors import AuthenticationError, ValidationError

logger = logging.getLogger(__name__)

STRIPE_TOLERANCE_SECONDS = 300


def _parse_json(body: bytes) -> dict:
    try:
        payload = json.loads(body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")
    return payload


def verify_stripe_signature(body: bytes, sig_header: str | None, secret: str) -> dict:
    """Check the Stripe-Signature header and return the decoded event."""
    if not secret:
        raise AuthenticationError("STRIPE_WEBHOOK_SECRET is not configured")
    if not sig_header:
        raise AuthenticationError("Missing Stripe-Signature header")
    try:
        stripe.WebhookSignature.verify_header(body.decode("utf-8"), sig_header, secret, STRIPE_TOLERANCE_SECONDS)
    except stripe.SignatureVerificationError as e:
        raise AuthenticationError(f"Stripe signature verification failed: {e}")
    except UnicodeDecodeError:
        raise ValidationError("Webhook body is not valid UTF-8")
    return _parse_json(body)


def trustly_signature(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_trustly_signature(body: bytes, sig_header: str | None, secret: str) -> dict:
    """Check X-Trustly-Signature: base64 HMAC-SHA256 of the raw body with the shared secret."""
    if not secret:
        raise AuthenticationError("TRUSTLY_WEBHOOK_SECRET is not configured")
    if not sig_header:
        raise AuthenticationError("Missing X-Trustly-Signature header")
    received = sig_header.strip()
    if received.lower().startswith("sha256="):
        received = received[7:]
    expected = trustly_signature(body, secret)
    if not hmac.compare_digest(expected, received):
        raise AuthenticationError("Trustly signature mismatch")
    return _parse_json(body)
