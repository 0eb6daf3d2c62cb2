"""HMAC-SHA256 signatures for payment-service webhooks.

The payment service signs the JSON body it sends with the shared secret and
puts the hex digest in ``X-Webhook-Signature``. We hash the exact bytes
received on the wire, so key order and whitespace never cause a mismatch.

Never log the signature, the expected digest, or the secret.
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import json
from typing import Any, Mapping

from eventcore.infra.settings import is_production, payment_webhook_secret
from eventcore.observability.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"

# Expected value when no secret is configured outside production
DEV_FALLBACK_SIGNATURE = "dummy_signature"


class WebhookSecretNotConfiguredError(RuntimeError):
    """PAYMENT_WEBHOOK_SECRET is missing in an environment that requires it."""


def serialize_body(body: Mapping[str, Any]) -> bytes:
    """Serialize a body the way the payment service's JSON producer does.

    Compact separators, insertion order preserved, UTF-8.
    """
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_signature(body: bytes | Mapping[str, Any], secret: str) -> str:
    """Return hex(HMAC-SHA256(secret, body)).

    Args:
        body: Raw body bytes, or a mapping serialized with serialize_body().
        secret: Shared webhook secret.
    """
    payload = body if isinstance(body, bytes) else serialize_body(body)
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def _decode_hex(value: str) -> bytes | None:
    try:
        return bytes.fromhex(value)
    except (ValueError, TypeError, binascii.Error):
        return None


def signatures_match(received: str | None, expected: str | None) -> bool:
    """Constant-time comparison of two hex digests.

    Both sides are hex-decoded first; a missing or undecodable value never
    matches. Never raises.
    """
    if not received or not expected:
        return False

    received_bytes = _decode_hex(received)
    expected_bytes = _decode_hex(expected)
    if received_bytes is None or expected_bytes is None:
        return False

    return hmac.compare_digest(received_bytes, expected_bytes)


def expected_signature(body: bytes, secret: str | None = None) -> str:
    """Expected signature for a body using the configured secret.

    Outside production a missing secret degrades to DEV_FALLBACK_SIGNATURE
    with a warning.

    Raises:
        WebhookSecretNotConfiguredError: Secret missing in production.
    """
    secret = secret if secret is not None else payment_webhook_secret()
    if secret:
        return compute_signature(body, secret)

    if is_production():
        raise WebhookSecretNotConfiguredError("PAYMENT_WEBHOOK_SECRET not configured")

    logger.warning("PAYMENT_WEBHOOK_SECRET not set - using development fallback signature")
    return DEV_FALLBACK_SIGNATURE


def verify_signature(body: bytes, received: str | None, secret: str | None = None) -> bool:
    """Check ``received`` against the signature expected for ``body``.

    Returns:
        True only when the signature is present and correct. The development
        fallback is compared as a literal string.

    Raises:
        WebhookSecretNotConfiguredError: Secret missing in production.
    """
    expected = expected_signature(body, secret)
    if expected == DEV_FALLBACK_SIGNATURE:
        if not received:
            return False
        return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))
    return signatures_match(received, expected)
