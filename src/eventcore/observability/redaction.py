"""Redaction helpers for safe logging. All external data must pass through these.

Webhook deliveries carry HMAC signatures and shared-secret material; neither
may reach a log line. Identifiers are shortened to a prefix.
"""

import re
from typing import Any

_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_HEX_DIGEST_PATTERN = re.compile(r"\b[0-9a-fA-F]{32,}\b")
_SENSITIVE_KEYS = ("signature", "secret", "password", "token", "authorization")

_REDACTED = "[REDACTED]"


def redact_string(value: str) -> str:
    """Strip e-mail addresses and long hex digests from a string."""
    result = _EMAIL_PATTERN.sub(_REDACTED, value)
    result = _HEX_DIGEST_PATTERN.sub(_REDACTED, result)
    return result


def id_prefix(value: str | None, length: int = 8) -> str | None:
    """Shorten an external identifier for logging."""
    if value is None:
        return None
    return value[:length] if len(value) >= length else value


def redact_value(value: Any) -> str:
    """Redact any value for safe logging. Returns string representation."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # structure only, never values
        return f"dict(keys={list(value.keys())})"
    if isinstance(value, (list, tuple)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging. All values are redacted."""
    context: dict[str, str] = {}
    for key, value in kwargs.items():
        if any(marker in key.lower() for marker in _SENSITIVE_KEYS):
            context[key] = _REDACTED
        else:
            context[key] = redact_value(value)
    return context
