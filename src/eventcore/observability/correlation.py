"""Request correlation for tracing deliveries across services.

The payment service stamps every webhook with ``X-Request-ID``; that value is
reused as the correlation ID so both sides log the same identifier.
"""

import uuid
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_ID_HEADER = "X-Request-ID"
LEGACY_CORRELATION_ID_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())


def resolve_correlation_id(headers) -> str:
    """Pick the inbound correlation ID from request headers, or mint one."""
    return (
        headers.get(CORRELATION_ID_HEADER)
        or headers.get(LEGACY_CORRELATION_ID_HEADER)
        or generate_correlation_id()
    )


def get_correlation_id() -> str:
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    correlation_id_var.reset(token)
