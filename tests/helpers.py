"""Shared test helper functions for event planner core tests.

This module contains helper functions that can be imported by both conftest.py
and individual test files. These are NOT fixtures - they are regular functions.
"""

from __future__ import annotations

import uuid
from typing import Any
from unittest.mock import MagicMock

from eventcore.webhooks.signature import compute_signature, serialize_body

TEST_WEBHOOK_SECRET = "test_webhook_secret_for_hmac_32b!"

WEBHOOK_PATH = "/api/internal/payment-webhook"


def make_payload(
    event_type: str = "payment.completed",
    payment_intent_id: str | None = None,
    status: str = "completed",
    data: dict[str, Any] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Build a payment-service webhook body."""
    payload: dict[str, Any] = {
        "eventType": event_type,
        "paymentIntentId": payment_intent_id or f"pi_{uuid.uuid4().hex[:16]}",
        "status": status,
        "timestamp": "2026-01-15T10:30:00.000Z",
    }
    if data is not None:
        payload["data"] = data
    payload.update(extra)
    return payload


def signed_headers(
    body: bytes,
    secret: str = TEST_WEBHOOK_SECRET,
    *,
    request_id: str | None = None,
    service_name: str = "payment-service",
    signature: str | None = None,
) -> dict[str, str]:
    """Headers the payment service sends with ``body``."""
    return {
        "Content-Type": "application/json",
        "X-Webhook-Signature": signature or compute_signature(body, secret),
        "X-Service-Name": service_name,
        "X-Request-ID": request_id or f"req-{uuid.uuid4().hex[:12]}",
        "X-Timestamp": "1768473000000",
    }


def post_webhook(
    client,
    payload: dict[str, Any],
    secret: str = TEST_WEBHOOK_SECRET,
    *,
    headers: dict[str, str] | None = None,
    drop: tuple[str, ...] = (),
):
    """POST a signed webhook; ``headers`` override and ``drop`` remove headers."""
    body = serialize_body(payload)
    request_headers = signed_headers(body, secret)
    request_headers.update(headers or {})
    for name in drop:
        request_headers.pop(name, None)
    return client.post(WEBHOOK_PATH, content=body, headers=request_headers)


def mock_pool(cursor: MagicMock | None = None) -> MagicMock:
    """ConnectionPool stand-in whose transaction() yields ``cursor``."""
    cur = cursor or mock_cursor()
    pool = MagicMock()
    pool.transaction.return_value.__enter__.return_value = cur
    pool.transaction.return_value.__exit__.return_value = False
    return pool


def mock_cursor(webhook_id: int = 42, rowcount: int = 1) -> MagicMock:
    """Cursor returning ``webhook_id`` from INSERT ... RETURNING id."""
    cur = MagicMock()
    cur.fetchone.return_value = (webhook_id,)
    cur.rowcount = rowcount
    return cur


def executed_sql(cur: MagicMock) -> list[str]:
    """Normalized SQL text of every execute() call on a mock cursor."""
    return [" ".join(call.args[0].split()) for call in cur.execute.call_args_list]
