"""Payment webhooks repository - append-only audit of accepted deliveries.

Uses raw SQL with psycopg2 (no ORM). Rows are never updated or deleted here.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from eventcore.infra.db import fetchone


@dataclass(frozen=True)
class WebhookAuditRecord:
    """Fields persisted for one accepted delivery."""

    event_type: str
    payment_intent_id: str
    status: str
    timestamp: str | None
    service_name: str
    request_id: str
    webhook_timestamp: str
    signature: str
    raw_data: dict[str, Any]


def insert_webhook(
    cur: PgCursor,
    record: WebhookAuditRecord,
    *,
    processed_at: datetime,
) -> int:
    """Insert the audit row and return its id.

    Args:
        cur: Database cursor (inside the reconciliation transaction).
        record: Delivery metadata and verbatim body.
        processed_at: Processing timestamp stored on the row.

    Returns:
        The new payment_webhooks.id.
    """
    row = fetchone(
        cur,
        """
        INSERT INTO payment_webhooks (
            event_type, payment_intent_id, status, timestamp,
            service_name, request_id, webhook_timestamp, signature,
            raw_data, created_at, processed_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, now(), %s)
        RETURNING id
        """,
        (
            record.event_type,
            record.payment_intent_id,
            record.status,
            record.timestamp,
            record.service_name,
            record.request_id,
            record.webhook_timestamp,
            record.signature,
            json.dumps(record.raw_data, ensure_ascii=False),
            processed_at,
        ),
    )
    if row is None:
        raise RuntimeError("payment_webhooks insert returned no id")
    return int(row[0])


def get_webhook(cur: PgCursor, webhook_id: int) -> dict[str, Any] | None:
    """Get one audit row by id (None if not found)."""
    row = fetchone(
        cur,
        """
        SELECT id, event_type, payment_intent_id, status, service_name,
               request_id, raw_data, processed_at
        FROM payment_webhooks
        WHERE id = %s
        """,
        (webhook_id,),
    )
    if row is None:
        return None

    return {
        "id": row[0],
        "event_type": row[1],
        "payment_intent_id": row[2],
        "status": row[3],
        "service_name": row[4],
        "request_id": row[5],
        "raw_data": row[6],
        "processed_at": row[7],
    }
