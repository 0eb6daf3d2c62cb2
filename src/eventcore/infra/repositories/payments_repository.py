"""Payments repository - status transitions driven by payment-service webhooks.

Uses raw SQL with psycopg2 (no ORM). Every transition is guarded by
``status = 'pending'`` so a replayed or out-of-order delivery cannot move a
payment that already left ``pending``.
"""

from typing import Any

from psycopg2.extensions import cursor as PgCursor

from eventcore.infra.db import fetchone

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
CANCELED = "canceled"

TERMINAL_STATUSES = {COMPLETED, FAILED, CANCELED}
DEFAULT_FAILURE_MESSAGE = "Payment failed"


def get_payment(cur: PgCursor, payment_service_id: str) -> dict[str, Any] | None:
    """Get a payment by the payment service's identifier.

    Returns:
        Dict with id, status, user_id, webhook_id or None if not found.
    """
    row = fetchone(
        cur,
        """
        SELECT id, status, user_id, webhook_id
        FROM payments
        WHERE payment_service_id = %s
        """,
        (payment_service_id,),
    )
    if row is None:
        return None

    return {
        "id": row[0],
        "status": row[1],
        "user_id": row[2],
        "webhook_id": row[3],
    }


def mark_completed(cur: PgCursor, *, payment_service_id: str, webhook_id: int) -> bool:
    """Transition pending -> completed. Returns True if a row moved."""
    cur.execute(
        """
        UPDATE payments
        SET status = 'completed',
            completed_at = now(),
            webhook_id = %s,
            updated_at = now()
        WHERE payment_service_id = %s AND status = 'pending'
        """,
        (webhook_id, payment_service_id),
    )
    return cur.rowcount > 0


def mark_failed(
    cur: PgCursor,
    *,
    payment_service_id: str,
    webhook_id: int,
    error_message: str | None,
) -> bool:
    """Transition pending -> failed. Returns True if a row moved."""
    cur.execute(
        """
        UPDATE payments
        SET status = 'failed',
            failed_at = now(),
            error_message = %s,
            webhook_id = %s,
            updated_at = now()
        WHERE payment_service_id = %s AND status = 'pending'
        """,
        (error_message or DEFAULT_FAILURE_MESSAGE, webhook_id, payment_service_id),
    )
    return cur.rowcount > 0


def mark_canceled(cur: PgCursor, *, payment_service_id: str, webhook_id: int) -> bool:
    """Transition pending -> canceled. Returns True if a row moved."""
    cur.execute(
        """
        UPDATE payments
        SET status = 'canceled',
            canceled_at = now(),
            webhook_id = %s,
            updated_at = now()
        WHERE payment_service_id = %s AND status = 'pending'
        """,
        (webhook_id, payment_service_id),
    )
    return cur.rowcount > 0
