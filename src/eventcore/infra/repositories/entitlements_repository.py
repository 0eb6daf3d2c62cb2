"""Entitlements repository - template purchases and ticket payment status."""

from typing import Sequence

from psycopg2.extensions import cursor as PgCursor


def grant_template(
    cur: PgCursor,
    *,
    user_id: int,
    template_id: int,
    webhook_id: int,
) -> None:
    """Insert or refresh the (user_id, template_id) entitlement.

    A repeated grant only refreshes purchase_date and webhook_id.
    """
    cur.execute(
        """
        INSERT INTO user_template_purchases (user_id, template_id, purchase_date, webhook_id)
        VALUES (%s, %s, now(), %s)
        ON CONFLICT (user_id, template_id) DO UPDATE
        SET purchase_date = EXCLUDED.purchase_date,
            webhook_id = EXCLUDED.webhook_id
        """,
        (user_id, template_id, webhook_id),
    )


def set_tickets_status(
    cur: PgCursor,
    *,
    ticket_ids: Sequence[int],
    status: str,
) -> int:
    """Set status on the given tickets. Returns the number of rows updated."""
    if not ticket_ids:
        return 0

    cur.execute(
        """
        UPDATE tickets
        SET status = %s, updated_at = now()
        WHERE id = ANY(%s)
        """,
        (status, list(ticket_ids)),
    )
    return cur.rowcount
