"""Payment webhook audit, payments and template entitlements (SQL-only).

Revision ID: 001_payment_webhooks
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from pathlib import Path

from alembic import op


# revision identifiers, used by Alembic.
revision = "001_payment_webhooks"
down_revision = None
branch_labels = None
depends_on = None


def _read_sql() -> str:
    sql_path = Path(__file__).resolve().parents[1] / "sql" / "001_payment_webhooks.sql"
    return sql_path.read_text(encoding="utf-8")


def upgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql(_read_sql())


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS user_template_purchases")
    op.execute("DROP TABLE IF EXISTS payments")
    op.execute("DROP TABLE IF EXISTS payment_webhooks")
