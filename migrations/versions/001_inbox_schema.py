"""Inbox schema: conversations and messages.

One conversation per (instance_id, canonical address); messages unique per
(instance_id, message_id) so redelivered webhooks never duplicate rows.

Revision ID: 001_inbox_schema
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "001_inbox_schema"
down_revision = None
branch_labels = None
depends_on = None

_SQL_FILE = Path(__file__).resolve().parent.parent / "sql" / "001_inbox_schema.sql"


def upgrade() -> None:
    sql = _SQL_FILE.read_text()
    op.execute(sql)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS messages")
    op.execute("DROP TABLE IF EXISTS conversations")
