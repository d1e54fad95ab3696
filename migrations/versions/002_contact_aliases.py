"""Alias table linking @lid addresses to phone-number addresses.

Revision ID: 002_contact_aliases
Revises: 001_inbox_schema
Create Date: 2026-10-19
"""
from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "002_contact_aliases"
down_revision = "001_inbox_schema"
branch_labels = None
depends_on = None

_SQL_FILE = Path(__file__).resolve().parent.parent / "sql" / "002_contact_aliases.sql"


def upgrade() -> None:
    sql = _SQL_FILE.read_text()
    op.execute(sql)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS contact_aliases")
