"""Tests for DATABASE_URL -> SQLAlchemy URL conversion used by Alembic."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Make migrations importable without an alembic context
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from migrations.env_helpers import (  # noqa: E402
    MIGRATION_LOCK_SQL,
    MIGRATION_UNLOCK_SQL,
    _get_database_url,
    _libpq_dsn_to_url,
    migration_lock_params,
)

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"


class TestLibpqDsnToUrl:
    def test_unix_socket_goes_to_query(self):
        dsn = "dbname=zapsync user=zapsync-sa password=s3cret host=/cloudsql/proj:us-central1:inst"
        assert _libpq_dsn_to_url(dsn) == (
            "postgresql+psycopg2://zapsync-sa:s3cret@/zapsync"
            "?host=%2Fcloudsql%2Fproj%3Aus-central1%3Ainst"
        )

    @pytest.mark.parametrize(
        "dsn,expected",
        [
            (
                "dbname=inbox user=admin password=pw host=localhost port=5432",
                "postgresql+psycopg2://admin:pw@localhost:5432/inbox",
            ),
            (
                "dbname=inbox user=u password=p host=10.0.0.1 port=5433",
                "postgresql+psycopg2://u:p@10.0.0.1:5433/inbox",
            ),
            (
                "dbname=inbox user=u password=p host=db",
                "postgresql+psycopg2://u:p@db:5432/inbox",
            ),
        ],
    )
    def test_tcp_hosts(self, dsn, expected):
        assert _libpq_dsn_to_url(dsn) == expected

    def test_special_chars_encoded(self):
        result = _libpq_dsn_to_url("dbname=db user=u@domain password=p@ss=word host=h")
        assert "u%40domain" in result
        assert "p%40ss%3Dword" in result

    def test_quoted_password_with_spaces(self):
        result = _libpq_dsn_to_url("dbname=db user=u password='p@ss w0rd' host=h")
        assert "p%40ss+w0rd" in result

    def test_db_password_env_fills_missing_password(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        assert "from-env" in _libpq_dsn_to_url("dbname=db user=u host=h")

    def test_dsn_password_wins_over_env(self, monkeypatch):
        monkeypatch.setenv("DB_PASSWORD", "from-env")
        result = _libpq_dsn_to_url("dbname=db user=u password=from-dsn host=h")
        assert "from-dsn" in result
        assert "from-env" not in result


class TestGetDatabaseUrl:
    def test_missing_raises(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError, match="DATABASE_URL is required"):
                _get_database_url()

    @pytest.mark.parametrize(
        "url",
        ["postgres://u:p@h/db", "postgresql://u:p@h/db", "postgresql+psycopg2://u:p@h/db"],
    )
    def test_scheme_gets_driver_once(self, url):
        with patch.dict(os.environ, {"DATABASE_URL": url}, clear=True):
            result = _get_database_url()
        assert result == "postgresql+psycopg2://u:p@h/db"

    def test_url_db_password_fallback(self):
        env = {"DATABASE_URL": "postgresql://u@h:6543/db", "DB_PASSWORD": "secret"}
        with patch.dict(os.environ, env, clear=True):
            assert _get_database_url() == "postgresql+psycopg2://u:secret@h:6543/db"

    def test_dsn_converted(self):
        env = {"DATABASE_URL": "dbname=zapsync user=sa password=pw host=/cloudsql/p:r:i"}
        with patch.dict(os.environ, env, clear=True):
            assert _get_database_url().startswith("postgresql+psycopg2://sa:pw@/zapsync")


class TestMigrationFiles:
    """Each revision has a matching SQL file."""

    def test_sql_files_exist_for_revisions(self):
        sql_files = sorted(p.name for p in (MIGRATIONS_DIR / "sql").glob("*.sql"))
        revisions = sorted(p.stem for p in (MIGRATIONS_DIR / "versions").glob("*.py"))
        assert sql_files == [f"{name}.sql" for name in revisions]

    def test_schema_declares_uniqueness_constraints(self):
        schema = (MIGRATIONS_DIR / "sql" / "001_inbox_schema.sql").read_text()
        assert "UNIQUE (instance_id, address)" in schema
        assert "UNIQUE (instance_id, message_id)" in schema

        aliases = (MIGRATIONS_DIR / "sql" / "002_contact_aliases.sql").read_text()
        assert "PRIMARY KEY (instance_id, alias_address)" in aliases


class TestMigrationLock:
    def test_lock_and_unlock_share_key(self):
        params = migration_lock_params()
        assert params == {"key": "zapsync:migrations"}
        assert "pg_advisory_lock(" in MIGRATION_LOCK_SQL
        assert "pg_advisory_unlock(" in MIGRATION_UNLOCK_SQL
        assert ":key" in MIGRATION_LOCK_SQL and ":key" in MIGRATION_UNLOCK_SQL

    def test_env_takes_lock_around_upgrade(self):
        env_source = (MIGRATIONS_DIR / "env.py").read_text()
        lock_at = env_source.index("MIGRATION_LOCK_SQL), params")
        run_at = env_source.index("context.run_migrations()", env_source.index("def run_migrations_online"))
        unlock_at = env_source.index("MIGRATION_UNLOCK_SQL), params")
        assert lock_at < run_at < unlock_at
