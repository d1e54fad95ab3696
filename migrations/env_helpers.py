"""DATABASE_URL -> SQLAlchemy URL conversion for Alembic.

Kept outside env.py so tests can import it without an alembic context.
The runtime uses the same DATABASE_URL/DB_PASSWORD pair via psycopg2.
"""

from __future__ import annotations

import os
from urllib.parse import quote_plus, urlsplit, urlunsplit

from psycopg2.extensions import parse_dsn

_DRIVER_SCHEME = "postgresql+psycopg2"

# Session-level lock serializing concurrent `alembic upgrade` runs
MIGRATION_LOCK_KEY = "zapsync:migrations"
MIGRATION_LOCK_SQL = "SELECT pg_advisory_lock(hashtextextended(:key, 0))"
MIGRATION_UNLOCK_SQL = "SELECT pg_advisory_unlock(hashtextextended(:key, 0))"


def migration_lock_params() -> dict[str, str]:
    return {"key": MIGRATION_LOCK_KEY}


def _libpq_dsn_to_url(dsn: str) -> str:
    """Convert a libpq key=value DSN to a SQLAlchemy URL.

    Unix sockets (host=/cloudsql/...) become a ?host= query parameter;
    TCP hosts go in the netloc with port 5432 unless given.
    """
    params = parse_dsn(dsn)
    password = params.get("password") or os.environ.get("DB_PASSWORD", "")

    credentials = quote_plus(params.get("user", ""))
    if password:
        credentials += f":{quote_plus(password)}"
    dbname = quote_plus(params.get("dbname", ""))
    host = params.get("host", "localhost")

    if host.startswith("/"):
        return f"{_DRIVER_SCHEME}://{credentials}@/{dbname}?host={quote_plus(host)}"

    port = params.get("port", "5432")
    return f"{_DRIVER_SCHEME}://{credentials}@{host}:{port}/{dbname}"


def _url_with_driver(url: str) -> str:
    parts = urlsplit(url)
    if parts.scheme in ("postgres", "postgresql"):
        parts = parts._replace(scheme=_DRIVER_SCHEME)

    db_password = os.environ.get("DB_PASSWORD", "")
    if db_password and parts.password is None and parts.hostname:
        netloc = f"{quote_plus(parts.username or '')}:{quote_plus(db_password)}@{parts.hostname}"
        if parts.port:
            netloc += f":{parts.port}"
        parts = parts._replace(netloc=netloc)
    return urlunsplit(parts)


def _get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if "://" in url:
        return _url_with_driver(url)
    return _libpq_dsn_to_url(url)
