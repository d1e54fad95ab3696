"""Database access layer using psycopg2.

Provides:
- get_conn(): connection from DATABASE_URL (DB_PASSWORD fills a missing
  password), tagged with an application_name per APP_ROLE
- txn(): one unit of work; commits on clean exit, rolls back on error

Pipeline transactions wait on advisory locks held by concurrent deliveries
for the same correspondent. DB_LOCK_TIMEOUT_MS bounds that wait so a stuck
holder turns into a retryable task failure instead of a hung worker.
"""

import os
from contextlib import contextmanager
from typing import Iterator
from urllib.parse import urlparse

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor

DB_LOCK_TIMEOUT_MS = int(os.environ.get("DB_LOCK_TIMEOUT_MS", "10000"))


def _dsn_has_password(dsn: str) -> bool:
    """True when the DSN (URL or key=value form) already carries a password."""
    if "://" in dsn:
        return urlparse(dsn).password is not None
    return any(part.startswith("password=") for part in dsn.split())


def _application_name() -> str:
    return f"zapsync-{os.environ.get('APP_ROLE', 'public')}"


def get_conn() -> PgConnection:
    """Get a new database connection from DATABASE_URL.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")

    kwargs = {"application_name": _application_name()}
    password = os.environ.get("DB_PASSWORD")
    if password and not _dsn_has_password(dsn):
        kwargs["password"] = password
    return psycopg2.connect(dsn, **kwargs)


@contextmanager
def txn(
    conn: PgConnection | None = None, lock_timeout_ms: int | None = None
) -> Iterator[PgCursor]:
    """Run one unit of work.

    If conn is None, a new connection is opened and closed on exit.
    lock_timeout_ms overrides DB_LOCK_TIMEOUT_MS; 0 waits forever.

    Example:
        with txn() as cur:
            store = PgInboxStore(cur)
            store.put_alias("inst", "123@lid", "5541991188909")
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()
    timeout = DB_LOCK_TIMEOUT_MS if lock_timeout_ms is None else lock_timeout_ms

    try:
        with conn.cursor() as cur:
            if timeout > 0:
                cur.execute("SET LOCAL lock_timeout = %s", (f"{timeout}ms",))
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()
