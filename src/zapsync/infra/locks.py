"""Exclusion scopes keyed by (instance_id, canonical address).

Both implementations acquire keys in sorted order, so two events touching
overlapping key sets (a merge holds the alias and the stable address) can
never deadlock each other.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterable, Iterator

from psycopg2.extensions import cursor as PgCursor


def _scoped_keys(instance_id: str, keys: Iterable[str]) -> list[str]:
    return sorted({f"{instance_id}|{key}" for key in keys})


class KeyedLock:
    """In-process mutex per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._refs: dict[str, int] = {}

    def _acquire(self, key: str) -> None:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._refs[key] = self._refs.get(key, 0) + 1
        lock.acquire()

    def _release(self, key: str) -> None:
        with self._guard:
            lock = self._locks[key]
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]
        lock.release()

    @contextmanager
    def hold(self, instance_id: str, keys: Iterable[str]) -> Iterator[None]:
        acquired: list[str] = []
        try:
            for key in _scoped_keys(instance_id, keys):
                self._acquire(key)
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._release(key)

    def active_keys(self) -> int:
        """Number of keys currently held or waited on."""
        with self._guard:
            return len(self._locks)


class PgAdvisoryScope:
    """Transaction-scoped advisory locks on the caller's cursor.

    pg_advisory_xact_lock is released by COMMIT/ROLLBACK, so the scope
    lasts until the surrounding txn() exits, not until hold() returns.
    """

    def __init__(self, cur: PgCursor) -> None:
        self._cur = cur

    @contextmanager
    def hold(self, instance_id: str, keys: Iterable[str]) -> Iterator[None]:
        for key in _scoped_keys(instance_id, keys):
            self._cur.execute(
                "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))", (key,)
            )
        yield
