"""Inbox service - wires stores, exclusion scopes and media for the routes.

STORE_BACKEND selects persistence:
- postgres (default): one txn() per unit of work; exclusion via
  transaction-scoped advisory locks on the same connection
- memory: one process-wide InMemoryInboxStore guarded by a KeyedLock
  (single-process dev and tests)

Route handlers call these functions instead of building components
themselves, so every component gets its store passed in explicitly.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Iterator

from zapsync.domain.backfill import (
    BackfillReport,
    merge_linked_conversations,
    restabilize_pending,
)
from zapsync.domain.conversations import ConversationReconciler
from zapsync.domain.models import Message
from zapsync.domain.pipeline import EventPipeline, PipelineResult
from zapsync.domain.ports import ExclusionScope, InboxStore, ObjectStorage
from zapsync.infra.db import txn
from zapsync.infra.locks import KeyedLock, PgAdvisoryScope
from zapsync.infra.object_storage import (
    InMemoryObjectStorage,
    S3ObjectStorage,
    load_storage_config,
)
from zapsync.infra.repositories.inbox_repository import PgInboxStore
from zapsync.infra.repositories.memory_repository import InMemoryInboxStore
from zapsync.media.fetch import GatewayMediaFetcher
from zapsync.media.runner import StabilizationRunner
from zapsync.media.stabilizer import MediaStabilizer
from zapsync.whatsapp.models import InboundEvent

_memory_store = InMemoryInboxStore()
_memory_locks = KeyedLock()
_memory_storage = InMemoryObjectStorage()

_stabilizer: MediaStabilizer | None = None
_runner: StabilizationRunner | None = None


def store_backend() -> str:
    backend = os.environ.get("STORE_BACKEND", "postgres")
    if backend not in ("postgres", "memory"):
        raise ValueError(f"Unknown STORE_BACKEND: {backend}")
    return backend


def get_memory_store() -> InMemoryInboxStore:
    return _memory_store


@contextmanager
def unit_of_work() -> Iterator[tuple[InboxStore, ExclusionScope]]:
    """Store plus matching exclusion scope; commits on clean exit (Postgres)."""
    if store_backend() == "memory":
        yield _memory_store, _memory_locks
        return
    with txn() as cur:
        yield PgInboxStore(cur), PgAdvisoryScope(cur)


@contextmanager
def store_session() -> Iterator[InboxStore]:
    """Short store session without an exclusion scope (media rewrites, reads)."""
    with unit_of_work() as (store, _):
        yield store


def handle_event(event: InboundEvent) -> PipelineResult:
    with unit_of_work() as (store, scope):
        return EventPipeline(store, scope).handle(event)


def load_message(instance_id: str, message_id: str) -> Message | None:
    with store_session() as store:
        return store.get_message(instance_id, message_id)


def _build_storage() -> ObjectStorage:
    config = load_storage_config()
    if config is not None:
        return S3ObjectStorage(config)
    if store_backend() == "memory":
        return _memory_storage
    raise RuntimeError("STORAGE_BUCKET not configured")


def get_stabilizer() -> MediaStabilizer:
    """Lazy so the api role never needs storage credentials."""
    global _stabilizer
    if _stabilizer is None:
        _stabilizer = MediaStabilizer(_build_storage(), GatewayMediaFetcher(), store_session)
    return _stabilizer


def set_stabilizer(stabilizer: MediaStabilizer | None) -> None:
    """Override the stabilizer (tests)."""
    global _stabilizer, _runner
    _stabilizer = stabilizer
    _runner = None


def get_runner() -> StabilizationRunner:
    global _runner
    if _runner is None:
        _runner = StabilizationRunner(get_stabilizer())
    return _runner


def shutdown_runner() -> None:
    global _runner
    if _runner is not None:
        _runner.shutdown()
        _runner = None


def describe() -> dict[str, str]:
    """Backends in use, without touching the database or storage."""
    if os.environ.get("STORAGE_BUCKET"):
        storage = "s3"
    elif store_backend() == "memory":
        storage = "memory"
    else:
        storage = "unconfigured"
    return {
        "store": store_backend(),
        "storage": storage,
        "runner": "running" if _runner is not None else "idle",
    }


def restabilize(instance_id: str, limit: int) -> BackfillReport:
    return restabilize_pending(store_session, get_stabilizer(), instance_id, limit)


def merge_linked(instance_id: str) -> BackfillReport:
    with unit_of_work() as (store, scope):
        return merge_linked_conversations(
            store, ConversationReconciler(store), instance_id, scope=scope
        )

