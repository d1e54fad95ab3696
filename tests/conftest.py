"""Shared pytest fixtures for zapsync tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402


@pytest.fixture(autouse=True)
def _memory_backend(monkeypatch):
    """Every test gets a fresh in-memory inbox, lock table and media bucket.

    The service layer keeps these as module-level singletons; without the
    reset, messages from one test would show up as duplicates in the next.
    """
    from zapsync.infra.locks import KeyedLock
    from zapsync.infra.object_storage import InMemoryObjectStorage
    from zapsync.infra.repositories.memory_repository import InMemoryInboxStore
    from zapsync.services import inbox_service

    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.delenv("STORAGE_BUCKET", raising=False)
    monkeypatch.setattr(inbox_service, "_memory_store", InMemoryInboxStore())
    monkeypatch.setattr(inbox_service, "_memory_locks", KeyedLock())
    monkeypatch.setattr(inbox_service, "_memory_storage", InMemoryObjectStorage())
    inbox_service.set_stabilizer(None)
    yield
    inbox_service.shutdown_runner()
    inbox_service.set_stabilizer(None)


@pytest.fixture(autouse=True)
def _inline_tasks(monkeypatch):
    """Fresh inline tasks clients, so task_id dedupe never leaks between tests."""
    from zapsync.api.routes import tasks_whatsapp, webhooks_whatsapp
    from zapsync.api.routes.tasks_media import submit_stabilization
    from zapsync.tasks.client import TasksClient
    from zapsync.tasks.contracts import HANDLE_EVENT_PATH, STABILIZE_MEDIA_PATH

    monkeypatch.setattr(
        webhooks_whatsapp,
        "_tasks_client",
        TasksClient(
            backend="inline",
            inline_handlers={HANDLE_EVENT_PATH: tasks_whatsapp.run_handle_event},
        ),
    )
    monkeypatch.setattr(
        tasks_whatsapp,
        "_tasks_client",
        TasksClient(
            backend="inline",
            inline_handlers={STABILIZE_MEDIA_PATH: submit_stabilization},
        ),
    )
