"""Tests for the worker task routes.

Auth is patched out; see test_task_auth_guard.py for the 401 paths.
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tests.helpers import (
    INSTANCE,
    LID_JID,
    PHONE,
    FakeFetcher,
    expired,
    image_message,
    jpeg_bytes,
    make_stabilizer,
    message_payload,
)
from zapsync.api.routes import tasks_conversations, tasks_media, tasks_whatsapp
from zapsync.domain.backfill import BackfillReport
from zapsync.domain.errors import PersistenceConflict
from zapsync.services import inbox_service
from zapsync.tasks.client import TasksClient
from zapsync.tasks.contracts import HandleEventTask


@pytest.fixture
def client():
    app = FastAPI()
    app.include_router(tasks_whatsapp.router)
    app.include_router(tasks_media.router)
    app.include_router(tasks_conversations.router)
    with patch("zapsync.api.routes.tasks_whatsapp.verify_task_auth", return_value=True), patch(
        "zapsync.api.routes.tasks_media.verify_task_auth", return_value=True
    ), patch("zapsync.api.routes.tasks_conversations.verify_task_auth", return_value=True):
        yield TestClient(app)


@pytest.fixture
def recording_tasks(monkeypatch):
    """Stabilization tasks are recorded instead of run."""
    client = TasksClient(backend="inline")
    monkeypatch.setattr(tasks_whatsapp, "_get_tasks_client", lambda: client)
    return client


def store():
    return inbox_service.get_memory_store()


def handle_event_body(payload, message_id=None):
    return HandleEventTask(instance_id=INSTANCE, event=payload, message_id=message_id).to_dict()


def running_loop():
    """The event loop running in the calling thread, if any."""
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def use_stabilizer(*results, **kwargs):
    stabilizer, storage, _ = make_stabilizer(store(), FakeFetcher(*results), **kwargs)
    inbox_service.set_stabilizer(stabilizer)
    return storage


class TestHandleEvent:
    def test_created_then_duplicate(self, client, recording_tasks):
        body = handle_event_body(message_payload("M1"), "M1")

        first = client.post("/tasks/whatsapp/handle-event", json=body)
        second = client.post("/tasks/whatsapp/handle-event", json=body)

        assert (first.status_code, first.text) == (200, "created")
        assert (second.status_code, second.text) == (200, "duplicate")
        assert store().find_conversation(INSTANCE, PHONE).unread_count == 1

    def test_text_message_schedules_nothing(self, client, recording_tasks):
        client.post("/tasks/whatsapp/handle-event", json=handle_event_body(message_payload("M1")))
        assert recording_tasks.get_recorded_tasks() == []

    def test_media_message_schedules_stabilization(self, client, recording_tasks):
        body = handle_event_body(message_payload("IMG-1", message=image_message()), "IMG-1")

        response = client.post("/tasks/whatsapp/handle-event", json=body)

        assert response.text == "created"
        tasks = recording_tasks.get_recorded_tasks()
        assert len(tasks) == 1
        assert tasks[0]["url_path"] == "/tasks/media/stabilize"
        assert tasks[0]["task_id"] == f"media-stabilize:{INSTANCE}:IMG-1"
        assert tasks[0]["payload"]["message_id"] == "IMG-1"

    def test_enqueue_failure_does_not_fail_event(self, client, monkeypatch):
        def broken():
            raise RuntimeError("queue down")

        monkeypatch.setattr(tasks_whatsapp, "_get_tasks_client", broken)
        body = handle_event_body(message_payload("IMG-1", message=image_message()), "IMG-1")

        response = client.post("/tasks/whatsapp/handle-event", json=body)

        assert (response.status_code, response.text) == (200, "created")
        assert store().get_message(INSTANCE, "IMG-1").media_stabilized is False

    def test_unnormalizable_event_dropped(self, client):
        body = handle_event_body({"event": "messages.upsert", "data": {}})
        response = client.post("/tasks/whatsapp/handle-event", json=body)
        assert (response.status_code, response.text) == (200, "dropped")

    @pytest.mark.parametrize("body", [{}, {"instance_id": INSTANCE}, {"version": "v9"}])
    def test_invalid_payload_returns_400(self, client, body):
        response = client.post("/tasks/whatsapp/handle-event", json=body)
        assert response.status_code == 400

    def test_invalid_json_returns_400(self, client):
        response = client.post(
            "/tasks/whatsapp/handle-event",
            content=b"nope",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_persistent_conflict_returns_500(self, client):
        with patch.object(
            inbox_service, "handle_event", side_effect=PersistenceConflict("unique")
        ):
            response = client.post(
                "/tasks/whatsapp/handle-event",
                json=handle_event_body(message_payload("M1"), "M1"),
            )
        assert response.status_code == 500


class TestStabilizeTask:
    def _persist_image(self, client, recording_tasks):
        client.post(
            "/tasks/whatsapp/handle-event",
            json=handle_event_body(message_payload("IMG-1", message=image_message()), "IMG-1"),
        )
        return recording_tasks.get_recorded_tasks()[0]["payload"]

    def test_stabilizes_message(self, client, recording_tasks):
        storage = use_stabilizer(jpeg_bytes())
        payload = self._persist_image(client, recording_tasks)

        response = client.post("/tasks/media/stabilize", json=payload)

        assert (response.status_code, response.text) == (200, "ok")
        message = store().get_message(INSTANCE, "IMG-1")
        assert message.media_stabilized is True
        assert storage.owns_url(message.media_url)

    def test_expired_media_acknowledged_as_failed(self, client, recording_tasks):
        use_stabilizer(expired())
        payload = self._persist_image(client, recording_tasks)

        response = client.post("/tasks/media/stabilize", json=payload)

        assert (response.status_code, response.text) == (200, "failed")
        assert store().get_message(INSTANCE, "IMG-1").media_stabilized is False

    def test_stabilization_runs_off_the_event_loop(self, client, recording_tasks):
        payload = self._persist_image(client, recording_tasks)
        loops = []
        stabilizer = MagicMock()
        stabilizer.stabilize_with_retry.side_effect = lambda message: loops.append(running_loop())
        inbox_service.set_stabilizer(stabilizer)

        response = client.post("/tasks/media/stabilize", json=payload)

        assert (response.status_code, response.text) == (200, "failed")
        assert loops == [None]

    def test_unknown_message(self, client):
        response = client.post(
            "/tasks/media/stabilize", json={"instance_id": INSTANCE, "message_id": "nope"}
        )
        assert (response.status_code, response.text) == (200, "not_found")

    def test_invalid_payload(self, client):
        response = client.post("/tasks/media/stabilize", json={"instance_id": INSTANCE})
        assert response.status_code == 400


class TestBackfillTasks:
    def test_media_backfill_repairs_pending(self, client, recording_tasks):
        for message_id in ("IMG-1", "IMG-2"):
            client.post(
                "/tasks/whatsapp/handle-event",
                json=handle_event_body(
                    message_payload(message_id, message=image_message()), message_id
                ),
            )
        storage = use_stabilizer(jpeg_bytes())

        response = client.post("/tasks/media/backfill", json={"instance_id": INSTANCE})

        assert response.status_code == 200
        assert response.json() == {"scanned": 2, "repaired": 2, "failed": 0}
        assert storage.put_count == 2

        again = client.post("/tasks/media/backfill", json={"instance_id": INSTANCE})
        assert again.json() == {"scanned": 0, "repaired": 0, "failed": 0}

    def test_media_backfill_runs_off_the_event_loop(self, client):
        loops = []

        def restabilize(instance_id, limit):
            loops.append(running_loop())
            return BackfillReport(scanned=0, repaired=0)

        with patch.object(inbox_service, "restabilize", side_effect=restabilize):
            response = client.post("/tasks/media/backfill", json={"instance_id": INSTANCE})

        assert response.status_code == 200
        assert loops == [None]

    def test_media_backfill_invalid_limit(self, client):
        response = client.post(
            "/tasks/media/backfill", json={"instance_id": INSTANCE, "limit": -1}
        )
        assert response.status_code == 400

    def test_merge_linked(self, client):
        phone_conv = store().create_conversation(INSTANCE, PHONE, is_group=False)
        lid_conv = store().create_conversation(INSTANCE, LID_JID, is_group=False)
        store().put_alias(INSTANCE, LID_JID, PHONE)

        response = client.post(
            "/tasks/conversations/merge-linked", json={"instance_id": INSTANCE}
        )

        assert response.status_code == 200
        assert response.json() == {"scanned": 1, "merged": 1}
        assert store().get_conversation(lid_conv.id) is None
        assert store().get_conversation(phone_conv.id) is not None

    def test_merge_linked_requires_instance(self, client):
        response = client.post("/tasks/conversations/merge-linked", json={})
        assert response.status_code == 400
