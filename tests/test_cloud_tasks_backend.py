"""Tests for Cloud Tasks backend task payload construction.

Verifies that enqueue_cloud_task uses TASKS_OIDC_AUDIENCE as the OIDC
audience, names tasks after the task_id so the queue deduplicates, and
fails closed when required env vars are missing.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from google.api_core.exceptions import AlreadyExists

from zapsync.tasks.cloud_tasks_backend import (
    dispatch_deadline_for,
    enqueue_cloud_task,
    queue_for,
    task_name_for,
)

# Minimal env vars required by enqueue_cloud_task
_REQUIRED_ENV = {
    "GOOGLE_CLOUD_PROJECT": "my-project",
    "WORKER_BASE_URL": "https://worker.example.com",
    "TASKS_OIDC_SERVICE_ACCOUNT": "tasks@my-project.iam.gserviceaccount.com",
    "TASKS_OIDC_AUDIENCE": "https://worker.example.com",
}

_PARENT = "projects/my-project/locations/us-central1/queues/zapsync-default"


def _mock_client():
    client = MagicMock()
    client.queue_path.return_value = _PARENT
    return client


def _created_task(client) -> dict:
    return client.create_task.call_args.kwargs["task"]


class TestEnqueueCloudTask:
    def test_oidc_audience_matches_env(self):
        """Task audience must equal TASKS_OIDC_AUDIENCE, not WORKER_BASE_URL."""
        env = {**_REQUIRED_ENV, "TASKS_OIDC_AUDIENCE": "https://custom-audience.example.com"}
        client = _mock_client()

        with patch.dict("os.environ", env, clear=False):
            with patch(
                "zapsync.tasks.cloud_tasks_backend.tasks_v2.CloudTasksClient",
                return_value=client,
            ):
                assert enqueue_cloud_task("t1", "/tasks/media/stabilize", {"key": "value"}) is True

        oidc_token = _created_task(client)["http_request"]["oidc_token"]
        assert oidc_token["audience"] == "https://custom-audience.example.com"
        assert oidc_token["service_account_email"] == env["TASKS_OIDC_SERVICE_ACCOUNT"]

    def test_task_payload(self):
        client = _mock_client()

        with patch.dict("os.environ", _REQUIRED_ENV, clear=False):
            with patch(
                "zapsync.tasks.cloud_tasks_backend.tasks_v2.CloudTasksClient",
                return_value=client,
            ):
                enqueue_cloud_task(
                    "whatsapp-event:inst-1:MSG-1",
                    "/tasks/whatsapp/handle-event",
                    {"instance_id": "inst-1"},
                    correlation_id="corr-1",
                )

        task = _created_task(client)
        assert task["name"] == f"{_PARENT}/tasks/whatsapp-event-inst-1-MSG-1"
        http_request = task["http_request"]
        assert http_request["url"] == "https://worker.example.com/tasks/whatsapp/handle-event"
        assert http_request["headers"]["X-Correlation-ID"] == "corr-1"
        assert json.loads(http_request["body"]) == {"instance_id": "inst-1"}

    def test_already_exists_is_success(self):
        client = _mock_client()
        client.create_task.side_effect = AlreadyExists("task exists")

        with patch.dict("os.environ", _REQUIRED_ENV, clear=False):
            with patch(
                "zapsync.tasks.cloud_tasks_backend.tasks_v2.CloudTasksClient",
                return_value=client,
            ):
                assert enqueue_cloud_task("t1", "/tasks/x", {}) is True

    def test_other_errors_propagate(self):
        client = _mock_client()
        client.create_task.side_effect = RuntimeError("quota")

        with patch.dict("os.environ", _REQUIRED_ENV, clear=False):
            with patch(
                "zapsync.tasks.cloud_tasks_backend.tasks_v2.CloudTasksClient",
                return_value=client,
            ):
                with pytest.raises(RuntimeError, match="quota"):
                    enqueue_cloud_task("t1", "/tasks/x", {})


    def test_media_task_routing(self):
        client = _mock_client()
        env = {**_REQUIRED_ENV, "GCP_TASKS_MEDIA_QUEUE": "zapsync-media"}

        with patch.dict("os.environ", env, clear=False):
            with patch(
                "zapsync.tasks.cloud_tasks_backend.tasks_v2.CloudTasksClient",
                return_value=client,
            ):
                enqueue_cloud_task("media-stabilize:inst-1:IMG-1", "/tasks/media/stabilize", {})

        assert client.queue_path.call_args.args == ("my-project", "us-central1", "zapsync-media")
        assert _created_task(client)["dispatch_deadline"].seconds == dispatch_deadline_for(
            "/tasks/media/stabilize"
        )

    def test_event_task_has_no_dispatch_deadline(self):
        client = _mock_client()

        with patch.dict("os.environ", _REQUIRED_ENV, clear=False):
            with patch(
                "zapsync.tasks.cloud_tasks_backend.tasks_v2.CloudTasksClient",
                return_value=client,
            ):
                enqueue_cloud_task("t1", "/tasks/whatsapp/handle-event", {})

        assert "dispatch_deadline" not in _created_task(client)


class TestQueueRouting:
    def test_media_queue_falls_back_to_default(self, monkeypatch):
        monkeypatch.setenv("GCP_TASKS_QUEUE", "main")
        monkeypatch.delenv("GCP_TASKS_MEDIA_QUEUE", raising=False)
        assert queue_for("/tasks/media/backfill") == "main"

    def test_media_queue_used_for_media_paths_only(self, monkeypatch):
        monkeypatch.setenv("GCP_TASKS_QUEUE", "main")
        monkeypatch.setenv("GCP_TASKS_MEDIA_QUEUE", "media")
        assert queue_for("/tasks/media/stabilize") == "media"
        assert queue_for("/tasks/whatsapp/handle-event") == "main"

    def test_dispatch_deadline_tracks_media_deadline(self, monkeypatch):
        monkeypatch.setenv("MEDIA_DEADLINE_SECONDS", "120")
        assert dispatch_deadline_for("/tasks/media/stabilize") == 180
        monkeypatch.setenv("MEDIA_DEADLINE_SECONDS", "5000")
        assert dispatch_deadline_for("/tasks/media/stabilize") == 1800
        assert dispatch_deadline_for("/tasks/conversations/merge-linked") is None


class TestTaskNameFor:
    def test_unsafe_characters_replaced(self):
        assert task_name_for("media-stabilize:inst 1:ABC/123") == "media-stabilize-inst-1-ABC-123"

    def test_truncated(self):
        assert len(task_name_for("x" * 1000)) == 500


class TestEnqueueCloudTaskFailClosed:
    """enqueue_cloud_task must fail fast when required env vars are missing."""

    @pytest.mark.parametrize(
        "missing,match",
        [
            ("TASKS_OIDC_AUDIENCE", "TASKS_OIDC_AUDIENCE required"),
            ("TASKS_OIDC_SERVICE_ACCOUNT", "TASKS_OIDC_SERVICE_ACCOUNT required"),
            ("WORKER_BASE_URL", "WORKER_BASE_URL required"),
            ("GOOGLE_CLOUD_PROJECT", "GOOGLE_CLOUD_PROJECT"),
        ],
    )
    def test_missing_env_raises(self, missing, match):
        env = {k: v for k, v in _REQUIRED_ENV.items() if k != missing}

        with patch.dict("os.environ", env, clear=True):
            with pytest.raises(RuntimeError, match=match):
                enqueue_cloud_task(task_id="t1", url_path="/tasks/x", payload={})
