"""Cloud Tasks backend for GCP deployment.

Event handling and media stabilization go to separate queues when
GCP_TASKS_MEDIA_QUEUE is set: downloads from the gateway are slow and
bursty (an album is ten images at once) and must not delay the ordered,
fast handle-event deliveries behind them.
"""

import json
import os
import re
from datetime import datetime

from google.api_core.exceptions import AlreadyExists
from google.cloud import tasks_v2
from google.protobuf import duration_pb2, timestamp_pb2

from zapsync.observability.correlation import CORRELATION_ID_HEADER
from zapsync.observability.logging import get_logger
from zapsync.observability.redaction import safe_log_context

logger = get_logger(__name__)

# Cloud Tasks names allow [A-Za-z0-9_-] only
_UNSAFE_TASK_CHARS = re.compile(r"[^A-Za-z0-9_-]")

MEDIA_PATH_PREFIX = "/tasks/media/"

# Cloud Tasks caps HTTP dispatch deadlines at 30 minutes
_MAX_DISPATCH_SECONDS = 1800


def task_name_for(task_id: str) -> str:
    return _UNSAFE_TASK_CHARS.sub("-", task_id)[:500]


def queue_for(url_path: str) -> str:
    default_queue = os.environ.get("GCP_TASKS_QUEUE", "zapsync-default")
    if url_path.startswith(MEDIA_PATH_PREFIX):
        return os.environ.get("GCP_TASKS_MEDIA_QUEUE") or default_queue
    return default_queue


def dispatch_deadline_for(url_path: str) -> int | None:
    """Seconds the queue waits for the worker; None keeps the queue default.

    A stabilize task may retry for MEDIA_DEADLINE_SECONDS before answering,
    so the dispatch deadline leaves a minute on top of that.
    """
    if not url_path.startswith(MEDIA_PATH_PREFIX):
        return None
    media_deadline = float(os.environ.get("MEDIA_DEADLINE_SECONDS", "120"))
    return min(int(media_deadline) + 60, _MAX_DISPATCH_SECONDS)


def enqueue_cloud_task(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
    schedule_time: datetime | None = None,
) -> bool:
    """Create a Cloud Task named after task_id so the queue deduplicates.

    Returns:
        True if created, or if a task with the same name already exists.

    Raises:
        RuntimeError: If required env vars are not set.
    """
    project = os.environ.get("GOOGLE_CLOUD_PROJECT") or os.environ.get("GCP_PROJECT_ID")
    location = os.environ.get("GCP_LOCATION", "us-central1")
    worker_url = os.environ.get("WORKER_BASE_URL")
    oidc_service_account = os.environ.get("TASKS_OIDC_SERVICE_ACCOUNT")
    audience = os.environ.get("TASKS_OIDC_AUDIENCE")

    if not project:
        raise RuntimeError("GOOGLE_CLOUD_PROJECT or GCP_PROJECT_ID required")
    if not worker_url:
        raise RuntimeError("WORKER_BASE_URL required for Cloud Tasks")
    if not oidc_service_account:
        raise RuntimeError("TASKS_OIDC_SERVICE_ACCOUNT required for Cloud Tasks")
    if not audience:
        raise RuntimeError("TASKS_OIDC_AUDIENCE required for Cloud Tasks")

    client = tasks_v2.CloudTasksClient()
    queue = queue_for(url_path)
    parent = client.queue_path(project, location, queue)

    headers = {"Content-Type": "application/json"}
    if correlation_id:
        headers[CORRELATION_ID_HEADER] = correlation_id

    task: dict = {
        "name": f"{parent}/tasks/{task_name_for(task_id)}",
        "http_request": {
            "http_method": tasks_v2.HttpMethod.POST,
            "url": f"{worker_url.rstrip('/')}{url_path}",
            "headers": headers,
            "body": json.dumps(payload).encode(),
            "oidc_token": {
                "service_account_email": oidc_service_account,
                "audience": audience,
            },
        },
    }
    if schedule_time:
        timestamp = timestamp_pb2.Timestamp()
        timestamp.FromDatetime(schedule_time)
        task["schedule_time"] = timestamp
    deadline = dispatch_deadline_for(url_path)
    if deadline is not None:
        task["dispatch_deadline"] = duration_pb2.Duration(seconds=deadline)

    context = safe_log_context(task_id=task_id, url_path=url_path, queue=queue)
    try:
        client.create_task(parent=parent, task=task)
    except AlreadyExists:
        logger.info("cloud task already exists (dedupe)", extra={"extra_fields": context})
        return True
    except Exception:
        logger.exception("failed to enqueue cloud task", extra={"extra_fields": context})
        raise

    logger.info("cloud task enqueued", extra={"extra_fields": context})
    return True
