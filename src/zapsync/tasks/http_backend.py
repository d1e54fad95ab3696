"""HTTP backend for tasks - POSTs tasks to the worker.

Used where the api and worker roles run as separate containers without a
Cloud Tasks queue between them (docker compose, staging).
"""

import os
from datetime import datetime

import requests
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.id_token import fetch_id_token

from zapsync.api.task_auth import INTERNAL_SECRET_HEADER, LOCAL_DEV_AUDIENCE
from zapsync.observability.correlation import CORRELATION_ID_HEADER
from zapsync.observability.logging import get_logger
from zapsync.observability.redaction import safe_log_context

logger = get_logger(__name__)

WORKER_BASE_URL = os.environ.get("WORKER_BASE_URL", "http://worker:8000")
HTTP_TIMEOUT = int(os.environ.get("TASKS_HTTP_TIMEOUT", "30"))


def _fetch_oidc_token(audience: str) -> str | None:
    """ID token from the metadata server or application default credentials."""
    try:
        return fetch_id_token(GoogleRequest(), audience)
    except Exception as e:
        logger.error(
            "failed to fetch OIDC ID token",
            extra={"extra_fields": safe_log_context(error_type=type(e).__name__)},
        )
        return None


def _auth_headers() -> dict[str, str] | None:
    if os.environ.get("TASKS_OIDC_AUDIENCE", "") == LOCAL_DEV_AUDIENCE:
        secret = os.environ.get("INTERNAL_TASK_SECRET", "")
        return {INTERNAL_SECRET_HEADER: secret} if secret else {}

    token = _fetch_oidc_token(WORKER_BASE_URL)
    if not token:
        return None
    return {"Authorization": f"Bearer {token}"}


def enqueue_http(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
    schedule_time: datetime | None = None,
) -> bool:
    """POST the task to the worker.

    Returns:
        True on a 2xx response; False on transport errors, non-2xx responses
        or a missing OIDC token.
    """
    context = safe_log_context(task_id=task_id, url_path=url_path)

    if schedule_time is not None:
        logger.warning(
            "HTTP backend cannot schedule - delivering now",
            extra={"extra_fields": context},
        )

    auth = _auth_headers()
    if auth is None:
        logger.error(
            "HTTP task enqueue aborted: OIDC token unavailable",
            extra={"extra_fields": context},
        )
        return False

    headers = {
        "Content-Type": "application/json",
        CORRELATION_ID_HEADER: correlation_id or "",
        "X-Task-Id": task_id,
        **auth,
    }

    try:
        response = requests.post(
            f"{WORKER_BASE_URL}{url_path}",
            json=payload,
            headers=headers,
            timeout=HTTP_TIMEOUT,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(
            "HTTP task enqueue failed",
            extra={"extra_fields": safe_log_context(**context, error_type=type(e).__name__)},
        )
        return False

    logger.info("HTTP task enqueued", extra={"extra_fields": context})
    return True
