"""WhatsApp webhook routes - Evolution API integration.

The webhook only authenticates, normalizes and enqueues; persistence and
media work happen in the worker (/tasks/whatsapp/handle-event).

Evolution expects a fast 2xx: anything that redelivery cannot fix
(malformed payloads, unsupported events) is acknowledged and dropped, and
an enqueue failure is acknowledged too since the backfill sweeps recover it.
Logs never carry raw addresses or message text.
"""

import hmac
import os
from typing import Any

from fastapi import APIRouter, Request, Response

from zapsync.api.routes.tasks_whatsapp import run_handle_event
from zapsync.api.task_auth import LOCAL_DEV_AUDIENCE
from zapsync.domain.errors import NormalizationError
from zapsync.observability.correlation import get_correlation_id
from zapsync.observability.logging import get_logger
from zapsync.observability.redaction import safe_log_context
from zapsync.tasks.client import TasksClient
from zapsync.tasks.contracts import HANDLE_EVENT_PATH, HandleEventTask
from zapsync.whatsapp.evolution_adapter import normalize
from zapsync.whatsapp.models import MESSAGE_EVENTS, EventKind

router = APIRouter(prefix="/webhooks/whatsapp", tags=["webhooks"])

logger = get_logger(__name__)

# Events that carry nothing the pipeline stores
_DROPPED_KINDS = frozenset(
    {
        EventKind.CHATS_UPSERT,
        EventKind.PRESENCE_UPDATE,
        EventKind.CONNECTION_UPDATE,
        EventKind.QRCODE_UPDATED,
    }
)

# Inline backend runs the worker handler in-process (dev, tests)
_tasks_client = TasksClient(inline_handlers={HANDLE_EVENT_PATH: run_handle_event})


def _get_tasks_client() -> TasksClient:
    """Get tasks client instance (allows test injection)."""
    return _tasks_client


def _secret_ok(request: Request, correlation_id: str | None) -> bool:
    """Check the shared webhook secret (fail-closed outside local dev).

    Evolution sends the instance token as "apikey"; a reverse proxy may
    forward a dedicated X-Webhook-Secret instead.
    """
    expected = os.environ.get("EVOLUTION_WEBHOOK_SECRET", "")
    if not expected:
        if os.environ.get("TASKS_OIDC_AUDIENCE", "") == LOCAL_DEV_AUDIENCE:
            logger.warning(
                "EVOLUTION_WEBHOOK_SECRET not set - skipping validation (local dev)",
                extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
            )
            return True
        logger.error(
            "EVOLUTION_WEBHOOK_SECRET not configured - rejecting webhook (fail-closed)",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return False

    received = request.headers.get("X-Webhook-Secret") or request.headers.get("apikey") or ""
    if not hmac.compare_digest(received, expected):
        logger.warning(
            "evolution webhook secret mismatch",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return False
    return True


async def _receive(request: Request, instance_id: str, event_name: str | None) -> Response:
    correlation_id = get_correlation_id()

    if not _secret_ok(request, correlation_id):
        return Response(status_code=401, content="unauthorized")

    try:
        payload: Any = await request.json()
    except ValueError:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid json")

    # "Webhook by events" mode puts the event in the path (messages-upsert)
    if event_name and isinstance(payload, dict) and not payload.get("event"):
        payload["event"] = event_name.replace("-", ".").lower()

    try:
        event = normalize(payload, instance_id)
    except NormalizationError as e:
        logger.info(
            "evolution event dropped",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    instance_id=instance_id,
                    reason=e.reason.value,
                )
            },
        )
        return Response(status_code=200, content="ignored")

    if event.kind in _DROPPED_KINDS:
        return Response(status_code=200, content="ignored")

    is_message = event.kind in MESSAGE_EVENTS
    task = HandleEventTask(
        instance_id=event.instance_id,
        event=payload,
        # Updates share the message id with the upsert they refer to
        message_id=event.message_id if is_message else None,
    )

    logger.info(
        "evolution webhook received",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                instance_id=event.instance_id,
                kind=event.kind.value,
                message_kind=event.message_kind.value if event.message_kind else None,
                from_me=event.from_me,
            )
        },
    )

    try:
        enqueued = _get_tasks_client().enqueue_http(
            task_id=task.task_id,
            url_path=task.path,
            payload=task.to_dict(),
            correlation_id=correlation_id,
        )
    except Exception:
        logger.exception(
            "failed to enqueue whatsapp event",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    instance_id=event.instance_id,
                )
            },
        )
        return Response(status_code=200, content="accepted")

    if not enqueued:
        return Response(status_code=200, content="duplicate")
    return Response(status_code=200, content="ok")


@router.post("/{instance_id}")
async def evolution_webhook(request: Request, instance_id: str) -> Response:
    """Receive an Evolution API webhook for one gateway instance.

    Returns:
        200 for processed, duplicate, ignored and malformed payloads (and on
        enqueue failure), 400 for a non-JSON body, 401 on a secret mismatch.
    """
    return await _receive(request, instance_id, None)


@router.post("/{instance_id}/{event_name}")
async def evolution_webhook_by_event(
    request: Request, instance_id: str, event_name: str
) -> Response:
    """Same as evolution_webhook, with the event kind in the path."""
    return await _receive(request, instance_id, event_name)
