"""Worker routes for WhatsApp event handling.

POST /tasks/whatsapp/handle-event runs one normalized gateway event through
the pipeline (identity, conversation, message) in a single unit of work,
then schedules media stabilization once that work is committed.

Status codes drive queue retries: 200 for anything a retry cannot change
(duplicates, dropped events), 500 for failures worth retrying.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request, Response

from zapsync.api.routes.tasks_media import submit_stabilization
from zapsync.api.task_auth import verify_task_auth
from zapsync.domain.errors import NormalizationError, PersistenceConflict
from zapsync.domain.pipeline import PipelineResult
from zapsync.observability.correlation import get_correlation_id
from zapsync.observability.logging import get_logger
from zapsync.observability.redaction import safe_log_context
from zapsync.services import inbox_service
from zapsync.tasks.client import TasksClient
from zapsync.tasks.contracts import STABILIZE_MEDIA_PATH, HandleEventTask, StabilizeMediaTask
from zapsync.whatsapp.evolution_adapter import normalize

router = APIRouter(prefix="/tasks/whatsapp", tags=["tasks"])

logger = get_logger(__name__)

# Module-level tasks client (singleton for dev)
_tasks_client = TasksClient(inline_handlers={STABILIZE_MEDIA_PATH: submit_stabilization})


def _get_tasks_client() -> TasksClient:
    """Get tasks client (allows override in tests)."""
    return _tasks_client


def _schedule_stabilization(result: PipelineResult) -> None:
    message = result.message
    if message is None:
        return
    task = StabilizeMediaTask(instance_id=message.instance_id, message_id=message.message_id)
    try:
        _get_tasks_client().enqueue_http(
            task_id=task.task_id,
            url_path=task.path,
            payload=task.to_dict(),
            correlation_id=get_correlation_id(),
        )
    except Exception:
        # The message keeps its gateway URL; the media backfill retries it
        logger.exception(
            "failed to enqueue media stabilization",
            extra={
                "extra_fields": safe_log_context(
                    instance_id=message.instance_id,
                    message_id=message.message_id,
                )
            },
        )


def run_handle_event(payload: dict) -> PipelineResult:
    """Process one HandleEventTask payload.

    Also registered as the inline task handler for the webhook.

    Raises:
        ValueError: If the payload is not a HandleEventTask.
        NormalizationError: If the embedded event no longer normalizes.
        PersistenceConflict: If conflicts outlasted the reconciler's retries.
    """
    task = HandleEventTask.from_dict(payload)
    event = normalize(task.event, task.instance_id)
    result = inbox_service.handle_event(event)

    logger.info(
        "whatsapp event handled",
        extra={
            "extra_fields": safe_log_context(
                instance_id=event.instance_id,
                kind=event.kind.value,
                outcome=result.outcome.value,
                conversation_id=result.conversation_id,
                links=len(result.links),
            )
        },
    )

    if result.needs_stabilization:
        _schedule_stabilization(result)
    return result


@router.post("/handle-event")
async def handle_event(request: Request) -> Response:
    """Handle a WhatsApp event task.

    Returns:
        200 with the pipeline outcome, or "dropped" for events that no
        longer normalize.
        400 if the payload is not a valid task.
        401 if task auth fails.
        500 if persistence kept conflicting (the queue retries).
    """
    correlation_id = get_correlation_id()

    if not verify_task_auth(request):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        payload: dict[str, Any] = await request.json()
    except ValueError:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid json")

    try:
        result = run_handle_event(payload)
    except NormalizationError as e:
        logger.warning(
            "queued event dropped",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id, reason=e.reason.value
                )
            },
        )
        return Response(status_code=200, content="dropped")
    except (ValueError, AttributeError):
        logger.warning(
            "invalid handle-event payload",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid payload")
    except PersistenceConflict:
        logger.error(
            "persistence conflict - retry later",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=500, content="conflict")

    return Response(status_code=200, content=result.outcome.value)
