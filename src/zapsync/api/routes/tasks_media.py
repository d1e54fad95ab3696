"""Worker routes for media stabilization.

POST /tasks/media/stabilize - copy one message's media to object storage
POST /tasks/media/backfill  - re-run stabilization for pending messages

A stabilization that fails after its retries is acknowledged (200): the
message keeps its gateway URL and the backfill sweep picks it up later.
"""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, HTTPException, Request, Response

from zapsync.api.task_auth import verify_task_auth
from zapsync.observability.correlation import get_correlation_id
from zapsync.observability.logging import get_logger
from zapsync.observability.redaction import safe_log_context
from zapsync.services import inbox_service
from zapsync.tasks.contracts import InstanceSweepTask, StabilizeMediaTask

router = APIRouter(prefix="/tasks/media", tags=["tasks"])

logger = get_logger(__name__)


def submit_stabilization(payload: dict) -> None:
    """Inline task handler: stabilize on the background runner.

    The webhook request returns before the download finishes.
    """
    task = StabilizeMediaTask.from_dict(payload)
    message = inbox_service.load_message(task.instance_id, task.message_id)
    if message is None:
        return
    inbox_service.get_runner().submit(message)


def _authorize(request: Request, correlation_id: str | None) -> None:
    if not verify_task_auth(request):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/stabilize")
async def stabilize_media(request: Request) -> Response:
    """Stabilize one message's media.

    Returns:
        200 "ok", "not_found" or "failed"; 400 for an invalid payload.
    """
    correlation_id = get_correlation_id()
    _authorize(request, correlation_id)

    try:
        payload: dict[str, Any] = await request.json()
        task = StabilizeMediaTask.from_dict(payload)
    except (ValueError, AttributeError):
        logger.warning(
            "invalid stabilize payload",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid payload")

    message = await asyncio.to_thread(
        inbox_service.load_message, task.instance_id, task.message_id
    )
    if message is None:
        logger.warning(
            "stabilize target not found",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    instance_id=task.instance_id,
                    message_id=task.message_id,
                )
            },
        )
        return Response(status_code=200, content="not_found")

    # Fetches and backoff sleeps run for up to MEDIA_DEADLINE_SECONDS; keep them off the loop
    result = await asyncio.to_thread(inbox_service.get_stabilizer().stabilize_with_retry, message)
    return Response(status_code=200, content="ok" if result is not None else "failed")


@router.post("/backfill")
async def media_backfill(request: Request) -> dict:
    """Re-run stabilization for up to `limit` pending messages of an instance."""
    correlation_id = get_correlation_id()
    _authorize(request, correlation_id)

    try:
        payload: dict[str, Any] = await request.json()
        task = InstanceSweepTask.from_dict(payload)
    except (ValueError, AttributeError, TypeError):
        raise HTTPException(status_code=400, detail="invalid payload")

    report = await asyncio.to_thread(inbox_service.restabilize, task.instance_id, task.limit)
    logger.info(
        "media backfill finished",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                instance_id=task.instance_id,
                scanned=report.scanned,
                repaired=report.repaired,
                failed=report.failed,
            )
        },
    )
    return {"scanned": report.scanned, "repaired": report.repaired, "failed": report.failed}
