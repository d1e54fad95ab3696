"""Worker routes for conversation maintenance.

POST /tasks/conversations/merge-linked - merge conversations that were
opened under an alias address before its stable address was learned.
Only accepts requests with a valid task token.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from zapsync.api.task_auth import verify_task_auth
from zapsync.observability.correlation import get_correlation_id
from zapsync.observability.logging import get_logger
from zapsync.observability.redaction import safe_log_context
from zapsync.services import inbox_service
from zapsync.tasks.contracts import InstanceSweepTask

router = APIRouter(prefix="/tasks/conversations", tags=["tasks"])

logger = get_logger(__name__)


@router.post("/merge-linked")
async def merge_linked_task(request: Request) -> dict:
    """Merge every alias/stable conversation pair of one instance.

    Expected payload:
    - instance_id: Gateway instance (required)

    Returns:
        200 with {"scanned", "merged"}.
        400 if the payload is invalid.
        401 if task auth fails.
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
        task = InstanceSweepTask.from_dict(payload)
    except (ValueError, AttributeError, TypeError):
        logger.warning(
            "invalid merge-linked payload",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        raise HTTPException(status_code=400, detail="invalid payload")

    report = inbox_service.merge_linked(task.instance_id)
    return {"scanned": report.scanned, "merged": report.repaired}
