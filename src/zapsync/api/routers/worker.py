"""Worker/internal routes (APP_ROLE=worker)."""

from fastapi import APIRouter

from zapsync.services import inbox_service
from zapsync.tasks.client import TASKS_BACKEND

router = APIRouter()


@router.get("/tasks/health")
def tasks_health() -> dict:
    """Task delivery health: which backend follow-up tasks go through."""
    return {"status": "ok", "subsystem": "tasks", "backend": TASKS_BACKEND}


@router.get("/internal/health")
def internal_health() -> dict:
    """Inbox health: persistence, media storage and the stabilization runner."""
    return {"status": "ok", "subsystem": "internal", **inbox_service.describe()}
