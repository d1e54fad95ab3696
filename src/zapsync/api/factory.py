"""FastAPI application factory with role-based route mounting.

public: gateway webhook receiver (acks fast, enqueues handle-event tasks)
worker: webhook plus the task routes that persist, stabilize and repair
"""

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Literal, get_args

from fastapi import FastAPI, Request, Response

from zapsync.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from zapsync.observability.logging import get_logger
from zapsync.observability.redaction import safe_log_context
from zapsync.services import inbox_service

from .routers import public, worker
from .routes import tasks_conversations, tasks_media, tasks_whatsapp, webhooks_whatsapp

AppRole = Literal["public", "worker"]

logger = get_logger(__name__)


def _lifespan_for(role: str):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "zapsync starting",
            extra={"extra_fields": safe_log_context(role=role, **inbox_service.describe())},
        )
        yield
        # Pending stabilizations are abandoned; the media backfill picks them up
        inbox_service.shutdown_runner()
        logger.info("zapsync stopped", extra={"extra_fields": safe_log_context(role=role)})

    return lifespan


def create_app(role: AppRole | None = None) -> FastAPI:
    """Create FastAPI app with routes based on APP_ROLE.

    Args:
        role: Explicit role override. If None, reads from APP_ROLE env var.
              Defaults to "public" if env var is not set.

    Raises:
        ValueError: For a role other than public/worker.
    """
    if role is None:
        role = os.environ.get("APP_ROLE", "public")  # type: ignore[assignment]
    if role not in get_args(AppRole):
        raise ValueError(f"Unknown APP_ROLE: {role}")

    app = FastAPI(
        title=f"zapsync ({role})",
        docs_url=None,
        redoc_url=None,
        lifespan=_lifespan_for(role),
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        # Cloud Tasks deliveries carry the ID of the webhook that enqueued them
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    app.include_router(public.router)
    app.include_router(webhooks_whatsapp.router)

    if role == "worker":
        app.include_router(worker.router)
        app.include_router(tasks_whatsapp.router)
        app.include_router(tasks_media.router)
        app.include_router(tasks_conversations.router)

    return app
