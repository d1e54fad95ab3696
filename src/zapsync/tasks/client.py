"""Tasks client with idempotent enqueue.

Backends, selected via TASKS_BACKEND:
- inline (default): runs the handler registered for the path in-process;
  scheduled tasks and paths without a handler are only recorded (tests
  inspect them)
- http: POSTs to the worker (WORKER_BASE_URL)
- cloud_tasks: creates a Google Cloud Task targeting the worker
"""

import os
from collections import OrderedDict, deque
from datetime import datetime
from typing import Protocol


TASKS_BACKEND = os.environ.get("TASKS_BACKEND", "inline")

# Module-level clients live as long as the process; older ids are forgotten
MAX_REMEMBERED_TASKS = 10_000


class TaskHandler(Protocol):
    def __call__(self, payload: dict) -> None: ...


class TasksClient:
    """Enqueue worker tasks; the same task_id is accepted once per client."""

    def __init__(
        self,
        backend: str | None = None,
        inline_handlers: dict[str, TaskHandler] | None = None,
    ) -> None:
        self._backend = backend or TASKS_BACKEND
        self._inline_handlers: dict[str, TaskHandler] = dict(inline_handlers or {})
        self._seen_ids: OrderedDict[str, None] = OrderedDict()
        self._recorded: deque[dict] = deque(maxlen=MAX_REMEMBERED_TASKS)

    @property
    def backend(self) -> str:
        return self._backend

    def register_inline(self, url_path: str, handler: TaskHandler) -> None:
        self._inline_handlers[url_path] = handler

    def enqueue_http(
        self,
        task_id: str,
        url_path: str,
        payload: dict,
        correlation_id: str | None = None,
        schedule_time: datetime | None = None,
    ) -> bool:
        """Enqueue a task for the worker route at url_path.

        Returns:
            True if enqueued; False if task_id was already seen by this
            client or the backend refused the task.

        Raises:
            ValueError: If TASKS_BACKEND is unknown.
        """
        if task_id in self._seen_ids:
            return False

        if self._backend == "inline":
            self._remember(task_id)
            handler = self._inline_handlers.get(url_path)
            if handler is not None and schedule_time is None:
                handler(payload)
                return True
            self._recorded.append({
                "task_id": task_id,
                "url_path": url_path,
                "payload": payload,
                "correlation_id": correlation_id,
                "schedule_time": schedule_time,
            })
            return True

        if self._backend == "http":
            from zapsync.tasks.http_backend import enqueue_http

            ok = enqueue_http(task_id, url_path, payload, correlation_id, schedule_time)
        elif self._backend == "cloud_tasks":
            from zapsync.tasks.cloud_tasks_backend import enqueue_cloud_task

            ok = enqueue_cloud_task(task_id, url_path, payload, correlation_id, schedule_time)
        else:
            raise ValueError(f"Unknown TASKS_BACKEND: {self._backend}")

        # A failed HTTP post may be retried with the same id
        if ok:
            self._remember(task_id)
        return ok

    def _remember(self, task_id: str) -> None:
        self._seen_ids[task_id] = None
        if len(self._seen_ids) > MAX_REMEMBERED_TASKS:
            self._seen_ids.popitem(last=False)

    def was_enqueued(self, task_id: str) -> bool:
        return task_id in self._seen_ids

    def get_recorded_tasks(self) -> list[dict]:
        """Scheduled or unhandled tasks accepted by the inline backend, in order."""
        return list(self._recorded)

    def clear(self) -> None:
        self._seen_ids.clear()
        self._recorded.clear()
