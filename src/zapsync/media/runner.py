"""Background execution of media stabilization for the inline task backend.

Each submitted message runs stabilize_with_retry on a worker thread. The
caller's correlation ID is re-bound on the thread so log lines still join
up with the webhook that produced the message.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor

from zapsync.domain.models import Message
from zapsync.observability.correlation import correlation_scope, get_correlation_id

from .stabilizer import MediaStabilizer, StabilizedMedia


class StabilizationRunner:
    def __init__(self, stabilizer: MediaStabilizer, max_workers: int = 4) -> None:
        self._stabilizer = stabilizer
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="media-stabilize"
        )
        self._cancel = threading.Event()

    def _run(self, message: Message, correlation_id: str) -> StabilizedMedia | None:
        with correlation_scope(correlation_id):
            return self._stabilizer.stabilize_with_retry(message, cancel=self._cancel)

    def submit(self, message: Message) -> Future[StabilizedMedia | None]:
        return self._executor.submit(self._run, message, get_correlation_id())

    def shutdown(self, *, cancel: bool = True, wait: bool = True) -> None:
        """Stop accepting work; with cancel, pending retries end at their next wait."""
        if cancel:
            self._cancel.set()
        self._executor.shutdown(wait=wait, cancel_futures=cancel)
