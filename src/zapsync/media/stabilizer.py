"""Media stabilization - move gateway media to durable storage.

Gateway media URLs expire within hours. Once a message is persisted, its
media is fetched, decrypted when it came from the WhatsApp CDN, normalized
and uploaded under a key derived from the message id, then the message is
rewritten to point at the durable copy.

Runs outside any exclusion scope and never inside the webhook request.
Failure leaves the message on its ephemeral URL for the backfill sweep.
"""

from __future__ import annotations

import os
import re
import threading
import time
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Callable, Iterator

from zapsync.domain.errors import (
    FetchExpired,
    FetchFailed,
    StabilizationError,
    StabilizationReason,
    StorageError,
)
from zapsync.domain.models import Message
from zapsync.domain.ports import InboxStore, MediaFetcher, ObjectStorage
from zapsync.observability.logging import get_logger
from zapsync.observability.redaction import safe_log_context
from zapsync.whatsapp.models import MEDIA_KINDS

from .decrypt import DecryptionError, decrypt_media, needs_decryption
from .fetch import MEDIA_FETCH_TIMEOUT
from .transcode import candidate_extensions, transcode

logger = get_logger(__name__)

MEDIA_MAX_ATTEMPTS = int(os.environ.get("MEDIA_MAX_ATTEMPTS", "5"))
MEDIA_DEADLINE_SECONDS = float(os.environ.get("MEDIA_DEADLINE_SECONDS", "120"))
BACKOFF_BASE_SECONDS = 0.5
BACKOFF_MAX_SECONDS = 8.0

_MEDIA_KIND_VALUES = {kind.value for kind in MEDIA_KINDS}
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_-]")

# Opens a short store session (a txn() for Postgres) per write
StoreSession = Callable[[], AbstractContextManager[InboxStore]]


@dataclass(frozen=True)
class StabilizedMedia:
    url: str
    key: str | None
    content_type: str | None = None
    reused: bool = False


def backoff_delays(base: float, cap: float) -> Iterator[float]:
    """Exponential delays: base, 2*base, 4*base, ... capped at cap."""
    delay = base
    while True:
        yield delay
        delay = min(delay * 2, cap)


def storage_key(message: Message, extension: str) -> str:
    """incoming/<instance>/<kind>/<message_id><ext>, stable across retries."""
    instance = _UNSAFE_KEY_CHARS.sub("_", message.instance_id)
    message_id = _UNSAFE_KEY_CHARS.sub("_", message.message_id)
    return f"incoming/{instance}/{message.kind}/{message_id}{extension}"


class MediaStabilizer:
    def __init__(
        self,
        storage: ObjectStorage,
        fetcher: MediaFetcher,
        session: StoreSession,
        *,
        fetch_timeout: float = MEDIA_FETCH_TIMEOUT,
        max_attempts: int = MEDIA_MAX_ATTEMPTS,
        deadline_seconds: float = MEDIA_DEADLINE_SECONDS,
        base_delay: float = BACKOFF_BASE_SECONDS,
        max_delay: float = BACKOFF_MAX_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._storage = storage
        self._fetcher = fetcher
        self._session = session
        self._fetch_timeout = fetch_timeout
        self._max_attempts = max_attempts
        self._deadline_seconds = deadline_seconds
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep

    def _record(
        self,
        message: Message,
        url: str,
        key: str | None,
        content_type: str | None,
        *,
        reused: bool,
    ) -> StabilizedMedia:
        with self._session() as store:
            store.update_message_media(message.id, url)
        logger.info(
            "media stabilized",
            extra={
                "extra_fields": safe_log_context(
                    instance_id=message.instance_id,
                    message_id=message.message_id,
                    kind=message.kind,
                    key=key,
                    reused=reused,
                )
            },
        )
        return StabilizedMedia(url=url, key=key, content_type=content_type, reused=reused)

    def _existing_key(self, message: Message) -> str | None:
        try:
            for extension in candidate_extensions(
                message.kind, message.media_mime_type, message.media_file_name
            ):
                key = storage_key(message, extension)
                if self._storage.exists(key):
                    return key
        except StorageError as e:
            raise StabilizationError(StabilizationReason.STORAGE_FAILED, str(e)) from e
        return None

    def _download(self, message: Message, url: str, timeout: float) -> bytes:
        try:
            payload = self._fetcher.fetch(url, timeout=timeout)
        except FetchExpired as e:
            raise StabilizationError(StabilizationReason.FETCH_EXPIRED, str(e)) from e
        except FetchFailed as e:
            raise StabilizationError(StabilizationReason.FETCH_FAILED, str(e)) from e

        if needs_decryption(url, message.media_key):
            try:
                payload = decrypt_media(payload, message.media_key or "", message.kind)
            except DecryptionError as e:
                # A truncated download fails the MAC too; worth another fetch
                raise StabilizationError(StabilizationReason.FETCH_FAILED, str(e)) from e
        return payload

    def stabilize(self, message: Message, *, timeout: float | None = None) -> StabilizedMedia:
        """Run one stabilization attempt.

        No-op when the message already points into durable storage; when the
        object for this message already exists only the reference is
        rewritten, so a retried or redelivered call never uploads twice.

        Raises:
            StabilizationError: FETCH_EXPIRED, FETCH_FAILED, STORAGE_FAILED
                or UNSUPPORTED_MEDIA_KIND.
        """
        url = message.media_url
        if message.kind not in _MEDIA_KIND_VALUES or not url:
            raise StabilizationError(
                StabilizationReason.UNSUPPORTED_MEDIA_KIND, message.kind
            )

        if message.media_stabilized or self._storage.owns_url(url):
            return StabilizedMedia(
                url=url, key=None, content_type=message.media_mime_type, reused=True
            )

        existing = self._existing_key(message)
        if existing is not None:
            return self._record(
                message,
                self._storage.url_for(existing),
                existing,
                message.media_mime_type,
                reused=True,
            )

        payload = self._download(message, url, timeout or self._fetch_timeout)
        result = transcode(
            message.kind, payload, message.media_mime_type, message.media_file_name
        )
        key = storage_key(message, result.extension)
        try:
            durable_url = self._storage.put(key, result.data, result.content_type)
        except StorageError as e:
            raise StabilizationError(StabilizationReason.STORAGE_FAILED, str(e)) from e

        return self._record(message, durable_url, key, result.content_type, reused=False)

    def stabilize_with_retry(
        self, message: Message, cancel: threading.Event | None = None
    ) -> StabilizedMedia | None:
        """Retry stabilize() with exponential backoff inside an overall deadline.

        Returns:
            StabilizedMedia on success; None after a terminal failure, an
            exhausted attempt budget, the deadline or cancellation. The
            message then keeps its original reference.
        """
        started = time.monotonic()
        deadline = started + self._deadline_seconds
        delays = backoff_delays(self._base_delay, self._max_delay)
        context = safe_log_context(
            instance_id=message.instance_id,
            message_id=message.message_id,
            kind=message.kind,
        )

        for attempt in range(1, self._max_attempts + 1):
            if cancel is not None and cancel.is_set():
                logger.info("media stabilization cancelled", extra={"extra_fields": context})
                return None

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break

            try:
                return self.stabilize(message, timeout=min(self._fetch_timeout, remaining))
            except StabilizationError as e:
                failure = safe_log_context(**context, attempt=attempt, reason=e.reason.value)
                if not e.retryable:
                    logger.warning(
                        "media stabilization failed permanently",
                        extra={"extra_fields": failure},
                    )
                    return None
                if attempt == self._max_attempts:
                    break
                logger.info("media stabilization retrying", extra={"extra_fields": failure})
            except Exception:
                logger.exception("media stabilization crashed", extra={"extra_fields": context})
                return None

            delay = next(delays)
            if time.monotonic() + delay > deadline:
                break
            if cancel is not None:
                if cancel.wait(delay):
                    logger.info("media stabilization cancelled", extra={"extra_fields": context})
                    return None
            else:
                self._sleep(delay)

        logger.warning(
            "media stabilization gave up",
            extra={
                "extra_fields": safe_log_context(
                    **context, elapsed_seconds=round(time.monotonic() - started, 1)
                )
            },
        )
        return None
