"""Error taxonomy for the inbound pipeline.

Only NormalizationError and PersistenceConflict ever reach a route handler.
ResolutionAmbiguity is handled inside the resolver; StabilizationError is
handled by the retry loop and never surfaces to the webhook.
"""

from __future__ import annotations

from enum import Enum


class NormalizationReason(str, Enum):
    UNSUPPORTED_EVENT_KIND = "unsupported_event_kind"
    MALFORMED_PAYLOAD = "malformed_payload"


class NormalizationError(Exception):
    """Raised when a gateway payload cannot become an InboundEvent.

    Callers acknowledge and drop; redelivering the same payload would fail
    the same way.
    """

    def __init__(self, reason: NormalizationReason, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class ResolutionAmbiguity(Exception):
    """Raised when an address pair cannot be linked unambiguously."""

    pass


class PersistenceConflict(Exception):
    """Raised by a store when a unique constraint rejects a write.

    The reconciler re-reads and retries the whole step a bounded number of
    times.
    """

    pass


class StabilizationReason(str, Enum):
    FETCH_EXPIRED = "fetch_expired"
    FETCH_FAILED = "fetch_failed"
    STORAGE_FAILED = "storage_failed"
    UNSUPPORTED_MEDIA_KIND = "unsupported_media_kind"


# Retrying these cannot succeed within the same invocation
_TERMINAL_REASONS = {
    StabilizationReason.FETCH_EXPIRED,
    StabilizationReason.UNSUPPORTED_MEDIA_KIND,
}


class StabilizationError(Exception):
    """Raised when media cannot be moved to durable storage."""

    def __init__(self, reason: StabilizationReason, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)

    @property
    def retryable(self) -> bool:
        return self.reason not in _TERMINAL_REASONS


class FetchExpired(Exception):
    """Gateway no longer serves the ephemeral URL (404/410/403)."""

    pass


class FetchFailed(Exception):
    """Transient gateway fetch failure (timeout, connection error, 5xx)."""

    pass


class StorageError(Exception):
    """Object storage rejected or failed an operation."""

    pass
