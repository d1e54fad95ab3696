"""Repair operations over existing data.

Both operations go through the same reconciler/stabilizer contracts the live
pipeline uses, so running them twice is harmless.
"""

from __future__ import annotations

from contextlib import nullcontext
from dataclasses import dataclass
from typing import TYPE_CHECKING

from zapsync.observability.logging import get_logger
from zapsync.observability.redaction import safe_log_context

from .conversations import ConversationReconciler
from .ports import ExclusionScope, InboxStore

if TYPE_CHECKING:
    from zapsync.media.stabilizer import MediaStabilizer, StoreSession

logger = get_logger(__name__)

DEFAULT_BACKFILL_LIMIT = 100


@dataclass(frozen=True)
class BackfillReport:
    scanned: int
    repaired: int
    failed: int = 0


def restabilize_pending(
    session: StoreSession,
    stabilizer: MediaStabilizer,
    instance_id: str,
    limit: int = DEFAULT_BACKFILL_LIMIT,
) -> BackfillReport:
    """Retry stabilization for messages still pointing at gateway URLs.

    The listing session is closed before the first fetch: downloads and
    backoff sleeps never run inside a transaction.
    """
    with session() as store:
        pending = store.list_pending_media(instance_id, limit)
    repaired = 0
    failed = 0
    for message in pending:
        if stabilizer.stabilize_with_retry(message) is None:
            failed += 1
        else:
            repaired += 1

    report = BackfillReport(scanned=len(pending), repaired=repaired, failed=failed)
    logger.info(
        "media backfill finished",
        extra={
            "extra_fields": safe_log_context(
                instance_id=instance_id,
                scanned=report.scanned,
                repaired=report.repaired,
                failed=report.failed,
            )
        },
    )
    return report


def merge_linked_conversations(
    store: InboxStore,
    reconciler: ConversationReconciler,
    instance_id: str,
    *,
    scope: ExclusionScope | None = None,
) -> BackfillReport:
    """Merge alias conversations whose link was learned before merges existed."""
    aliases = store.list_aliases(instance_id)
    repaired = 0
    for alias, stable in aliases:
        hold = scope.hold(instance_id, {alias, stable}) if scope else nullcontext()
        with hold:
            if reconciler.merge_on_discovery(instance_id, alias, stable) is not None:
                repaired += 1

    report = BackfillReport(scanned=len(aliases), repaired=repaired)
    logger.info(
        "conversation merge backfill finished",
        extra={
            "extra_fields": safe_log_context(
                instance_id=instance_id,
                scanned=report.scanned,
                repaired=report.repaired,
            )
        },
    )
    return report
