"""Conversation reconciliation - find-or-create, preview upkeep and merges.

One Conversation per (instance_id, canonical address). Callers hold the
exclusion scope for every address they pass in; the store only guarantees
uniqueness, not ordering.

NO message text is logged. Only ids and masked addresses.
"""

from __future__ import annotations

from datetime import datetime

from zapsync.infra.time import utc_now
from zapsync.observability.logging import get_logger
from zapsync.observability.redaction import mask_address, safe_log_context
from zapsync.whatsapp.models import InboundEvent, MessageKind

from .addresses import is_group_canonical
from .errors import PersistenceConflict
from .models import Conversation
from .ports import InboxStore

logger = get_logger(__name__)

# Bounded re-read/retry when a concurrent create wins the unique constraint
MAX_CONFLICT_ATTEMPTS = 3

PREVIEW_MAX_CHARS = 200

_PREVIEW_PLACEHOLDERS: dict[str, str] = {
    MessageKind.IMAGE.value: "[Image]",
    MessageKind.VIDEO.value: "[Video]",
    MessageKind.AUDIO.value: "[Audio]",
    MessageKind.STICKER.value: "[Sticker]",
    MessageKind.DOCUMENT.value: "[Document]",
    MessageKind.UNSUPPORTED.value: "[Message]",
}


def preview_text(kind: MessageKind | str | None, text: str | None) -> str | None:
    """Denormalized one-line preview for the conversation list.

    Text (or caption) wins; media without caption gets a placeholder.
    """
    if text:
        return text[:PREVIEW_MAX_CHARS]
    if kind is None:
        return None
    key = kind.value if isinstance(kind, MessageKind) else kind
    return _PREVIEW_PLACEHOLDERS.get(key)


class ConversationReconciler:
    def __init__(self, store: InboxStore) -> None:
        self._store = store

    def find_or_create(
        self,
        instance_id: str,
        canonical: str,
        *,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> tuple[Conversation, bool]:
        """Return (conversation, created).

        Raises:
            PersistenceConflict: create kept losing the race after
                MAX_CONFLICT_ATTEMPTS re-reads.
        """
        for attempt in range(1, MAX_CONFLICT_ATTEMPTS + 1):
            existing = self._store.find_conversation(instance_id, canonical)
            if existing is not None:
                return existing, False
            try:
                created = self._store.create_conversation(
                    instance_id,
                    canonical,
                    is_group=is_group_canonical(canonical),
                    display_name=display_name,
                    avatar_url=avatar_url,
                )
            except PersistenceConflict:
                logger.info(
                    "conversation create conflict - re-reading",
                    extra={
                        "extra_fields": safe_log_context(
                            instance_id=instance_id,
                            address=mask_address(canonical),
                            attempt=attempt,
                        )
                    },
                )
                continue
            return created, True

        raise PersistenceConflict(
            f"conversation create kept conflicting after {MAX_CONFLICT_ATTEMPTS} attempts"
        )

    def reconcile(
        self, instance_id: str, canonical: str, event: InboundEvent
    ) -> Conversation:
        """Apply one message event to its conversation.

        - absent: created, display name seeded from an inbound 1:1 push name
        - preview moves only when the event is newer than the stored one
        - inbound increments unread; a newer outbound message resets it

        Args:
            instance_id: Gateway instance.
            canonical: Canonical address from the identity resolver.
            event: Normalized message event.

        Returns:
            The conversation after the update.
        """
        is_group = is_group_canonical(canonical)
        seed_name = None
        if not event.from_me and not is_group and event.push_name:
            seed_name = event.push_name

        conversation, created = self.find_or_create(
            instance_id, canonical, display_name=seed_name
        )

        # A missing gateway timestamp means "just received"
        timestamp: datetime = event.timestamp or utc_now()

        updated = self._store.update_conversation_preview(
            conversation.id,
            preview_text(event.message_kind, event.text),
            timestamp,
            0 if event.from_me else 1,
            reset_unread=event.from_me,
        )

        logger.info(
            "conversation reconciled",
            extra={
                "extra_fields": safe_log_context(
                    instance_id=instance_id,
                    conversation_id=updated.id,
                    address=mask_address(canonical),
                    created=created,
                    from_me=event.from_me,
                    unread_count=updated.unread_count,
                )
            },
        )
        return updated

    def merge_on_discovery(
        self, instance_id: str, alias_address: str, stable_address: str
    ) -> Conversation | None:
        """Fold the alias conversation into the stable one after a new link.

        - both exist: atomic merge, the stable-address conversation survives
        - only the alias exists: re-keyed to the stable address
        - otherwise: nothing to do

        Returns:
            The surviving conversation, or None when nothing changed.
        """
        if alias_address == stable_address:
            return None

        alias_conv = self._store.find_conversation(instance_id, alias_address)
        if alias_conv is None:
            return None

        stable_conv = self._store.find_conversation(instance_id, stable_address)
        context = safe_log_context(
            instance_id=instance_id,
            alias=mask_address(alias_address),
            stable=mask_address(stable_address),
            loser_id=alias_conv.id,
        )

        if stable_conv is None:
            rekeyed = self._store.rekey_conversation(alias_conv.id, stable_address)
            logger.info("alias conversation re-keyed", extra={"extra_fields": context})
            return rekeyed

        if stable_conv.id == alias_conv.id:
            return None

        winner = self._store.merge_conversations(alias_conv.id, stable_conv.id)
        logger.info(
            "conversations merged",
            extra={"extra_fields": safe_log_context(**context, winner_id=winner.id)},
        )
        return winner

    def apply_profile(
        self,
        instance_id: str,
        canonical: str,
        *,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> Conversation | None:
        """Refresh name/avatar of an existing conversation. Never creates one."""
        if display_name is None and avatar_url is None:
            return None
        conversation = self._store.find_conversation(instance_id, canonical)
        if conversation is None:
            return None
        return self._store.update_conversation_profile(
            conversation.id, display_name=display_name, avatar_url=avatar_url
        )
