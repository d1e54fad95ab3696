"""Per-event orchestration: resolve, reconcile, persist.

The pipeline works on one InboundEvent with an injected store and exclusion
scope. It never schedules media work itself: the caller reads
PipelineResult.needs_stabilization after the scope (and, for Postgres, the
transaction) has closed and enqueues stabilization from there.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

from zapsync.observability.logging import get_logger
from zapsync.observability.redaction import safe_log_context
from zapsync.whatsapp.models import MEDIA_KINDS, EventKind, InboundEvent, MessageKind

from .addresses import AddressKind, parse_address
from .conversations import ConversationReconciler
from .identity import IdentityResolver
from .models import AliasLink, Message, NewMessage
from .ports import ExclusionScope, InboxStore

logger = get_logger(__name__)

# Rounds of widening the held keys before settling on the union
MAX_LOCK_ROUNDS = 3


class Outcome(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    LINKED = "linked"
    PROFILE_UPDATED = "profile_updated"


@dataclass(frozen=True)
class PipelineResult:
    outcome: Outcome
    conversation_id: str | None = None
    message: Message | None = None
    links: tuple[AliasLink, ...] = ()

    @property
    def needs_stabilization(self) -> bool:
        message = self.message
        return (
            self.outcome is Outcome.CREATED
            and message is not None
            and message.kind in {k.value for k in MEDIA_KINDS}
            and message.media_url is not None
            and not message.media_stabilized
        )


class EventPipeline:
    """Handle one normalized event against one store."""

    def __init__(
        self,
        store: InboxStore,
        scope: ExclusionScope,
        *,
        default_area_code: str | None = None,
    ) -> None:
        self._store = store
        self._scope = scope
        self.resolver = IdentityResolver(store, default_area_code)
        self.reconciler = ConversationReconciler(store)

    def handle(self, event: InboundEvent) -> PipelineResult:
        if event.is_message:
            return self._handle_message(event)
        if event.kind is EventKind.MESSAGES_UPDATE:
            return self._handle_update(event)
        if event.kind is EventKind.CONTACTS_UPDATE:
            return self._handle_contact(event)
        return PipelineResult(Outcome.IGNORED)

    def _pairs(self, event: InboundEvent) -> list[tuple[str, str | None]]:
        pairs: list[tuple[str, str | None]] = []
        if event.sender:
            pairs.append((event.sender, event.sender_alias))
        if event.participant:
            pairs.append((event.participant, event.participant_alias))
        return pairs

    def _lock_keys(self, instance_id: str, pairs: list[tuple[str, str | None]]) -> set[str]:
        keys: set[str] = set()
        for raw, raw_alias in pairs:
            keys |= self.resolver.lock_keys(instance_id, raw, raw_alias)
        return keys

    @contextmanager
    def _hold(self, instance_id: str, pairs: list[tuple[str, str | None]]) -> Iterator[None]:
        """Hold every key the pairs resolve to, re-checked once the scope is held.

        A link committed by a concurrent delivery between computing the keys
        and acquiring them can move the canonical address outside the held
        set; the scope is then re-entered with the union.
        """
        keys = self._lock_keys(instance_id, pairs)
        for _ in range(MAX_LOCK_ROUNDS):
            with self._scope.hold(instance_id, keys):
                current = self._lock_keys(instance_id, pairs)
                if current <= keys:
                    yield
                    return
            keys = keys | current
        with self._scope.hold(instance_id, keys):
            yield

    def _learn_and_merge(
        self, instance_id: str, pairs: list[tuple[str, str | None]]
    ) -> tuple[AliasLink, ...]:
        links: list[AliasLink] = []
        for raw, raw_alias in pairs:
            link = self.resolver.learn(instance_id, raw, raw_alias)
            if link is None:
                continue
            self.reconciler.merge_on_discovery(instance_id, link.alias, link.stable)
            links.append(link)
        return tuple(links)

    def _handle_message(self, event: InboundEvent) -> PipelineResult:
        instance_id = event.instance_id
        # status@broadcast, newsletters: nothing to reconcile against
        if (
            event.sender is None
            or event.message_id is None
            or parse_address(event.sender).kind is AddressKind.OTHER
        ):
            logger.info(
                "message from unsupported address kind ignored",
                extra={"extra_fields": safe_log_context(instance_id=instance_id)},
            )
            return PipelineResult(Outcome.IGNORED)

        pairs = self._pairs(event)

        with self._hold(instance_id, pairs):
            links = self._learn_and_merge(instance_id, pairs)

            existing = self._store.get_message(instance_id, event.message_id)
            if existing is not None:
                logger.info(
                    "duplicate message ignored",
                    extra={
                        "extra_fields": safe_log_context(
                            instance_id=instance_id,
                            message_id=event.message_id,
                        )
                    },
                )
                return PipelineResult(
                    Outcome.DUPLICATE,
                    conversation_id=existing.conversation_id,
                    message=existing,
                    links=links,
                )

            canonical = self.resolver.resolve(instance_id, event.sender, event.sender_alias)
            conversation = self.reconciler.reconcile(instance_id, canonical, event)

            if event.participant:
                sender_address: str | None = self.resolver.resolve(
                    instance_id, event.participant, event.participant_alias
                )
            else:
                sender_address = None if event.from_me else canonical

            media = event.media if event.has_media else None
            kind = event.message_kind or MessageKind.UNSUPPORTED
            message, created = self._store.create_message(
                NewMessage(
                    instance_id=instance_id,
                    message_id=event.message_id,
                    conversation_id=conversation.id,
                    from_me=event.from_me,
                    kind=kind.value,
                    sender_address=sender_address,
                    timestamp=event.timestamp,
                    text=event.text,
                    media_url=media.url if media else None,
                    media_mime_type=media.mime_type if media else None,
                    media_key=media.media_key if media else None,
                    media_file_name=media.file_name if media else None,
                )
            )

        logger.info(
            "message persisted",
            extra={
                "extra_fields": safe_log_context(
                    instance_id=instance_id,
                    message_id=event.message_id,
                    conversation_id=conversation.id,
                    kind=kind.value,
                    created=created,
                )
            },
        )
        return PipelineResult(
            Outcome.CREATED if created else Outcome.DUPLICATE,
            conversation_id=conversation.id,
            message=message,
            links=links,
        )

    def _handle_update(self, event: InboundEvent) -> PipelineResult:
        # Delivery/read status is not tracked; only the address pair matters
        if not event.sender or not event.sender_alias:
            return PipelineResult(Outcome.IGNORED)

        pairs = self._pairs(event)
        with self._hold(event.instance_id, pairs):
            links = self._learn_and_merge(event.instance_id, pairs)

        if not links:
            return PipelineResult(Outcome.IGNORED)
        return PipelineResult(Outcome.LINKED, links=links)

    def _handle_contact(self, event: InboundEvent) -> PipelineResult:
        if not event.sender:
            return PipelineResult(Outcome.IGNORED)

        instance_id = event.instance_id
        pairs = self._pairs(event)
        with self._hold(instance_id, pairs):
            links = self._learn_and_merge(instance_id, pairs)
            canonical = self.resolver.resolve(instance_id, event.sender, event.sender_alias)
            conversation = self.reconciler.apply_profile(
                instance_id,
                canonical,
                display_name=event.push_name or None,
                avatar_url=event.avatar_url or None,
            )

        if conversation is None:
            outcome = Outcome.LINKED if links else Outcome.IGNORED
            return PipelineResult(outcome, links=links)
        return PipelineResult(
            Outcome.PROFILE_UPDATED, conversation_id=conversation.id, links=links
        )
