"""In-memory InboxStore for STORE_BACKEND=memory and for tests.

Every public method runs under one re-entrant lock, so each call is atomic
with respect to the others. merge_conversations stages its changes on
copies and swaps them in at the end: a failure part-way leaves the store
exactly as it was.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone

from zapsync.domain.conversations import preview_text
from zapsync.domain.errors import PersistenceConflict
from zapsync.domain.models import Conversation, Message, NewMessage
from zapsync.infra.time import utc_now
from zapsync.whatsapp.models import MEDIA_KINDS

_MEDIA_KIND_VALUES = {kind.value for kind in MEDIA_KINDS}

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _by_timestamp(message: Message) -> datetime:
    return message.timestamp or _EPOCH


class InMemoryInboxStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._conversations: dict[str, Conversation] = {}
        self._conversation_index: dict[tuple[str, str], str] = {}
        self._messages: dict[str, Message] = {}
        self._message_index: dict[tuple[str, str], str] = {}
        self._aliases: dict[tuple[str, str], str] = {}

    # ── Alias table ───────────────────────────────────────────────────────────

    def get_alias(self, instance_id: str, alias: str) -> str | None:
        with self._lock:
            return self._aliases.get((instance_id, alias))

    def put_alias(self, instance_id: str, alias: str, stable: str) -> str | None:
        with self._lock:
            previous = self._aliases.get((instance_id, alias))
            self._aliases[(instance_id, alias)] = stable
            return previous

    def list_aliases(self, instance_id: str) -> list[tuple[str, str]]:
        with self._lock:
            return sorted(
                (alias, stable)
                for (instance, alias), stable in self._aliases.items()
                if instance == instance_id
            )

    # ── Conversations ─────────────────────────────────────────────────────────

    def find_conversation(self, instance_id: str, address: str) -> Conversation | None:
        with self._lock:
            conversation_id = self._conversation_index.get((instance_id, address))
            return self._conversations.get(conversation_id) if conversation_id else None

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise KeyError(f"conversation not found: {conversation_id}")
        return conversation

    def _save(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = conversation
        return conversation

    def create_conversation(
        self,
        instance_id: str,
        address: str,
        *,
        is_group: bool,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> Conversation:
        with self._lock:
            if (instance_id, address) in self._conversation_index:
                raise PersistenceConflict("conversation already exists for address")
            now = utc_now()
            conversation = Conversation(
                id=str(uuid.uuid4()),
                instance_id=instance_id,
                address=address,
                is_group=is_group,
                display_name=display_name,
                avatar_url=avatar_url,
                created_at=now,
                updated_at=now,
            )
            self._conversation_index[(instance_id, address)] = conversation.id
            return self._save(conversation)

    def update_conversation_preview(
        self,
        conversation_id: str,
        preview: str | None,
        timestamp: datetime | None,
        unread_delta: int,
        *,
        reset_unread: bool = False,
    ) -> Conversation:
        with self._lock:
            current = self._require(conversation_id)
            newer = timestamp is not None and (
                current.last_message_at is None or timestamp >= current.last_message_at
            )
            unread = 0 if (reset_unread and newer) else current.unread_count + unread_delta
            return self._save(
                replace(
                    current,
                    last_message=preview if newer else current.last_message,
                    last_message_at=timestamp if newer else current.last_message_at,
                    unread_count=unread,
                    updated_at=utc_now(),
                )
            )

    def update_conversation_profile(
        self,
        conversation_id: str,
        *,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> Conversation:
        with self._lock:
            current = self._require(conversation_id)
            return self._save(
                replace(
                    current,
                    display_name=display_name if display_name is not None else current.display_name,
                    avatar_url=avatar_url if avatar_url is not None else current.avatar_url,
                    updated_at=utc_now(),
                )
            )

    def rekey_conversation(self, conversation_id: str, address: str) -> Conversation:
        with self._lock:
            current = self._require(conversation_id)
            key = (current.instance_id, address)
            if self._conversation_index.get(key, conversation_id) != conversation_id:
                raise PersistenceConflict("target address already has a conversation")
            del self._conversation_index[(current.instance_id, current.address)]
            self._conversation_index[key] = conversation_id
            return self._save(replace(current, address=address, updated_at=utc_now()))

    def _recompute_preview(
        self, winner: Conversation, messages: list[Message]
    ) -> tuple[str | None, datetime | None]:
        if not messages:
            return winner.last_message, winner.last_message_at
        latest = max(messages, key=_by_timestamp)
        return (
            preview_text(latest.kind, latest.text),
            latest.timestamp or winner.last_message_at,
        )

    def merge_conversations(self, loser_id: str, winner_id: str) -> Conversation:
        with self._lock:
            loser = self._require(loser_id)
            winner = self._require(winner_id)

            # Stage: nothing below touches shared state until the swap
            moved = {
                pk: replace(message, conversation_id=winner_id)
                for pk, message in self._messages.items()
                if message.conversation_id == loser_id
            }
            merged_messages = [
                message
                for message in self._messages.values()
                if message.conversation_id == winner_id
            ] + list(moved.values())
            last_message, last_message_at = self._recompute_preview(winner, merged_messages)
            merged = replace(
                winner,
                display_name=winner.display_name or loser.display_name,
                avatar_url=winner.avatar_url or loser.avatar_url,
                unread_count=winner.unread_count + loser.unread_count,
                last_message=last_message,
                last_message_at=last_message_at,
                updated_at=utc_now(),
            )

            # Swap
            self._messages.update(moved)
            del self._conversation_index[(loser.instance_id, loser.address)]
            del self._conversations[loser_id]
            return self._save(merged)

    # ── Messages ──────────────────────────────────────────────────────────────

    def list_messages(self, conversation_id: str) -> list[Message]:
        with self._lock:
            messages = [
                m for m in self._messages.values() if m.conversation_id == conversation_id
            ]
        return sorted(messages, key=_by_timestamp)

    def get_message(self, instance_id: str, message_id: str) -> Message | None:
        with self._lock:
            pk = self._message_index.get((instance_id, message_id))
            return self._messages.get(pk) if pk else None

    def create_message(self, message: NewMessage) -> tuple[Message, bool]:
        with self._lock:
            key = (message.instance_id, message.message_id)
            existing_pk = self._message_index.get(key)
            if existing_pk is not None:
                return self._messages[existing_pk], False
            if message.conversation_id not in self._conversations:
                raise KeyError(f"conversation not found: {message.conversation_id}")
            stored = Message(id=str(uuid.uuid4()), **vars(message))
            self._messages[stored.id] = stored
            self._message_index[key] = stored.id
            return stored, True

    def update_message_media(self, message_pk: str, url: str) -> Message:
        with self._lock:
            current = self._messages.get(message_pk)
            if current is None:
                raise KeyError(f"message not found: {message_pk}")
            updated = replace(current, media_url=url, media_stabilized=True)
            self._messages[message_pk] = updated
            return updated

    def list_pending_media(self, instance_id: str, limit: int) -> list[Message]:
        with self._lock:
            pending = [
                m
                for m in self._messages.values()
                if m.instance_id == instance_id
                and m.media_url is not None
                and not m.media_stabilized
                and m.kind in _MEDIA_KIND_VALUES
            ]
        return pending[:limit]
