"""Interfaces the pipeline consumes.

Concrete stores live in zapsync.infra.repositories, storage in
zapsync.infra.object_storage, the fetcher in zapsync.media.fetch.
Components receive these explicitly; nothing reaches for a global client.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Iterable, Protocol

from .models import Conversation, Message, NewMessage


class AliasStore(Protocol):
    """Persistent alias table: opaque alias address -> stable address."""

    def get_alias(self, instance_id: str, alias: str) -> str | None: ...

    def put_alias(self, instance_id: str, alias: str, stable: str) -> str | None:
        """Store the mapping; return the previous stable address, if any."""
        ...

    def list_aliases(self, instance_id: str) -> list[tuple[str, str]]: ...


class InboxStore(AliasStore, Protocol):
    """Conversation and message persistence.

    Implementations raise PersistenceConflict when a unique constraint
    rejects create_conversation.
    """

    def find_conversation(self, instance_id: str, address: str) -> Conversation | None: ...

    def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    def create_conversation(
        self,
        instance_id: str,
        address: str,
        *,
        is_group: bool,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> Conversation: ...

    def update_conversation_preview(
        self,
        conversation_id: str,
        preview: str | None,
        timestamp: datetime | None,
        unread_delta: int,
        *,
        reset_unread: bool = False,
    ) -> Conversation:
        """Apply a message to the denormalized summary.

        The preview only moves forward: a timestamp older than the stored
        last_message_at leaves preview and reset_unread untouched.
        """
        ...

    def update_conversation_profile(
        self,
        conversation_id: str,
        *,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> Conversation: ...

    def rekey_conversation(self, conversation_id: str, address: str) -> Conversation: ...

    def merge_conversations(self, loser_id: str, winner_id: str) -> Conversation:
        """Atomically move every message to winner, delete loser, recompute
        winner's preview. Either all of it is visible or none of it."""
        ...

    def list_messages(self, conversation_id: str) -> list[Message]: ...

    def get_message(self, instance_id: str, message_id: str) -> Message | None: ...

    def create_message(self, message: NewMessage) -> tuple[Message, bool]:
        """Insert idempotently by (instance_id, message_id).

        Returns (message, created). A redelivered message returns the stored
        row with created=False.
        """
        ...

    def update_message_media(self, message_pk: str, url: str) -> Message: ...

    def list_pending_media(self, instance_id: str, limit: int) -> list[Message]: ...


class ExclusionScope(Protocol):
    """Serializes work per (instance, canonical address)."""

    def hold(
        self, instance_id: str, keys: Iterable[str]
    ) -> AbstractContextManager[None]: ...


class ObjectStorage(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Upload and return the public URL."""
        ...

    def exists(self, key: str) -> bool: ...

    def url_for(self, key: str) -> str: ...

    def owns_url(self, url: str) -> bool:
        """True when url already points into this storage."""
        ...


class MediaFetcher(Protocol):
    def fetch(self, url: str, *, timeout: float) -> bytes:
        """Download an ephemeral URL; raise FetchExpired or FetchFailed."""
        ...
