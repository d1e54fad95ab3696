"""Persistent records handled by the reconciler and the media stabilizer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class Conversation:
    """One correspondent (or group) per (instance_id, address)."""

    id: str
    instance_id: str
    address: str
    is_group: bool
    display_name: str | None = None
    avatar_url: str | None = None
    last_message: str | None = None
    last_message_at: datetime | None = None
    unread_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class NewMessage:
    """Fields needed to insert a message; id is assigned by the store."""

    instance_id: str
    message_id: str
    conversation_id: str
    from_me: bool
    kind: str
    sender_address: str | None
    timestamp: datetime | None
    text: str | None = None
    media_url: str | None = None
    media_mime_type: str | None = None
    media_key: str | None = None
    media_file_name: str | None = None


@dataclass(frozen=True)
class Message:
    id: str
    instance_id: str
    message_id: str
    conversation_id: str
    from_me: bool
    kind: str
    sender_address: str | None
    timestamp: datetime | None
    text: str | None = None
    media_url: str | None = None
    media_mime_type: str | None = None
    media_key: str | None = None
    media_file_name: str | None = None
    media_stabilized: bool = False


@dataclass(frozen=True)
class AliasLink:
    """An opaque alias address learned to belong to a stable address.

    previous is the stable address the alias pointed at before, if the
    mapping changed.
    """

    instance_id: str
    alias: str
    stable: str
    previous: str | None = None
