"""Canonical inbound event model produced by the gateway adapter.

Absent payload fields stay None. An empty caption or push name is a value
the sender chose, so it is kept as "" and never confused with "not sent".
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class EventKind(str, Enum):
    MESSAGES_UPSERT = "messages.upsert"
    SEND_MESSAGE = "send.message"
    MESSAGES_UPDATE = "messages.update"
    CONTACTS_UPDATE = "contacts.update"
    CHATS_UPSERT = "chats.upsert"
    PRESENCE_UPDATE = "presence.update"
    CONNECTION_UPDATE = "connection.update"
    QRCODE_UPDATED = "qrcode.updated"


MESSAGE_EVENTS = frozenset({EventKind.MESSAGES_UPSERT, EventKind.SEND_MESSAGE})


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    STICKER = "sticker"
    DOCUMENT = "document"
    UNSUPPORTED = "unsupported"


MEDIA_KINDS = frozenset(
    {
        MessageKind.IMAGE,
        MessageKind.VIDEO,
        MessageKind.AUDIO,
        MessageKind.STICKER,
        MessageKind.DOCUMENT,
    }
)


@dataclass(frozen=True)
class MediaDescriptor:
    """Remote media reference as delivered by the gateway.

    media_key is the base64 WhatsApp media key; when present the payload at
    url is encrypted and must be decrypted before use.
    """

    url: str | None
    mime_type: str | None = None
    media_key: str | None = None
    file_name: str | None = None
    file_length: int | None = None


@dataclass(frozen=True)
class InboundEvent:
    """Normalized gateway event - one per webhook delivery."""

    kind: EventKind
    instance_id: str
    sender: str | None = None
    sender_alias: str | None = None
    participant: str | None = None
    participant_alias: str | None = None
    message_id: str | None = None
    message_kind: MessageKind | None = None
    timestamp: datetime | None = None
    from_me: bool = False
    text: str | None = None
    media: MediaDescriptor | None = None
    push_name: str | None = None
    avatar_url: str | None = None
    status: str | None = None

    @property
    def is_message(self) -> bool:
        return self.kind in MESSAGE_EVENTS

    @property
    def has_media(self) -> bool:
        return (
            self.message_kind in MEDIA_KINDS
            and self.media is not None
            and self.media.url is not None
        )
