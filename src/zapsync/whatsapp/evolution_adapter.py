"""Evolution API adapter - validate and normalize webhook payloads."""

from __future__ import annotations

import base64
from typing import Any

from zapsync.domain.errors import NormalizationError, NormalizationReason
from zapsync.infra.time import coerce_long, from_epoch

from .models import EventKind, InboundEvent, MediaDescriptor, MessageKind

# Wrappers whose inner "message" holds the real content
_WRAPPER_KEYS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "documentWithCaptionMessage",
    "editedMessage",
)

_MEDIA_CONTENT_KEYS: dict[str, MessageKind] = {
    "imageMessage": MessageKind.IMAGE,
    "videoMessage": MessageKind.VIDEO,
    "audioMessage": MessageKind.AUDIO,
    "stickerMessage": MessageKind.STICKER,
    "documentMessage": MessageKind.DOCUMENT,
}

# messageType values seen when the content block is missing or stripped
_MESSAGE_TYPE_FALLBACK: dict[str, MessageKind] = {
    "conversation": MessageKind.TEXT,
    "extendedTextMessage": MessageKind.TEXT,
    **_MEDIA_CONTENT_KEYS,
}


def _event_kind(raw_event: Any) -> EventKind:
    """Accept both "messages.upsert" and the MESSAGES_UPSERT spelling."""
    if not raw_event or not isinstance(raw_event, str):
        raise NormalizationError(NormalizationReason.MALFORMED_PAYLOAD, "missing event")
    name = raw_event.strip().lower().replace("_", ".")
    try:
        return EventKind(name)
    except ValueError:
        raise NormalizationError(
            NormalizationReason.UNSUPPORTED_EVENT_KIND, name
        ) from None


def _coerce_media_key(value: Any) -> str | None:
    """Media keys arrive as base64 strings or Buffer-like {"0": 12, ...} dicts."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        try:
            raw = bytes(int(value[k]) for k in sorted(value, key=int))
        except (ValueError, TypeError):
            return None
        return base64.b64encode(raw).decode()
    return None


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _non_empty_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _unwrap(message: dict[str, Any]) -> dict[str, Any]:
    for _ in range(3):
        for key in _WRAPPER_KEYS:
            inner = message.get(key)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                message = inner["message"]
                break
        else:
            return message
    return message


def _parse_content(
    message: dict[str, Any], message_type: str | None
) -> tuple[MessageKind, str | None, MediaDescriptor | None]:
    """Return (kind, text_or_caption, media) from a message content block."""
    message = _unwrap(message)

    if "conversation" in message:
        return MessageKind.TEXT, _optional_str(message.get("conversation")), None

    extended = message.get("extendedTextMessage")
    if isinstance(extended, dict):
        return MessageKind.TEXT, _optional_str(extended.get("text")), None

    for key, kind in _MEDIA_CONTENT_KEYS.items():
        block = message.get(key)
        if not isinstance(block, dict):
            continue
        media = MediaDescriptor(
            url=_non_empty_str(block.get("url")),
            mime_type=_non_empty_str(block.get("mimetype")),
            media_key=_coerce_media_key(block.get("mediaKey")),
            file_name=_optional_str(block.get("fileName")),
            file_length=coerce_long(block.get("fileLength")),
        )
        return kind, _optional_str(block.get("caption")), media

    if message_type and message_type in _MESSAGE_TYPE_FALLBACK:
        return _MESSAGE_TYPE_FALLBACK[message_type], None, None

    return MessageKind.UNSUPPORTED, None, None


def _first_item(data: Any) -> dict[str, Any]:
    """Update events carry either one object or a list of them."""
    if isinstance(data, list):
        data = next((item for item in data if isinstance(item, dict)), None)
    if not isinstance(data, dict):
        raise NormalizationError(NormalizationReason.MALFORMED_PAYLOAD, "missing data")
    return data


def _resolve_instance(payload: dict[str, Any], instance_id: str | None) -> str:
    instance = instance_id or payload.get("instance") or payload.get("instanceName")
    if not instance or not isinstance(instance, str):
        raise NormalizationError(
            NormalizationReason.MALFORMED_PAYLOAD, "missing instance id"
        )
    return instance


def _normalize_message(
    kind: EventKind, instance: str, data: dict[str, Any]
) -> InboundEvent:
    key = data.get("key")
    if not isinstance(key, dict):
        raise NormalizationError(NormalizationReason.MALFORMED_PAYLOAD, "missing key")

    message_id = key.get("id")
    if not message_id or not isinstance(message_id, str):
        raise NormalizationError(
            NormalizationReason.MALFORMED_PAYLOAD, "missing or invalid message_id"
        )

    remote_jid = key.get("remoteJid")
    if not remote_jid or not isinstance(remote_jid, str):
        raise NormalizationError(NormalizationReason.MALFORMED_PAYLOAD, "missing remoteJid")

    content = data.get("message")
    message_kind, text, media = _parse_content(
        content if isinstance(content, dict) else {},
        _optional_str(data.get("messageType")),
    )

    # send.message is emitted for messages the instance owner sent
    from_me = bool(key.get("fromMe")) or kind is EventKind.SEND_MESSAGE

    return InboundEvent(
        kind=kind,
        instance_id=instance,
        sender=remote_jid,
        sender_alias=_non_empty_str(key.get("remoteJidAlt")),
        participant=_non_empty_str(key.get("participant") or data.get("participant")),
        participant_alias=_non_empty_str(key.get("participantAlt")),
        message_id=message_id,
        message_kind=message_kind,
        timestamp=from_epoch(data.get("messageTimestamp")),
        from_me=from_me,
        text=text,
        media=media,
        push_name=_optional_str(data.get("pushName")),
    )


def _normalize_update(instance: str, data: dict[str, Any]) -> InboundEvent:
    key = data.get("key") if isinstance(data.get("key"), dict) else {}
    remote_jid = _non_empty_str(data.get("remoteJid")) or _non_empty_str(key.get("remoteJid"))
    if remote_jid is None:
        raise NormalizationError(NormalizationReason.MALFORMED_PAYLOAD, "missing remoteJid")
    return InboundEvent(
        kind=EventKind.MESSAGES_UPDATE,
        instance_id=instance,
        sender=remote_jid,
        sender_alias=_non_empty_str(data.get("remoteJidAlt"))
        or _non_empty_str(key.get("remoteJidAlt")),
        message_id=_non_empty_str(data.get("keyId")) or _non_empty_str(key.get("id")),
        from_me=bool(data.get("fromMe") or key.get("fromMe")),
        timestamp=from_epoch(data.get("timestamp")),
        status=_non_empty_str(data.get("status")),
    )


def _normalize_contact(instance: str, data: dict[str, Any]) -> InboundEvent:
    remote_jid = _non_empty_str(data.get("remoteJid")) or _non_empty_str(data.get("id"))
    if remote_jid is None:
        raise NormalizationError(NormalizationReason.MALFORMED_PAYLOAD, "missing remoteJid")
    return InboundEvent(
        kind=EventKind.CONTACTS_UPDATE,
        instance_id=instance,
        sender=remote_jid,
        sender_alias=_non_empty_str(data.get("remoteJidAlt")),
        push_name=_optional_str(data.get("pushName")),
        avatar_url=_optional_str(data.get("profilePicUrl")),
    )


def normalize(payload: dict[str, Any], instance_id: str | None = None) -> InboundEvent:
    """Normalize an Evolution webhook payload into an InboundEvent.

    Args:
        payload: Raw webhook payload from Evolution API.
        instance_id: Gateway instance from the webhook path. Falls back to
            the payload's "instance" field when not given.

    Returns:
        InboundEvent with absent fields left as None.

    Raises:
        NormalizationError: UNSUPPORTED_EVENT_KIND for events the pipeline
            does not understand, MALFORMED_PAYLOAD when mandatory fields
            are missing.
    """
    if not isinstance(payload, dict):
        raise NormalizationError(NormalizationReason.MALFORMED_PAYLOAD, "payload is not an object")

    kind = _event_kind(payload.get("event"))
    instance = _resolve_instance(payload, instance_id)

    if kind in (EventKind.MESSAGES_UPSERT, EventKind.SEND_MESSAGE):
        data = payload.get("data")
        if isinstance(data, list):
            data = _first_item(data)
        if not isinstance(data, dict):
            raise NormalizationError(NormalizationReason.MALFORMED_PAYLOAD, "missing data")
        return _normalize_message(kind, instance, data)

    if kind is EventKind.MESSAGES_UPDATE:
        return _normalize_update(instance, _first_item(payload.get("data")))

    if kind is EventKind.CONTACTS_UPDATE:
        return _normalize_contact(instance, _first_item(payload.get("data")))

    # presence/connection/qrcode/chats carry nothing the pipeline stores
    return InboundEvent(kind=kind, instance_id=instance)
