"""Shared test helper functions for zapsync tests.

This module contains helper functions that can be imported by both conftest.py
and individual test files. These are NOT fixtures - they are regular functions.
"""

from __future__ import annotations

import base64
import os
from contextlib import contextmanager
from io import BytesIO
from typing import Any, Iterator

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives import hmac as crypto_hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from PIL import Image

from zapsync.domain.errors import FetchExpired, FetchFailed
from zapsync.infra.object_storage import InMemoryObjectStorage
from zapsync.infra.repositories.memory_repository import InMemoryInboxStore
from zapsync.media.decrypt import _expand
from zapsync.media.stabilizer import MediaStabilizer

INSTANCE = "inst-1"
PHONE = "5541991188909"
PHONE_JID = f"{PHONE}@s.whatsapp.net"
LID_JID = "207112233445566@lid"
GROUP_JID = "120363164787189624@g.us"


# =============================================================================
# Gateway payloads
# =============================================================================


def message_payload(
    message_id: str = "MSG-1",
    remote_jid: str = PHONE_JID,
    *,
    event: str = "messages.upsert",
    remote_jid_alt: str | None = None,
    participant: str | None = None,
    participant_alt: str | None = None,
    from_me: bool = False,
    text: str | None = "oi",
    message: dict[str, Any] | None = None,
    timestamp: Any = 1718000000,
    push_name: str | None = "Maria",
    instance: str | None = None,
) -> dict[str, Any]:
    """Evolution messages.upsert payload. `message` overrides the text body."""
    key: dict[str, Any] = {"id": message_id, "remoteJid": remote_jid, "fromMe": from_me}
    if remote_jid_alt:
        key["remoteJidAlt"] = remote_jid_alt
    if participant:
        key["participant"] = participant
    if participant_alt:
        key["participantAlt"] = participant_alt

    data: dict[str, Any] = {
        "key": key,
        "message": message if message is not None else {"conversation": text},
        "messageType": "conversation",
    }
    if timestamp is not None:
        data["messageTimestamp"] = timestamp
    if push_name is not None:
        data["pushName"] = push_name

    payload: dict[str, Any] = {"event": event, "data": data}
    if instance:
        payload["instance"] = instance
    return payload


def image_message(
    url: str = "https://evo.example.com/media/abc",
    *,
    mimetype: str = "image/jpeg",
    caption: str | None = None,
    media_key: str | None = None,
) -> dict[str, Any]:
    block: dict[str, Any] = {"url": url, "mimetype": mimetype}
    if caption is not None:
        block["caption"] = caption
    if media_key is not None:
        block["mediaKey"] = media_key
    return {"imageMessage": block}


def update_payload(remote_jid: str, remote_jid_alt: str, key_id: str = "MSG-1") -> dict[str, Any]:
    return {
        "event": "messages.update",
        "data": {
            "keyId": key_id,
            "remoteJid": remote_jid,
            "remoteJidAlt": remote_jid_alt,
            "fromMe": False,
            "status": "READ",
        },
    }


def contact_payload(
    remote_jid: str,
    *,
    push_name: str | None = None,
    avatar_url: str | None = None,
    remote_jid_alt: str | None = None,
) -> dict[str, Any]:
    data: dict[str, Any] = {"remoteJid": remote_jid}
    if push_name is not None:
        data["pushName"] = push_name
    if avatar_url is not None:
        data["profilePicUrl"] = avatar_url
    if remote_jid_alt is not None:
        data["remoteJidAlt"] = remote_jid_alt
    return {"event": "contacts.update", "data": [data]}


# =============================================================================
# Media fixtures
# =============================================================================


def new_media_key() -> str:
    return base64.b64encode(os.urandom(32)).decode()


def encrypt_media(plaintext: bytes, media_key_b64: str, kind: str) -> bytes:
    """Produce a payload the way the WhatsApp CDN serves it."""
    iv, cipher_key, mac_key = _expand(base64.b64decode(media_key_b64), kind)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(cipher_key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    signer = crypto_hmac.HMAC(mac_key, hashes.SHA256())
    signer.update(iv + ciphertext)
    return ciphertext + signer.finalize()[:10]


def jpeg_bytes(size: tuple[int, int] = (64, 48), color: str = "red") -> bytes:
    out = BytesIO()
    Image.new("RGB", size, color).save(out, format="JPEG")
    return out.getvalue()


def png_with_alpha(size: tuple[int, int] = (32, 32)) -> bytes:
    out = BytesIO()
    Image.new("RGBA", size, (0, 128, 255, 100)).save(out, format="PNG")
    return out.getvalue()


def animated_webp(frames: int = 3, duration: int = 120, loop: int = 0) -> bytes:
    images = [
        Image.new("RGBA", (32, 32), (i * 60 % 256, 100, 200, 255)) for i in range(frames)
    ]
    out = BytesIO()
    images[0].save(
        out,
        format="WEBP",
        save_all=True,
        append_images=images[1:],
        duration=duration,
        loop=loop,
    )
    return out.getvalue()


# =============================================================================
# Fakes
# =============================================================================


class FakeFetcher:
    """MediaFetcher returning scripted results in order.

    Each entry is bytes (returned) or an exception instance (raised); the
    last entry repeats.
    """

    def __init__(self, *results: bytes | Exception) -> None:
        self._results = list(results)
        self.calls: list[str] = []

    def fetch(self, url: str, *, timeout: float) -> bytes:
        self.calls.append(url)
        result = self._results[min(len(self.calls), len(self._results)) - 1]
        if isinstance(result, Exception):
            raise result
        return result


def expired() -> FetchExpired:
    return FetchExpired("status 410")


def failed() -> FetchFailed:
    return FetchFailed("ConnectionError")


def store_session_for(store: InMemoryInboxStore):
    @contextmanager
    def session() -> Iterator[InMemoryInboxStore]:
        yield store

    return session


def make_stabilizer(
    store: InMemoryInboxStore,
    fetcher: FakeFetcher,
    storage: InMemoryObjectStorage | None = None,
    **kwargs: Any,
) -> tuple[MediaStabilizer, InMemoryObjectStorage, list[float]]:
    """Stabilizer with a recording fake sleep. Returns (stabilizer, storage, sleeps)."""
    sleeps: list[float] = []
    storage = storage or InMemoryObjectStorage()
    stabilizer = MediaStabilizer(
        storage,
        fetcher,
        store_session_for(store),
        sleep=sleeps.append,
        **kwargs,
    )
    return stabilizer, storage, sleeps
