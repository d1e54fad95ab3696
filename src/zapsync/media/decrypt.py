"""WhatsApp end-to-end media decryption.

CDN payloads (mmg.whatsapp.net) are AES-256-CBC encrypted with keys derived
from the message's mediaKey:

    expanded = HKDF-SHA256(mediaKey, info=<kind label>, length=112)
    iv = expanded[0:16], cipher_key = expanded[16:48], mac_key = expanded[48:80]
    payload = ciphertext || HMAC-SHA256(mac_key, iv || ciphertext)[:10]
"""

from __future__ import annotations

import base64
import binascii
import hmac
from urllib.parse import urlparse

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives import hmac as crypto_hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

_MAC_LENGTH = 10
_EXPANDED_LENGTH = 112

_INFO_BY_KIND: dict[str, bytes] = {
    "image": b"WhatsApp Image Keys",
    "sticker": b"WhatsApp Image Keys",
    "video": b"WhatsApp Video Keys",
    "audio": b"WhatsApp Audio Keys",
    "document": b"WhatsApp Document Keys",
}


class DecryptionError(Exception):
    """Payload failed the MAC check or could not be decrypted."""

    pass


def needs_decryption(url: str, media_key: str | None) -> bool:
    """Only WhatsApp CDN downloads are encrypted; gateway URLs are not."""
    if not media_key:
        return False
    host = urlparse(url).hostname or ""
    return host == "whatsapp.net" or host.endswith(".whatsapp.net")


def _expand(media_key: bytes, kind: str) -> tuple[bytes, bytes, bytes]:
    info = _INFO_BY_KIND.get(kind)
    if info is None:
        raise DecryptionError(f"no key derivation for kind {kind!r}")
    expanded = HKDF(
        algorithm=hashes.SHA256(),
        length=_EXPANDED_LENGTH,
        salt=None,
        info=info,
    ).derive(media_key)
    return expanded[:16], expanded[16:48], expanded[48:80]


def decrypt_media(payload: bytes, media_key_b64: str, kind: str) -> bytes:
    """Verify and decrypt one downloaded media payload.

    Raises:
        DecryptionError: bad key encoding, MAC mismatch or bad padding.
    """
    try:
        media_key = base64.b64decode(media_key_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError("media key is not valid base64") from e

    if len(payload) <= _MAC_LENGTH:
        raise DecryptionError("payload too short")

    iv, cipher_key, mac_key = _expand(media_key, kind)
    ciphertext, mac = payload[:-_MAC_LENGTH], payload[-_MAC_LENGTH:]

    signer = crypto_hmac.HMAC(mac_key, hashes.SHA256())
    signer.update(iv + ciphertext)
    if not hmac.compare_digest(signer.finalize()[:_MAC_LENGTH], mac):
        raise DecryptionError("media MAC mismatch")

    decryptor = Cipher(algorithms.AES(cipher_key), modes.CBC(iv)).decryptor()
    try:
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError("invalid ciphertext padding") from e

