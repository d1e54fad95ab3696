"""Tests for media decryption and Pillow transcoding."""

from io import BytesIO

import pytest
from PIL import Image

from tests.helpers import (
    animated_webp,
    encrypt_media,
    jpeg_bytes,
    new_media_key,
    png_with_alpha,
)
from zapsync.media.decrypt import DecryptionError, decrypt_media, needs_decryption
from zapsync.media.transcode import (
    MAX_IMAGE_DIMENSION,
    base_mime,
    candidate_extensions,
    extension_for,
    transcode,
)


class TestNeedsDecryption:
    @pytest.mark.parametrize(
        "url,media_key,expected",
        [
            ("https://mmg.whatsapp.net/v/t62/abc.enc", "a2V5", True),
            ("https://whatsapp.net/x", "a2V5", True),
            ("https://mmg.whatsapp.net/v/t62/abc.enc", None, False),
            ("https://evo.example.com/media/abc", "a2V5", False),
            ("https://whatsapp.net.evil.example/x", "a2V5", False),
        ],
    )
    def test_only_cdn_urls_with_key(self, url, media_key, expected):
        assert needs_decryption(url, media_key) is expected


class TestDecryptMedia:
    def test_roundtrip_for_each_kind(self):
        key = new_media_key()
        for kind in ("image", "video", "audio", "document", "sticker"):
            plaintext = f"payload for {kind}".encode() * 7
            assert decrypt_media(encrypt_media(plaintext, key, kind), key, kind) == plaintext

    def test_wrong_kind_fails_mac(self):
        key = new_media_key()
        payload = encrypt_media(b"hello world", key, "image")
        with pytest.raises(DecryptionError, match="MAC"):
            decrypt_media(payload, key, "video")

    def test_tampered_payload_fails_mac(self):
        key = new_media_key()
        payload = bytearray(encrypt_media(b"hello world" * 4, key, "audio"))
        payload[3] ^= 0xFF
        with pytest.raises(DecryptionError, match="MAC"):
            decrypt_media(bytes(payload), key, "audio")

    def test_truncated_payload(self):
        with pytest.raises(DecryptionError):
            decrypt_media(b"short", new_media_key(), "image")

    def test_invalid_key_encoding(self):
        with pytest.raises(DecryptionError, match="base64"):
            decrypt_media(b"x" * 64, "not base64!!", "image")

    def test_unknown_kind(self):
        with pytest.raises(DecryptionError, match="no key derivation"):
            decrypt_media(b"x" * 64, new_media_key(), "text")


class TestMimeHelpers:
    def test_base_mime_strips_parameters(self):
        assert base_mime("audio/ogg; codecs=opus") == "audio/ogg"
        assert base_mime(None) is None

    @pytest.mark.parametrize(
        "mime,file_name,expected",
        [
            ("audio/ogg; codecs=opus", None, ".ogg"),
            ("application/pdf", "contrato.pdf", ".pdf"),
            (None, "planilha.XLSX", ".xlsx"),
            (None, None, ".bin"),
        ],
    )
    def test_extension_for(self, mime, file_name, expected):
        assert extension_for(mime, file_name) == expected

    def test_candidate_extensions(self):
        assert candidate_extensions("image", "image/webp") == (".jpg", ".png", ".webp")
        assert candidate_extensions("image", "image/jpeg") == (".jpg", ".png")
        assert candidate_extensions("sticker", None) == (".webp",)
        assert candidate_extensions("audio", "audio/ogg; codecs=opus") == (".ogg",)


class TestTranscode:
    def test_opaque_image_becomes_jpeg(self):
        out = transcode("image", jpeg_bytes(), "image/jpeg")
        assert out.content_type == "image/jpeg"
        assert out.extension == ".jpg"
        with Image.open(BytesIO(out.data)) as image:
            assert image.format == "JPEG"

    def test_large_image_downscaled(self):
        out = transcode("image", jpeg_bytes((4000, 1000)), "image/jpeg")
        with Image.open(BytesIO(out.data)) as image:
            assert max(image.size) == MAX_IMAGE_DIMENSION
            assert image.size == (MAX_IMAGE_DIMENSION, 480)

    def test_alpha_image_stays_png(self):
        out = transcode("image", png_with_alpha(), "image/png")
        assert out.content_type == "image/png"
        with Image.open(BytesIO(out.data)) as image:
            assert image.mode == "RGBA"

    def test_animated_image_passes_through(self):
        data = animated_webp()
        out = transcode("image", data, "image/webp")
        assert out.data == data
        assert out.content_type == "image/webp"

    def test_animated_sticker_keeps_frames(self):
        out = transcode("sticker", animated_webp(frames=4, duration=90), "image/webp")

        assert out.content_type == "image/webp"
        assert out.extension == ".webp"
        with Image.open(BytesIO(out.data)) as image:
            assert image.is_animated
            assert image.n_frames == 4
            assert image.info.get("duration") == 90

    def test_static_sticker(self):
        out = transcode("sticker", png_with_alpha(), "image/webp")
        with Image.open(BytesIO(out.data)) as image:
            assert image.format == "WEBP"

    def test_undecodable_image_passes_through(self):
        out = transcode("image", b"definitely not an image", "image/jpeg")
        assert out.data == b"definitely not an image"

    def test_decompression_bomb_passes_through(self, monkeypatch):
        # 64x48 is more than twice the lowered limit, so Pillow refuses it
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
        data = jpeg_bytes()

        out = transcode("image", data, "image/jpeg")

        assert out.data == data
        assert out.content_type == "image/jpeg"
        assert out.content_type == "image/jpeg"
        assert out.extension == ".jpg"

    def test_non_image_kinds_untouched(self):
        out = transcode("audio", b"OggS....", "audio/ogg; codecs=opus")
        assert out.data == b"OggS...."
        assert out.content_type == "audio/ogg"
        assert out.extension == ".ogg"

    def test_document_keeps_file_name_extension(self):
        out = transcode("document", b"PK..", None, "planilha.xlsx")
        assert out.content_type == "application/octet-stream"
        assert out.extension == ".xlsx"
