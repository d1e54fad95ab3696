"""Kind-specific media normalization with Pillow.

Images: longest side capped at 1920px, JPEG q85 unless the image needs its
alpha channel. Stickers: re-encoded to WebP keeping every frame, per-frame
duration and loop count. Everything else passes through untouched.
Anything Pillow cannot decode passes through untouched as well.
"""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from io import BytesIO
from pathlib import PurePosixPath

from PIL import Image, ImageSequence, UnidentifiedImageError

from zapsync.observability.logging import get_logger
from zapsync.observability.redaction import safe_log_context

logger = get_logger(__name__)

MAX_IMAGE_DIMENSION = 1920
JPEG_QUALITY = 85
STICKER_QUALITY = 80

_EXTENSIONS: dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "video/mp4": ".mp4",
    "video/3gpp": ".3gp",
    "audio/ogg": ".ogg",
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
    "audio/aac": ".aac",
    "application/pdf": ".pdf",
}

_DEFAULT_MIME: dict[str, str] = {
    "image": "image/jpeg",
    "sticker": "image/webp",
    "video": "video/mp4",
    "audio": "audio/ogg",
    "document": "application/octet-stream",
}


@dataclass(frozen=True)
class Transcoded:
    data: bytes
    content_type: str
    extension: str


def base_mime(mime_type: str | None) -> str | None:
    """'audio/ogg; codecs=opus' -> 'audio/ogg'."""
    if not mime_type:
        return None
    return mime_type.split(";", 1)[0].strip().lower() or None


def extension_for(mime_type: str | None, file_name: str | None = None) -> str:
    mime = base_mime(mime_type)
    if mime in _EXTENSIONS:
        return _EXTENSIONS[mime]
    # The sender's file name beats a guess from a generic mime type
    if file_name:
        suffix = PurePosixPath(file_name).suffix.lower()
        if suffix:
            return suffix
    if mime:
        guessed = mimetypes.guess_extension(mime)
        if guessed:
            return guessed
    return ".bin"


def candidate_extensions(kind: str, mime_type: str | None, file_name: str | None = None) -> tuple[str, ...]:
    """Every extension transcode() may pick for this input, best guess first."""
    original = extension_for(mime_type or _DEFAULT_MIME.get(kind), file_name)
    if kind == "image":
        options = (".jpg", ".png", original)
    elif kind == "sticker":
        options = (".webp", original)
    else:
        options = (original,)
    return tuple(dict.fromkeys(options))


def _passthrough(kind: str, data: bytes, mime_type: str | None, file_name: str | None) -> Transcoded:
    content_type = base_mime(mime_type) or _DEFAULT_MIME.get(kind, "application/octet-stream")
    return Transcoded(data, content_type, extension_for(content_type, file_name))


def _has_alpha(image: Image.Image) -> bool:
    if image.mode in ("RGBA", "LA", "PA"):
        return True
    return image.mode == "P" and "transparency" in image.info


def _optimize_image(data: bytes) -> Transcoded | None:
    with Image.open(BytesIO(data)) as image:
        # Animated GIF/WebP posted as an image keeps its animation as sent
        if getattr(image, "is_animated", False):
            return None

        image.load()
        if max(image.size) > MAX_IMAGE_DIMENSION:
            image.thumbnail((MAX_IMAGE_DIMENSION, MAX_IMAGE_DIMENSION), Image.Resampling.LANCZOS)

        out = BytesIO()
        if _has_alpha(image):
            image.save(out, format="PNG", optimize=True)
            return Transcoded(out.getvalue(), "image/png", ".png")

        image.convert("RGB").save(out, format="JPEG", quality=JPEG_QUALITY, optimize=True)
        return Transcoded(out.getvalue(), "image/jpeg", ".jpg")


def _reencode_sticker(data: bytes) -> Transcoded:
    with Image.open(BytesIO(data)) as image:
        out = BytesIO()
        if getattr(image, "is_animated", False):
            frames: list[Image.Image] = []
            durations: list[int] = []
            for frame in ImageSequence.Iterator(image):
                durations.append(int(frame.info.get("duration", image.info.get("duration", 0)) or 0))
                frames.append(frame.convert("RGBA"))
            frames[0].save(
                out,
                format="WEBP",
                save_all=True,
                append_images=frames[1:],
                duration=durations,
                loop=int(image.info.get("loop", 0)),
                quality=STICKER_QUALITY,
            )
        else:
            image.convert("RGBA").save(out, format="WEBP", quality=STICKER_QUALITY)
    return Transcoded(out.getvalue(), "image/webp", ".webp")


def transcode(
    kind: str,
    data: bytes,
    mime_type: str | None = None,
    file_name: str | None = None,
) -> Transcoded:
    """Normalize one media payload for durable storage. Never raises on bad input."""
    if kind not in ("image", "sticker"):
        return _passthrough(kind, data, mime_type, file_name)

    try:
        if kind == "image":
            result = _optimize_image(data)
        else:
            result = _reencode_sticker(data)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        logger.info(
            "media not decodable - stored as received",
            extra={"extra_fields": safe_log_context(kind=kind, error_type=type(e).__name__)},
        )
        result = None

    return result or _passthrough(kind, data, mime_type, file_name)
