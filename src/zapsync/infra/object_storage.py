"""Durable media storage on S3-compatible object stores (Spaces, S3, MinIO).

Objects are uploaded public-read with a long cache lifetime: keys are
deterministic per message, so an object never changes once written. The
frontend loads media cross-origin; CORS is a bucket setting, not per object.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from zapsync.domain.errors import StorageError
from zapsync.observability.logging import get_logger
from zapsync.observability.redaction import safe_log_context

logger = get_logger(__name__)

CACHE_CONTROL = "public, max-age=31536000, immutable"


@dataclass(frozen=True)
class StorageConfig:
    """S3-compatible storage settings.

    endpoint_url is None for AWS S3; public_base_url is the CDN or bucket
    origin that object keys are appended to.
    """

    bucket: str
    access_key: str
    secret_key: str
    endpoint_url: str | None = None
    region: str = "us-east-1"
    public_base_url: str | None = None

    @property
    def base_url(self) -> str:
        if self.public_base_url:
            return self.public_base_url.rstrip("/")
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com"


def load_storage_config() -> StorageConfig | None:
    """Read STORAGE_* env vars. None when no bucket is configured."""
    bucket = os.environ.get("STORAGE_BUCKET")
    if not bucket:
        return None

    access_key = os.environ.get("STORAGE_ACCESS_KEY")
    secret_key = os.environ.get("STORAGE_SECRET_KEY")
    if not access_key or not secret_key:
        raise ValueError("STORAGE_ACCESS_KEY and STORAGE_SECRET_KEY are required")

    return StorageConfig(
        bucket=bucket,
        access_key=access_key,
        secret_key=secret_key,
        endpoint_url=os.environ.get("STORAGE_ENDPOINT") or None,
        region=os.environ.get("STORAGE_REGION", "us-east-1"),
        public_base_url=os.environ.get("STORAGE_PUBLIC_BASE_URL") or None,
    )


class S3ObjectStorage:
    """ObjectStorage backed by boto3."""

    def __init__(self, config: StorageConfig, client=None) -> None:
        self._config = config
        self._client = client or boto3.client(
            "s3",
            endpoint_url=config.endpoint_url,
            aws_access_key_id=config.access_key,
            aws_secret_access_key=config.secret_key,
            region_name=config.region,
        )

    def url_for(self, key: str) -> str:
        return f"{self._config.base_url}/{key}"

    def owns_url(self, url: str) -> bool:
        return url.startswith(f"{self._config.base_url}/")

    def exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self._config.bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"head_object failed: {code}") from e
        except BotoCoreError as e:
            raise StorageError(f"head_object failed: {type(e).__name__}") from e
        return True

    def put(self, key: str, data: bytes, content_type: str) -> str:
        try:
            self._client.put_object(
                Bucket=self._config.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                ACL="public-read",
                CacheControl=CACHE_CONTROL,
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning(
                "object upload failed",
                extra={
                    "extra_fields": safe_log_context(
                        key=key, error_type=type(e).__name__
                    )
                },
            )
            raise StorageError(f"put_object failed: {type(e).__name__}") from e

        logger.info(
            "object uploaded",
            extra={
                "extra_fields": safe_log_context(
                    key=key, content_type=content_type, size_bytes=len(data)
                )
            },
        )
        return self.url_for(key)


class InMemoryObjectStorage:
    """Process-local ObjectStorage for STORE_BACKEND=memory and tests."""

    def __init__(self, base_url: str = "memory://media") -> None:
        self._base_url = base_url.rstrip("/")
        self._lock = threading.Lock()
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.put_count = 0

    def url_for(self, key: str) -> str:
        return f"{self._base_url}/{key}"

    def owns_url(self, url: str) -> bool:
        return url.startswith(f"{self._base_url}/")

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self.objects

    def put(self, key: str, data: bytes, content_type: str) -> str:
        with self._lock:
            self.objects[key] = (data, content_type)
            self.put_count += 1
        return self.url_for(key)
