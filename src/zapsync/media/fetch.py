"""Download ephemeral media URLs handed out by the gateway."""

from __future__ import annotations

import os

import requests

from zapsync.domain.errors import FetchExpired, FetchFailed
from zapsync.observability.logging import get_logger
from zapsync.observability.redaction import safe_log_context

logger = get_logger(__name__)

MEDIA_FETCH_TIMEOUT = float(os.environ.get("MEDIA_FETCH_TIMEOUT", "30"))

# The URL is gone for good; retrying cannot bring it back
_EXPIRED_STATUSES = {403, 404, 410}


class GatewayMediaFetcher:
    """MediaFetcher over requests.

    The Evolution API key is sent as the "apikey" header; WhatsApp CDN URLs
    ignore it.
    """

    def __init__(
        self,
        api_key: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else os.environ.get("EVOLUTION_API_KEY", "")
        self._session = session or requests.Session()

    def fetch(self, url: str, *, timeout: float = MEDIA_FETCH_TIMEOUT) -> bytes:
        headers = {"apikey": self._api_key} if self._api_key else {}
        try:
            response = self._session.get(url, headers=headers, timeout=timeout)
        except requests.RequestException as e:
            raise FetchFailed(type(e).__name__) from e

        if response.status_code in _EXPIRED_STATUSES:
            logger.info(
                "media url expired",
                extra={"extra_fields": safe_log_context(status=response.status_code)},
            )
            raise FetchExpired(f"status {response.status_code}")

        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise FetchFailed(f"status {response.status_code}") from e

        if not response.content:
            raise FetchFailed("empty body")
        return response.content
