"""Timeout-bounded retrieval of avatar image bytes."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from avatartagger.exceptions import ImageFetchError

if TYPE_CHECKING:
    from avatartagger.config import Settings

logger = logging.getLogger(__name__)


class ImageFetcher:
    """Downloads image bytes over a shared async HTTP client."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._size_hint = settings.fetch_size_hint
        self._min_bytes = settings.min_payload_bytes
        self._max_bytes = settings.max_file_size
        self._client = httpx.AsyncClient(
            timeout=settings.fetch_timeout,
            follow_redirects=True,
            transport=transport,
        )

    async def fetch(self, url: str) -> bytes:
        """Return the image bytes at ``url``.

        Raises:
            ImageFetchError: On timeout, transport error, non-2xx status or
                a payload that is implausibly small or over ``max_file_size``.
        """
        try:
            request_url = httpx.URL(url)
        except httpx.InvalidURL as exc:
            raise ImageFetchError(f"Invalid image URL {url!r}: {exc}") from exc
        if request_url.scheme not in ("http", "https"):
            raise ImageFetchError(f"Unsupported image URL {url!r}")
        if self._size_hint is not None:
            # CDN resize hint; keeps downloads small for large avatars.
            request_url = request_url.copy_merge_params({"size": str(self._size_hint)})

        try:
            async with self._client.stream("GET", request_url) as response:
                if not response.is_success:
                    raise ImageFetchError(f"Fetching {url} returned HTTP {response.status_code}")
                data = await self._read_capped(response, url)
        except httpx.TimeoutException as exc:
            raise ImageFetchError(f"Timed out fetching {url}") from exc
        except httpx.HTTPError as exc:
            raise ImageFetchError(f"Error fetching {url}: {exc}") from exc

        if len(data) < self._min_bytes:
            raise ImageFetchError(f"Payload from {url} too small ({len(data)} bytes)")
        return data

    async def _read_capped(self, response: httpx.Response, url: str) -> bytes:
        declared = response.headers.get("Content-Length")
        if declared is not None and declared.isdigit() and int(declared) > self._max_bytes:
            raise ImageFetchError(f"Payload from {url} too large ({declared} bytes, limit {self._max_bytes})")

        buf = bytearray()
        async for chunk in response.aiter_bytes():
            buf.extend(chunk)
            if len(buf) > self._max_bytes:
                raise ImageFetchError(f"Payload from {url} exceeds {self._max_bytes} bytes")
        return bytes(buf)

    async def aclose(self) -> None:
        await self._client.aclose()
