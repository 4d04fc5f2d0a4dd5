"""Media download and object storage adapters."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import unquote, urlparse

import httpx

from adapters.retry import is_transient, retry_async
from miner.config import RetryConfig
from miner.errors import MediaError

LOGGER = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def _guess_type(name: str) -> str:
    return mimetypes.guess_type(name)[0] or DEFAULT_CONTENT_TYPE


class HttpMediaFetcher:
    """Downloads media references: http(s) URLs or local files saved by ingestion."""

    def __init__(
        self,
        retry: Optional[RetryConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        max_bytes: int = 20 * 1024 * 1024,
    ) -> None:
        self._retry = retry or RetryConfig()
        self._client = client
        self._max_bytes = max_bytes

    async def fetch(self, media_ref: str) -> Tuple[bytes, str]:
        parsed = urlparse(media_ref)
        if parsed.scheme in ("http", "https"):
            return await self._fetch_http(media_ref)
        path = Path(unquote(parsed.path) if parsed.scheme == "file" else media_ref)
        return await self._read_file(path)

    async def _fetch_http(self, url: str) -> Tuple[bytes, str]:
        try:
            response = await retry_async(self._get, url, config=self._retry, label="media download")
        except httpx.HTTPStatusError as exc:
            raise MediaError(f"HTTP {exc.response.status_code} for {url}", retryable=is_transient(exc)) from exc
        except httpx.HTTPError as exc:
            raise MediaError(f"{exc.__class__.__name__} for {url}", retryable=is_transient(exc)) from exc

        data = response.content
        if not data:
            raise MediaError(f"empty body for {url}")
        if len(data) > self._max_bytes:
            raise MediaError(f"{url} is larger than {self._max_bytes} bytes")
        content_type = response.headers.get("content-type") or _guess_type(urlparse(url).path)
        return data, content_type.split(";")[0].strip()

    async def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            response = await self._client.get(url, follow_redirects=True)
            response.raise_for_status()
            return response
        async with httpx.AsyncClient(timeout=self._retry.timeout_seconds) as client:
            response = await client.get(url, follow_redirects=True)
            response.raise_for_status()
            return response

    async def _read_file(self, path: Path) -> Tuple[bytes, str]:
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise MediaError(f"cannot read {path}: {exc}") from exc
        if not data:
            raise MediaError(f"{path} is empty")
        return data, _guess_type(path.name)


class LocalObjectStore:
    """Stores objects under a directory and returns their public URLs.

    With ``public_base_url`` the URL is ``<base>/<key>`` (for a directory
    served by a web server); otherwise a ``file://`` URI is returned.
    """

    def __init__(self, root: str, public_base_url: Optional[str] = None) -> None:
        self._root = Path(root)
        self._public_base = public_base_url.rstrip("/") if public_base_url else None

    def _path_for(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise MediaError(f"invalid object key: {key}")
        return path

    def url_for(self, key: str) -> str:
        if self._public_base:
            return f"{self._public_base}/{key}"
        return self._path_for(key).as_uri()

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path_for(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as exc:
            raise MediaError(f"cannot store {key}: {exc}") from exc
        LOGGER.debug("Stored %s (%s, %s bytes)", key, content_type, len(data))
        return self.url_for(key)

    async def get(self, url: str) -> bytes:
        if self._public_base and url.startswith(self._public_base + "/"):
            path = self._path_for(url[len(self._public_base) + 1 :])
        else:
            path = Path(unquote(urlparse(url).path))
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise MediaError(f"cannot read {url}: {exc}") from exc

    async def delete(self, key: str) -> None:
        """Remove a stored object; a missing object is not an error."""

        path = self._path_for(key)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as exc:
            raise MediaError(f"cannot delete {key}: {exc}") from exc
        LOGGER.debug("Deleted %s", key)

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
