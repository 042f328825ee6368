from __future__ import annotations

import asyncio
import fnmatch
from typing import Awaitable, Callable
from urllib.parse import urlparse

import httpx

from matchgraphic.core.config import Settings, settings as default_settings
from matchgraphic.core.http import assets_client
from matchgraphic.core.logger import get_logger
from matchgraphic.data.models import FetchResult
from matchgraphic.data.providers.image_proxy import decode_data_uri, fetch_via_proxy

log = get_logger("services.image_fetcher")

ProxyCall = Callable[[str], Awaitable[str]]


def thumbnail_url(url: str) -> str:
    """`https://cdn/x/logo.png` -> `https://cdn/x/thumb_logo.png`."""
    head, sep, name = url.rpartition("/")
    if not sep or not name or "://" in name or name.startswith("thumb_"):
        return url
    return f"{head}/thumb_{name}"


class RemoteImageFetcher:
    """One network attempt per call: direct load, then the proxy fallback.

    Never raises; every failure path resolves to a failed FetchResult.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        proxy: ProxyCall | None = None,
        config: Settings | None = None,
    ):
        self._client = client
        self._proxy = proxy or fetch_via_proxy
        self._config = config or default_settings
        self._data_uris: dict[str, str] = {}

    @property
    def proxy_enabled(self) -> bool:
        return self._proxy is not fetch_via_proxy or bool((self._config.image_proxy_url or "").strip())

    def needs_proxy(self, url: str) -> bool:
        host = (urlparse(url).hostname or "").lower()
        if not host:
            return False
        return any(fnmatch.fnmatch(host, pattern) for pattern in self._config.image_proxy_hosts)

    def clear_data_uri(self, url: str) -> None:
        self._data_uris.pop(url, None)

    async def fetch(self, url: str) -> FetchResult:
        try:
            return await self._fetch(url)
        except Exception as exc:
            log.exception("image_fetch_unexpected url=%s", url)
            return FetchResult.failure(f"unexpected: {exc}")

    async def _fetch(self, url: str) -> FetchResult:
        key = (url or "").strip()
        if not key:
            return FetchResult.failure("empty url")
        if key.startswith("data:"):
            try:
                return FetchResult.success(decode_data_uri(key), "inline")
            except ValueError as exc:
                return FetchResult.failure(f"inline: {exc}")

        if not self.needs_proxy(key):
            direct = await self._fetch_direct(key)
            if direct.ok:
                return direct
            log.info("image_direct_failed url=%s error=%s; trying proxy", key, direct.error)
        return await self._fetch_proxy(key)

    async def _fetch_direct(self, url: str) -> FetchResult:
        client = self._client or assets_client()
        timeout = self._config.image_direct_timeout_seconds
        try:
            resp = await asyncio.wait_for(client.get(url), timeout=timeout)
        except asyncio.TimeoutError:
            return FetchResult.failure(f"direct: timeout after {timeout:g}s")
        except httpx.HTTPError as exc:
            return FetchResult.failure(f"direct: {type(exc).__name__}")
        try:
            if resp.status_code < 200 or resp.status_code >= 300:
                return FetchResult.failure(f"direct: status={resp.status_code}")
            data = resp.content
        finally:
            await resp.aclose()
        if not data:
            return FetchResult.failure("direct: empty body")
        if len(data) > self._config.image_max_bytes:
            return FetchResult.failure(f"direct: too large bytes={len(data)}")
        return FetchResult.success(data, "direct")

    async def _fetch_proxy(self, url: str) -> FetchResult:
        cached = self._data_uris.get(url)
        if cached is None:
            if not self.proxy_enabled:
                return FetchResult.failure("proxy: not configured")
            target = thumbnail_url(url) if self._config.image_proxy_thumbnails else url
            timeout = self._config.image_proxy_timeout_seconds
            try:
                cached = await asyncio.wait_for(self._proxy(target), timeout=timeout)
            except asyncio.TimeoutError:
                log.warning("image_proxy_timeout url=%s timeout=%s", url, timeout)
                return FetchResult.failure(f"proxy: timeout after {timeout:g}s")
            except Exception as exc:
                log.warning("image_proxy_failed url=%s error=%s", url, exc)
                return FetchResult.failure(f"proxy: {exc}")
            self._data_uris[url] = cached
        try:
            data = decode_data_uri(cached)
        except ValueError as exc:
            self._data_uris.pop(url, None)
            return FetchResult.failure(f"proxy: {exc}")
        if not data:
            return FetchResult.failure("proxy: empty image")
        return FetchResult.success(data, "proxy")
