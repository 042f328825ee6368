from __future__ import annotations

import asyncio
import io
from typing import Iterable

from PIL import Image, UnidentifiedImageError

from matchgraphic.core.logger import get_logger
from matchgraphic.data.models import LoadState, normalize_url
from matchgraphic.services.image_fetcher import RemoteImageFetcher

log = get_logger("services.image_cache")


def decode_image(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img.convert("RGBA")


class ImageLoadCache:
    """Per-URL image memoisation with at most one load in flight per URL.

    Create one per application session and share it across renders. A URL
    that failed stays failed until `invalidate` is called for it.
    """

    def __init__(self, fetcher: RemoteImageFetcher | None = None):
        self.fetcher = fetcher or RemoteImageFetcher()
        self._pending: dict[str, asyncio.Future] = {}
        self._outcomes: dict[str, bool] = {}
        self._images: dict[str, Image.Image] = {}

    def state(self, url: str | None) -> LoadState:
        key = normalize_url(url)
        if key is None:
            return LoadState.UNRESOLVED
        if key in self._pending:
            return LoadState.IN_FLIGHT
        outcome = self._outcomes.get(key)
        if outcome is None:
            return LoadState.UNRESOLVED
        return LoadState.RESOLVED_SUCCESS if outcome else LoadState.RESOLVED_FAILURE

    def get(self, url: str | None) -> Image.Image | None:
        key = normalize_url(url)
        return self._images.get(key) if key else None

    def resolve(self, url: str | None) -> asyncio.Future:
        """Future of the decoded RGBA image, or of None on failure.

        Concurrent callers share one load task; each gets a shielded view of
        it, so cancelling one caller never cancels the load. Must be called
        from a running event loop.
        """
        loop = asyncio.get_running_loop()
        key = normalize_url(url)
        if key is None:
            return _settled(loop, None)
        pending = self._pending.get(key)
        if pending is not None:
            return asyncio.shield(pending)
        outcome = self._outcomes.get(key)
        if outcome is not None:
            return _settled(loop, self._images.get(key) if outcome else None)

        task = loop.create_task(self._load(key))
        self._pending[key] = task
        log.debug("image_load_start url=%s", key)
        return asyncio.shield(task)

    async def resolve_all(self, urls: Iterable[str | None]) -> dict[str, Image.Image | None]:
        keys = list(dict.fromkeys(k for k in (normalize_url(u) for u in urls) if k))
        if not keys:
            return {}
        futures = [self.resolve(key) for key in keys]
        results = await asyncio.gather(*futures)
        return dict(zip(keys, results))

    def invalidate(self, url: str | None) -> None:
        key = normalize_url(url)
        if key is None:
            return
        self._pending.pop(key, None)
        self._outcomes.pop(key, None)
        self._images.pop(key, None)
        self.fetcher.clear_data_uri(key)
        log.info("image_cache_invalidated url=%s", key)

    def clear(self) -> None:
        for key in list(self._pending) + list(self._outcomes):
            self.fetcher.clear_data_uri(key)
        self._pending.clear()
        self._outcomes.clear()
        self._images.clear()

    def failed_urls(self) -> list[str]:
        return [key for key, ok in self._outcomes.items() if not ok]

    async def _load(self, key: str) -> Image.Image | None:
        task = asyncio.current_task()
        image: Image.Image | None = None
        try:
            result = await self.fetcher.fetch(key)
            if result.ok and result.data:
                try:
                    image = decode_image(result.data)
                except (UnidentifiedImageError, OSError, ValueError) as exc:
                    log.warning("image_decode_failed url=%s source=%s error=%s", key, result.source, exc)
            else:
                log.warning("image_load_failed url=%s error=%s", key, result.error)
        except asyncio.CancelledError:
            # Leave the URL unresolved so the next resolve starts over.
            if self._pending.get(key) is task:
                del self._pending[key]
            log.warning("image_load_cancelled url=%s", key)
            raise
        except Exception:
            log.exception("image_load_unexpected url=%s", key)
            image = None

        # A newer attempt (after invalidate) owns the slot; leave its state alone.
        if self._pending.get(key) is task:
            del self._pending[key]
            self._outcomes[key] = image is not None
            if image is not None:
                self._images[key] = image
        return image


def _settled(loop: asyncio.AbstractEventLoop, value) -> asyncio.Future:
    fut = loop.create_future()
    fut.set_result(value)
    return fut
