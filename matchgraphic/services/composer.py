from __future__ import annotations

import asyncio
import time
from typing import Sequence

from PIL import Image

from matchgraphic.core.config import settings
from matchgraphic.core.logger import get_logger
from matchgraphic.data.models import Entry, RasterSurface, StyleConfig, collect_logo_urls, normalize_url
from matchgraphic.services.canvas_layout import CanvasLayoutEngine
from matchgraphic.services.image_cache import ImageLoadCache

log = get_logger("services.composer")


class GraphicComposer:
    """Resolves every image an entry list needs, then draws it in one pass.

    Each call to `render` produces a fresh surface. When renders overlap, the
    one started last becomes `current`; older surfaces are simply dropped.
    """

    def __init__(self, cache: ImageLoadCache | None = None, engine: CanvasLayoutEngine | None = None):
        self.cache = cache or ImageLoadCache()
        self.engine = engine or CanvasLayoutEngine()
        self._generation = 0
        self._current: RasterSurface | None = None
        self._current_key: tuple | None = None

    @property
    def current(self) -> RasterSurface | None:
        return self._current

    def background_url(self, style: StyleConfig) -> str | None:
        return normalize_url(style.background_url) or normalize_url(settings.background_url)

    def logo_urls(self, entries: Sequence[Entry], style: StyleConfig) -> list[str]:
        if not style.show_logos:
            return []
        return collect_logo_urls(entries)

    async def render(self, entries: Sequence[Entry], style: StyleConfig) -> RasterSurface:
        entries = tuple(entries)
        self._generation += 1
        generation = self._generation
        t0 = time.perf_counter()
        if self._current_key != (entries, style):
            self._current = None
            self._current_key = None

        urls = self.logo_urls(entries, style)
        bg_url = self.background_url(style)
        logos, background = await asyncio.gather(
            self.cache.resolve_all(urls),
            self._resolve_background(bg_url),
        )

        width, height = self.engine.surface_size(entries, style)
        surface = RasterSurface.allocate(width, height, display_scale=style.display_scale)
        self.engine.draw(surface, entries, style, logos, background)

        failed = sum(1 for img in logos.values() if img is None)
        dur_ms = int((time.perf_counter() - t0) * 1000)
        if generation != self._generation:
            log.info("render_superseded generation=%s latest=%s", generation, self._generation)
            return surface
        self._current = surface
        self._current_key = (entries, style)
        log.info(
            "render_done entries=%s size=%sx%s logos=%s failed=%s background=%s duration_ms=%s",
            len(entries), width, height, len(logos), failed, background is not None, dur_ms,
        )
        return surface

    async def refresh(self, entries: Sequence[Entry], style: StyleConfig) -> RasterSurface:
        """Reuse `current` for identical inputs; otherwise render from scratch."""
        key = (tuple(entries), style)
        if self._current is not None and self._current_key == key:
            return self._current
        return await self.render(entries, style)

    async def retry(self, entries: Sequence[Entry], style: StyleConfig) -> RasterSurface:
        urls = list(self.logo_urls(entries, style))
        bg_url = self.background_url(style)
        if bg_url:
            urls.append(bg_url)
        failed = set(self.cache.failed_urls())
        for url in urls:
            if url in failed:
                self.cache.invalidate(url)
        return await self.render(entries, style)

    async def _resolve_background(self, url: str | None) -> Image.Image | None:
        if not url:
            return None
        image = await self.cache.resolve(url)
        if image is None:
            log.warning("background_unavailable url=%s; using gradient", url)
        return image
