from __future__ import annotations

import html
from contextlib import asynccontextmanager
from typing import AsyncIterator

from playwright.async_api import Browser, TimeoutError as PlaywrightTimeoutError, async_playwright

from matchgraphic.core.logger import get_logger
from matchgraphic.data.models import RasterSurface
from matchgraphic.data.providers.image_proxy import encode_data_uri
from matchgraphic.services.export import LiveRenderRoot, encode_png

log = get_logger("services.preview")

_READY_TIMEOUT_MS = 5000
_LAUNCH_ARGS = [
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--font-render-hinting=none",
]


def build_preview_html(surface: RasterSurface, *, title: str = "Match graphic") -> str:
    """Page that paints `surface` into a canvas shown at its display scale."""
    data_uri = encode_data_uri(encode_png(surface.image), "image/png")
    scale = float(surface.display_scale or 1.0)
    return f"""<!doctype html>
<html>
<head>
  <meta charset="utf-8">
  <title>{html.escape(title)}</title>
  <style>
    html, body {{ margin: 0; padding: 0; background: #0b0f19; }}
    #graphic {{ width: {surface.width}px; transform: scale({scale}); transform-origin: top left; }}
    #graphic canvas {{ display: block; }}
  </style>
</head>
<body>
  <div id="graphic" data-graphic="true">
    <canvas width="{surface.width}" height="{surface.height}"></canvas>
  </div>
  <script>
    (() => {{
      const root = document.getElementById("graphic");
      const canvas = root.querySelector("canvas");
      const img = new Image();
      img.onload = () => {{
        canvas.getContext("2d").drawImage(img, 0, 0);
        root.dataset.ready = "1";
      }};
      img.onerror = () => {{ root.dataset.ready = "error"; }};
      img.src = "{data_uri}";
    }})();
  </script>
</body>
</html>"""


@asynccontextmanager
async def open_preview(surface: RasterSurface, *, browser: Browser | None = None) -> AsyncIterator[LiveRenderRoot]:
    """Show `surface` in a headless Chromium page and yield it as a render root.

    Launches a private browser when none is given and closes it on exit.
    """
    playwright = None
    context = None
    own_browser = browser is None
    try:
        if own_browser:
            playwright = await async_playwright().start()
            browser = await playwright.chromium.launch(headless=True, args=_LAUNCH_ARGS)
        width = max(1, int(surface.width * surface.display_scale))
        height = max(1, int(surface.height * surface.display_scale))
        context = await browser.new_context(
            viewport={"width": width, "height": height},
            device_scale_factor=1,
        )
        page = await context.new_page()
        await page.set_content(build_preview_html(surface), wait_until="domcontentloaded")
        try:
            await page.wait_for_function(
                "() => document.getElementById('graphic')?.dataset.ready === '1'",
                timeout=_READY_TIMEOUT_MS,
            )
        except PlaywrightTimeoutError:
            log.warning("preview_not_ready size=%sx%s", surface.width, surface.height)
        yield LiveRenderRoot(page=page, selector="#graphic")
    finally:
        if context is not None:
            await context.close()
        if own_browser:
            if browser is not None:
                await browser.close()
            if playwright is not None:
                await playwright.stop()
