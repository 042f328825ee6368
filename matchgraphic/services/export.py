from __future__ import annotations

import io
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Sequence

from PIL import Image

from matchgraphic.core.config import settings
from matchgraphic.core.errors import StructuralError
from matchgraphic.core.logger import get_logger
from matchgraphic.data.models import Entry, RasterSurface

log = get_logger("services.export")

OnSuccess = Callable[[bytes, str], None]
OnError = Callable[[Exception], None]

_WAIT_IMAGES_JS = """
async ([selector, timeoutMs]) => {
  const root = document.querySelector(selector);
  if (!root) return -1;
  const visible = Array.from(root.querySelectorAll('img')).filter((img) => img.getClientRects().length > 0);
  await Promise.all(visible.map((img) => {
    if (img.complete) return null;
    return new Promise((resolve) => {
      const done = () => resolve(null);
      img.addEventListener('load', done, { once: true });
      img.addEventListener('error', done, { once: true });
      setTimeout(done, timeoutMs);
    });
  }));
  return visible.length;
}
"""

_PREPARE_CAPTURE_JS = """
(selector) => {
  const root = document.querySelector(selector);
  if (!root) return { error: 'root' };
  const canvas = root.tagName === 'CANVAS' ? root : root.querySelector('canvas');
  if (!canvas) return { error: 'canvas' };
  const width = canvas.width;
  const height = canvas.height;
  for (const img of root.querySelectorAll('img')) {
    if (img.crossOrigin !== 'anonymous') img.crossOrigin = 'anonymous';
  }
  const scaled = [root, ...root.querySelectorAll('[data-graphic="true"]'), canvas];
  for (const el of scaled) {
    el.style.transform = 'scale(1)';
    el.style.transformOrigin = 'top left';
  }
  canvas.style.width = width + 'px';
  canvas.style.height = height + 'px';
  const rect = canvas.getBoundingClientRect();
  return { width, height, x: rect.left + window.scrollX, y: rect.top + window.scrollY };
}
"""


@dataclass
class LiveRenderRoot:
    """A rendered page region that contains a `<canvas>`.

    `page` is a Playwright async Page; `selector` points at the container.
    """

    page: Any
    selector: str = "[data-graphic='true']"


def encode_png(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


class ExportPipeline:
    def __init__(self, *, filename: str | None = None, image_wait_ms: int | None = None):
        self.filename = filename or settings.export_filename
        self.image_wait_ms = int(image_wait_ms if image_wait_ms is not None else settings.export_image_wait_ms)

    async def export(
        self,
        target: RasterSurface | LiveRenderRoot | None,
        entries: Sequence[Entry] = (),
        *,
        on_success: OnSuccess | None = None,
        on_error: OnError | None = None,
    ) -> bytes:
        try:
            if target is None:
                raise StructuralError("nothing to export: no raster surface or render root")
            if isinstance(target, RasterSurface):
                png = self._export_surface(target)
            elif isinstance(target, LiveRenderRoot):
                png = await self._export_live_root(target)
            else:
                raise StructuralError(f"unsupported export target: {type(target).__name__}")
        except Exception as exc:
            if isinstance(exc, StructuralError):
                log.error("export_structural_error error=%s", exc)
            else:
                log.exception("export_failed")
            if on_error is not None:
                on_error(exc)
            raise
        log.info("export_done entries=%s bytes=%s", len(entries), len(png))
        if on_success is not None:
            on_success(png, self.filename)
        return png

    def _export_surface(self, surface: RasterSurface) -> bytes:
        if surface.image is None:
            raise StructuralError("raster surface has no pixel buffer")
        # Native resolution; display_scale is presentation only.
        buffer = Image.new(surface.image.mode, (surface.width, surface.height))
        buffer.paste(surface.image, (0, 0))
        return encode_png(buffer)

    async def _export_live_root(self, root: LiveRenderRoot) -> bytes:
        page = root.page
        if page is None:
            raise StructuralError("render root has no page")
        waited = await page.evaluate(_WAIT_IMAGES_JS, [root.selector, self.image_wait_ms])
        if waited is None or waited < 0:
            raise StructuralError(f"export target not found: {root.selector}")
        box = await page.evaluate(_PREPARE_CAPTURE_JS, root.selector)
        if not box or box.get("error"):
            what = (box or {}).get("error") or "root"
            raise StructuralError(f"export target has no {what}: {root.selector}")
        width, height = int(box["width"]), int(box["height"])
        if width <= 0 or height <= 0:
            raise StructuralError("nested canvas has no pixels")
        # crossOrigin changes may re-trigger loads.
        await page.evaluate(_WAIT_IMAGES_JS, [root.selector, self.image_wait_ms])

        viewport = page.viewport_size or {"width": 0, "height": 0}
        need_w = int(box["x"]) + width
        need_h = int(box["y"]) + height
        if viewport["width"] < need_w or viewport["height"] < need_h:
            await page.set_viewport_size(
                {"width": max(viewport["width"], need_w), "height": max(viewport["height"], need_h)}
            )
        shot = await page.screenshot(
            type="png",
            clip={"x": float(box["x"]), "y": float(box["y"]), "width": float(width), "height": float(height)},
        )
        img = Image.open(io.BytesIO(shot))
        img.load()
        if img.size != (width, height):
            log.warning("export_snapshot_resized got=%sx%s want=%sx%s", img.width, img.height, width, height)
            img = img.resize((width, height), Image.Resampling.LANCZOS)
        return encode_png(img.convert("RGBA"))

    def save(self, png: bytes, path: str | Path | None = None) -> Path:
        """Write `png` to `path` atomically; returns the final path."""
        if not png:
            raise StructuralError("refusing to write an empty image")
        output_path = Path(path) if path is not None else Path(self.filename)
        if output_path.is_dir():
            output_path = output_path / self.filename
        output_path = output_path.resolve()
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=output_path.name + ".", suffix=".part", dir=str(output_path.parent))
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(png)
            os.replace(tmp_name, output_path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
        log.info("export_saved path=%s bytes=%s", output_path, len(png))
        return output_path
