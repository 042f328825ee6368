import io
import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("IMAGE_PROXY_URL", "")
os.environ.setdefault("BACKGROUND_URL", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")


def _png(color=(255, 0, 0, 255), size=(16, 16)) -> bytes:
    from PIL import Image

    buf = io.BytesIO()
    Image.new("RGBA", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture()
def png_factory():
    return _png


@pytest.fixture()
def recording_engine():
    from matchgraphic.services.canvas_layout import CanvasLayoutEngine

    class RecordingEngine(CanvasLayoutEngine):
        def __init__(self):
            self.texts = []
            self.logos = []
            self.placeholders = []

        def _draw_text(self, draw, xy, text, font, fill, anchor):
            self.texts.append({"xy": xy, "text": text, "font": font, "anchor": anchor, "draw": draw})
            super()._draw_text(draw, xy, text, font, fill, anchor)

        def _paste_logo(self, surface, logo, xy, size):
            self.logos.append({"logo": logo, "xy": xy, "size": size})
            super()._paste_logo(surface, logo, xy, size)

        def _draw_placeholder(self, draw, name, xy, size, font):
            self.placeholders.append({"name": name, "xy": xy})
            super()._draw_placeholder(draw, name, xy, size, font)

    return RecordingEngine()
