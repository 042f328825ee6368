from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Mapping

from PIL import Image, ImageColor, ImageDraw, ImageFont

from matchgraphic.core.config import settings
from matchgraphic.core.errors import StructuralError
from matchgraphic.data.models import Entry, PairedEntry, RasterSurface, SingleEntry, StyleConfig, normalize_url

ELLIPSIS = "..."

_HEADER_OFFSET = 80
_ROW_BOX = 60
_ROW_PITCH = 70
_EMPHASIS_INCREMENT = 20
_PADDING = 16
_INNER_PAD = 12
_TIME_GUTTER = 70
_CENTER_GAP = 20
_LOGO_SIZE = 28
_LOGO_GAP = 8
_RADIUS = 12
_BORDER = 3
_TITLE_BASELINE = 40
_TITLE_MARGIN = 24
_TOURNAMENT_MAX = 100
_CAPTION_GAP = 3

_ROW_FILL = (27, 32, 40, 230)
_ROW_EMPHASIS_FILL = (16, 163, 127, 51)
_ROW_HIGHLIGHT_FILL = (71, 224, 99, 128)
_ROW_HIGHLIGHT_BORDER = (255, 255, 255, 128)
_ACCENT_COLOR = (16, 163, 127)
_MUTED_COLOR = (156, 163, 175)
_SEPARATOR_COLOR = (107, 114, 128)
_PLACEHOLDER_FILL = (55, 65, 81)
_PLACEHOLDER_TEXT = (229, 231, 235)
_OVERLAY_ALPHA = (96, 176)
_GRADIENT_DARKEN = 0.55

LogoMap = Mapping[str, "Image.Image | None"]


@dataclass(frozen=True)
class LayoutMetrics:
    header_offset: int
    row_box: int
    row_pitch: int
    emphasis_increment: int
    padding: int
    inner_pad: int
    time_gutter: int
    center_gap: int
    logo_size: int
    logo_gap: int
    radius: int
    border: int
    title_baseline: int
    title_margin: int
    tournament_max: int
    caption_gap: int

    @classmethod
    def for_scale(cls, scale: float) -> "LayoutMetrics":
        def px(value: int) -> int:
            return max(1, int(round(value * scale)))

        return cls(
            header_offset=px(_HEADER_OFFSET),
            row_box=px(_ROW_BOX),
            row_pitch=px(_ROW_PITCH),
            emphasis_increment=px(_EMPHASIS_INCREMENT),
            padding=px(_PADDING),
            inner_pad=px(_INNER_PAD),
            time_gutter=px(_TIME_GUTTER),
            center_gap=px(_CENTER_GAP),
            logo_size=px(_LOGO_SIZE),
            logo_gap=px(_LOGO_GAP),
            radius=px(_RADIUS),
            border=px(_BORDER),
            title_baseline=px(_TITLE_BASELINE),
            title_margin=px(_TITLE_MARGIN),
            tournament_max=px(_TOURNAMENT_MAX),
            caption_gap=px(_CAPTION_GAP),
        )


@dataclass
class _FontSet:
    title: ImageFont.FreeTypeFont
    name: ImageFont.FreeTypeFont
    time: ImageFont.FreeTypeFont
    small: ImageFont.FreeTypeFont
    caption: ImageFont.FreeTypeFont
    initial: ImageFont.FreeTypeFont


def _font_path(filename: str) -> Path | None:
    configured = (settings.fonts_dir or "").strip()
    base = Path(configured) if configured else Path(__file__).resolve().parent.parent / "assets" / "fonts"
    candidate = base / filename
    return candidate if candidate.exists() else None


def _load_font(path: Path | None, size: int) -> ImageFont.FreeTypeFont:
    if path:
        try:
            return ImageFont.truetype(str(path), size=size)
        except OSError:
            pass
    return ImageFont.load_default(size=size)


@lru_cache(maxsize=8)
def _load_fonts(scale: float) -> _FontSet:
    regular = _font_path("Inter-Regular.ttf") or _font_path("NotoSans-Regular.ttf") or _font_path("DejaVuSans.ttf")
    bold = _font_path("Inter-Bold.ttf") or _font_path("NotoSans-Bold.ttf") or _font_path("DejaVuSans-Bold.ttf")
    italic = (
        _font_path("Inter-Italic.ttf")
        or _font_path("NotoSans-Italic.ttf")
        or _font_path("DejaVuSans-Oblique.ttf")
        or regular
    )

    def sz(value: int) -> int:
        return max(6, int(round(value * scale)))

    return _FontSet(
        title=_load_font(bold, sz(24)),
        name=_load_font(bold, sz(16)),
        time=_load_font(bold, sz(15)),
        small=_load_font(regular, sz(12)),
        caption=_load_font(italic, sz(12)),
        initial=_load_font(bold, sz(13)),
    )


def _text_width(draw: ImageDraw.ImageDraw, text: str, font: ImageFont.FreeTypeFont) -> int:
    if not text:
        return 0
    bbox = draw.textbbox((0, 0), text, font=font)
    return bbox[2] - bbox[0]


def truncate_text(draw: ImageDraw.ImageDraw, text: str, font: ImageFont.FreeTypeFont, max_width: int) -> str:
    """Trim `text` to `max_width` pixels, ending it with an ellipsis.

    Text that already fits is returned unchanged, so applying this twice is
    the same as applying it once. When no character fits beside the ellipsis
    the ellipsis alone is returned; a budget narrower than that yields "".
    """
    if _text_width(draw, text, font) <= max_width:
        return text
    truncated = text
    while truncated and _text_width(draw, f"{truncated}{ELLIPSIS}", font) > max_width:
        truncated = truncated[:-1]
    if truncated:
        return f"{truncated}{ELLIPSIS}"
    return ELLIPSIS if _text_width(draw, ELLIPSIS, font) <= max_width else ""


def _initial_letter(text: str, fallback: str = "?") -> str:
    m = re.search(r"\w", text or "")
    return m.group(0).upper() if m else fallback


def _fit_logo(img: Image.Image, size: int) -> Image.Image:
    fitted = img.copy()
    fitted.thumbnail((size, size), Image.Resampling.LANCZOS)
    canvas = Image.new("RGBA", (size, size), (0, 0, 0, 0))
    x = (size - fitted.width) // 2
    y = (size - fitted.height) // 2
    canvas.paste(fitted, (x, y), fitted)
    return canvas


def _rgb(color: str) -> tuple[int, int, int]:
    return ImageColor.getrgb(color)[:3]


class CanvasLayoutEngine:
    """Row layout and drawing onto a RasterSurface.

    The engine holds no state between calls. Callers own the Y cursor:
    `draw_row` takes the row's top Y and returns the next row's top Y.
    """

    def metrics(self, style: StyleConfig) -> LayoutMetrics:
        return LayoutMetrics.for_scale(style.scale)

    def fonts(self, style: StyleConfig) -> _FontSet:
        return _load_fonts(float(style.scale))

    def row_height(self, entry: Entry, style: StyleConfig) -> int:
        m = self.metrics(style)
        extra = m.emphasis_increment if style.is_emphasized(entry) else 0
        return m.row_pitch + extra

    def content_height(self, entries: Iterable[Entry], style: StyleConfig) -> int:
        m = self.metrics(style)
        return m.header_offset + sum(self.row_height(entry, style) for entry in entries)

    def surface_size(self, entries: Iterable[Entry], style: StyleConfig) -> tuple[int, int]:
        width = max(1, int(round(style.width * style.scale)))
        if style.height is not None:
            return width, max(1, int(round(style.height * style.scale)))
        return width, self.content_height(entries, style)

    def draw(
        self,
        surface: RasterSurface | None,
        entries: Iterable[Entry],
        style: StyleConfig,
        resolved_logos: LogoMap,
        background: Image.Image | None = None,
    ) -> None:
        if surface is None:
            raise StructuralError("no drawing surface")
        self.draw_background(surface, style, background)
        y = self.draw_title(surface, style)
        for entry in entries:
            y = self.draw_row(surface, entry, y, style, resolved_logos)

    def draw_background(self, surface: RasterSurface, style: StyleConfig, background: Image.Image | None) -> None:
        size = (surface.width, surface.height)
        if background is not None:
            scale = max(size[0] / background.width, size[1] / background.height)
            resized = background.resize(
                (max(1, int(background.width * scale + 0.5)), max(1, int(background.height * scale + 0.5))),
                Image.Resampling.LANCZOS,
            )
            left = (resized.width - size[0]) // 2
            top = (resized.height - size[1]) // 2
            cropped = resized.crop((left, top, left + size[0], top + size[1])).convert("RGBA")
            surface.image.paste(_rgb(style.background_color), (0, 0, size[0], size[1]))
            surface.image.paste(cropped, (0, 0), cropped)
            lo, hi = _OVERLAY_ALPHA
            overlay = Image.linear_gradient("L").resize(size).point(lambda v: lo + (hi - lo) * v // 255)
            surface.image.paste((0, 0, 0), (0, 0, size[0], size[1]), overlay)
            return

        top_color = _rgb(style.background_color)
        if style.background_gradient_end:
            bottom_color = _rgb(style.background_gradient_end)
        else:
            bottom_color = tuple(int(c * _GRADIENT_DARKEN) for c in top_color)
        mask = Image.linear_gradient("L").resize(size)
        gradient = Image.composite(Image.new("RGB", size, bottom_color), Image.new("RGB", size, top_color), mask)
        surface.image.paste(gradient, (0, 0))

    def draw_title(self, surface: RasterSurface, style: StyleConfig) -> int:
        m = self.metrics(style)
        if style.title:
            draw = ImageDraw.Draw(surface.image, "RGBA")
            font = self.fonts(style).title
            text = truncate_text(draw, style.title, font, surface.width - 2 * m.title_margin)
            if style.title_align == "center":
                xy, anchor = (surface.width // 2, m.title_baseline), "ms"
            else:
                xy, anchor = (surface.width - m.title_margin, m.title_baseline), "rs"
            self._draw_text(draw, xy, text, font, _rgb(style.text_color), anchor)
        return m.header_offset

    def draw_row(
        self,
        surface: RasterSurface,
        entry: Entry,
        y: int,
        style: StyleConfig,
        resolved_logos: LogoMap,
    ) -> int:
        m = self.metrics(style)
        fonts = self.fonts(style)
        draw = ImageDraw.Draw(surface.image, "RGBA")
        width = surface.width
        emphasized = style.is_emphasized(entry)
        highlighted = style.is_highlighted(entry)

        box_top = y + (m.row_pitch - m.row_box) // 2
        box_bottom = box_top + m.row_box
        center_y = box_top + m.row_box // 2
        if highlighted:
            draw.rounded_rectangle(
                (m.padding - m.border, box_top - m.border, width - m.padding + m.border, box_bottom + m.border),
                radius=m.radius + m.border,
                fill=_ROW_HIGHLIGHT_BORDER,
            )
        fill = _ROW_HIGHLIGHT_FILL if highlighted else (_ROW_EMPHASIS_FILL if emphasized else _ROW_FILL)
        draw.rounded_rectangle((m.padding, box_top, width - m.padding, box_bottom), radius=m.radius, fill=fill)

        time_w = m.time_gutter if style.show_time else 0
        if style.show_time and entry.time:
            time_text = truncate_text(draw, entry.time, fonts.time, m.time_gutter - m.inner_pad)
            time_color = (255, 255, 255) if highlighted else _MUTED_COLOR
            self._draw_text(draw, (m.padding + m.inner_pad, center_y), time_text, fonts.time, time_color, "lm")

        text_color = _ACCENT_COLOR if emphasized else _rgb(style.text_color)
        if isinstance(entry, SingleEntry):
            x = m.padding + time_w + m.inner_pad
            label = truncate_text(draw, entry.label, fonts.name, width - m.padding - m.inner_pad - x)
            self._draw_text(draw, (x, center_y), label, fonts.name, text_color, "lm")
        elif isinstance(entry, PairedEntry):
            self._draw_paired(surface, draw, entry, m, fonts, style, resolved_logos, center_y, time_w, text_color)
        else:
            raise TypeError(f"unsupported entry type: {type(entry).__name__}")

        if emphasized and style.emphasis_caption:
            caption_y = box_bottom + m.caption_gap
            self._draw_text(
                draw, (m.padding + time_w, caption_y), style.emphasis_caption, fonts.caption, _ACCENT_COLOR, "la"
            )
        return y + self.row_height(entry, style)

    def _draw_paired(
        self,
        surface: RasterSurface,
        draw: ImageDraw.ImageDraw,
        entry: PairedEntry,
        m: LayoutMetrics,
        fonts: _FontSet,
        style: StyleConfig,
        resolved_logos: LogoMap,
        center_y: int,
        time_w: int,
        text_color: tuple[int, int, int],
    ) -> None:
        width = surface.width
        center_x = (width + time_w) // 2
        left_bound = m.padding + time_w + m.inner_pad
        right_bound = width - m.padding - m.inner_pad

        if entry.tournament:
            label = truncate_text(draw, entry.tournament, fonts.small, m.tournament_max)
            tournament_color = (255, 255, 255) if style.is_highlighted(entry) else _SEPARATOR_COLOR
            self._draw_text(draw, (right_bound, center_y), label, fonts.small, tournament_color, "rm")
            if label:
                right_bound -= _text_width(draw, label, fonts.small) + m.inner_pad

        self._draw_text(draw, (center_x, center_y), "vs", fonts.small, _SEPARATOR_COLOR, "mm")

        logo_block = m.logo_size + m.logo_gap if style.show_logos else 0
        logo_y = center_y - m.logo_size // 2

        a_end = center_x - m.center_gap
        a_name_end = a_end - logo_block
        a_name = truncate_text(draw, entry.side_a.name, fonts.name, self._name_budget(a_name_end - left_bound, style))
        self._draw_text(draw, (a_name_end, center_y), a_name, fonts.name, text_color, "rm")

        b_start = center_x + m.center_gap
        b_name_start = b_start + logo_block
        b_name = truncate_text(draw, entry.side_b.name, fonts.name, self._name_budget(right_bound - b_name_start, style))
        self._draw_text(draw, (b_name_start, center_y), b_name, fonts.name, text_color, "lm")

        if style.show_logos:
            self._draw_side_logo(surface, draw, entry.side_a.name, entry.side_a.logo_url,
                                 (a_end - m.logo_size, logo_y), m, fonts, resolved_logos)
            self._draw_side_logo(surface, draw, entry.side_b.name, entry.side_b.logo_url,
                                 (b_start, logo_y), m, fonts, resolved_logos)

    @staticmethod
    def _name_budget(room: int, style: StyleConfig) -> int:
        budget = max(0, room)
        if style.name_max_width is not None:
            budget = min(budget, style.name_max_width)
        return budget

    def _draw_side_logo(
        self,
        surface: RasterSurface,
        draw: ImageDraw.ImageDraw,
        name: str,
        url: str | None,
        xy: tuple[int, int],
        m: LayoutMetrics,
        fonts: _FontSet,
        resolved_logos: LogoMap,
    ) -> None:
        key = normalize_url(url)
        logo = resolved_logos.get(key) if key else None
        if logo is not None:
            self._paste_logo(surface, logo, xy, m.logo_size)
        else:
            self._draw_placeholder(draw, name, xy, m.logo_size, fonts.initial)

    def _paste_logo(self, surface: RasterSurface, logo: Image.Image, xy: tuple[int, int], size: int) -> None:
        fitted = _fit_logo(logo, size)
        surface.image.paste(fitted, (int(xy[0]), int(xy[1])), fitted)

    def _draw_placeholder(
        self,
        draw: ImageDraw.ImageDraw,
        name: str,
        xy: tuple[int, int],
        size: int,
        font: ImageFont.FreeTypeFont,
    ) -> None:
        x, y = int(xy[0]), int(xy[1])
        draw.ellipse((x, y, x + size - 1, y + size - 1), fill=_PLACEHOLDER_FILL)
        self._draw_text(draw, (x + size // 2, y + size // 2), _initial_letter(name), font, _PLACEHOLDER_TEXT, "mm")

    def _draw_text(
        self,
        draw: ImageDraw.ImageDraw,
        xy: tuple[int, int],
        text: str,
        font: ImageFont.FreeTypeFont,
        fill: tuple[int, ...],
        anchor: str,
    ) -> None:
        if not text:
            return
        draw.text((int(xy[0]), int(xy[1])), text, font=font, fill=fill, anchor=anchor)

    @staticmethod
    def text_width(draw: ImageDraw.ImageDraw, text: str, font: ImageFont.FreeTypeFont) -> int:
        return _text_width(draw, text, font)
