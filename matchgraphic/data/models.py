from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Union

from PIL import Image

from matchgraphic.core.config import settings

_TITLE_ALIGNS = {"right", "center"}


class LoadState(str, enum.Enum):
    UNRESOLVED = "unresolved"
    IN_FLIGHT = "in-flight"
    RESOLVED_SUCCESS = "resolved-success"
    RESOLVED_FAILURE = "resolved-failure"


@dataclass(frozen=True)
class Side:
    name: str
    logo_url: str | None = None


@dataclass(frozen=True)
class PairedEntry:
    id: str
    side_a: Side
    side_b: Side
    time: str = ""
    tournament: str | None = None


@dataclass(frozen=True)
class SingleEntry:
    """Free-text schedule item: one label and a time."""

    id: str
    label: str
    time: str = ""


Entry = Union[PairedEntry, SingleEntry]


def normalize_url(url: str | None) -> str | None:
    key = (url or "").strip()
    return key or None


def entry_logo_urls(entry: Entry) -> Iterator[str]:
    if isinstance(entry, PairedEntry):
        for side in (entry.side_a, entry.side_b):
            key = normalize_url(side.logo_url)
            if key:
                yield key
    elif isinstance(entry, SingleEntry):
        return
    else:
        raise TypeError(f"unsupported entry type: {type(entry).__name__}")


def collect_logo_urls(entries: Iterable[Entry]) -> list[str]:
    """Unique logo URLs in first-seen order."""
    seen: dict[str, None] = {}
    for entry in entries:
        for url in entry_logo_urls(entry):
            seen.setdefault(url, None)
    return list(seen)


@dataclass(frozen=True)
class StyleConfig:
    show_logos: bool = True
    show_time: bool = True
    background_color: str = "#1a1b1e"
    background_gradient_end: str | None = None
    text_color: str = "#ffffff"
    scale: float = 1.0
    display_scale: float = 1.0
    title: str | None = None
    title_align: str = "right"
    width: int = 600
    height: int | None = None
    background_url: str | None = None
    emphasis_name: str | None = field(default_factory=lambda: settings.emphasis_name or None)
    emphasis_caption: str = field(default_factory=lambda: settings.emphasis_caption)
    highlighted_ids: frozenset[str] = frozenset()
    name_max_width: int | None = None

    def __post_init__(self):
        if self.width <= 0:
            raise ValueError("width must be positive")
        if self.height is not None and self.height <= 0:
            raise ValueError("height must be positive")
        if self.scale <= 0 or self.display_scale <= 0:
            raise ValueError("scale must be positive")
        if self.title_align not in _TITLE_ALIGNS:
            raise ValueError(f"title_align must be one of: {', '.join(sorted(_TITLE_ALIGNS))}")
        if self.name_max_width is not None and self.name_max_width < 0:
            raise ValueError("name_max_width must be >= 0")
        if not isinstance(self.highlighted_ids, frozenset):
            object.__setattr__(self, "highlighted_ids", frozenset(self.highlighted_ids))

    def is_emphasized(self, entry: Entry) -> bool:
        if not self.emphasis_name or not isinstance(entry, PairedEntry):
            return False
        return self.emphasis_name in (entry.side_a.name, entry.side_b.name)

    def is_highlighted(self, entry: Entry) -> bool:
        return entry.id in self.highlighted_ids


@dataclass
class RasterSurface:
    image: Image.Image
    display_scale: float = 1.0

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @classmethod
    def allocate(cls, width: int, height: int, *, display_scale: float = 1.0) -> "RasterSurface":
        return cls(Image.new("RGB", (max(1, int(width)), max(1, int(height)))), display_scale=display_scale)


@dataclass(frozen=True)
class FetchResult:
    ok: bool
    data: bytes | None = None
    source: str | None = None
    error: str | None = None

    @classmethod
    def success(cls, data: bytes, source: str) -> "FetchResult":
        return cls(ok=True, data=data, source=source)

    @classmethod
    def failure(cls, error: str) -> "FetchResult":
        return cls(ok=False, error=error)
