import pytest

from matchgraphic.data.models import (
    PairedEntry,
    RasterSurface,
    Side,
    SingleEntry,
    StyleConfig,
    collect_logo_urls,
)


def test_style_config_validation():
    with pytest.raises(ValueError):
        StyleConfig(width=0)
    with pytest.raises(ValueError):
        StyleConfig(height=-5)
    with pytest.raises(ValueError):
        StyleConfig(scale=0)
    with pytest.raises(ValueError):
        StyleConfig(title_align="left")
    assert StyleConfig(highlighted_ids=["a", "b"]).highlighted_ids == frozenset({"a", "b"})


def test_emphasis_matches_either_side_of_paired_entries_only():
    style = StyleConfig(emphasis_name="BIG")
    assert style.is_emphasized(PairedEntry("1", Side("BIG"), Side("Other")))
    assert style.is_emphasized(PairedEntry("2", Side("Other"), Side("BIG")))
    assert not style.is_emphasized(PairedEntry("3", Side("big"), Side("Other")))
    assert not style.is_emphasized(SingleEntry("4", "BIG"))
    assert not StyleConfig(emphasis_name=None).is_emphasized(PairedEntry("5", Side("BIG"), Side("x")))


def test_collect_logo_urls_is_unique_and_ordered():
    entries = [
        PairedEntry("1", Side("A", "https://x.test/b.png"), Side("B", " https://x.test/a.png ")),
        SingleEntry("2", "Break"),
        PairedEntry("3", Side("C", "https://x.test/a.png"), Side("D", "")),
    ]
    assert collect_logo_urls(entries) == ["https://x.test/b.png", "https://x.test/a.png"]


def test_collect_logo_urls_rejects_unknown_entries():
    with pytest.raises(TypeError):
        collect_logo_urls([object()])


def test_raster_surface_allocate():
    surface = RasterSurface.allocate(320, 0, display_scale=0.5)
    assert (surface.width, surface.height) == (320, 1)
    assert surface.display_scale == 0.5
