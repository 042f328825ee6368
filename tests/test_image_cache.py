import asyncio

import pytest

from matchgraphic.data.models import FetchResult, LoadState
from matchgraphic.services.image_cache import ImageLoadCache


class FakeFetcher:
    def __init__(self, payloads=None, gate=None, delay=0):
        self.payloads = dict(payloads or {})
        self.gate = gate
        self.delay = delay
        self.calls = []
        self.cleared = []

    async def fetch(self, url):
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.gate is not None:
            await self.gate.wait()
        data = self.payloads.get(url)
        if data is None:
            return FetchResult.failure("missing")
        return FetchResult.success(data, "direct")

    def clear_data_uri(self, url):
        self.cleared.append(url)


URL = "https://logos.example.com/a.png"


def test_concurrent_resolves_share_one_load(png_factory):
    async def _run():
        gate = asyncio.Event()
        fetcher = FakeFetcher({URL: png_factory()}, gate=gate)
        cache = ImageLoadCache(fetcher)

        futures = [cache.resolve(URL) for _ in range(5)]
        assert cache.state(URL) is LoadState.IN_FLIGHT

        gate.set()
        results = await asyncio.gather(*futures)
        return fetcher, cache, results

    fetcher, cache, results = asyncio.run(_run())
    assert fetcher.calls == [URL]
    assert all(r is results[0] for r in results)
    assert results[0].mode == "RGBA"
    assert cache.state(URL) is LoadState.RESOLVED_SUCCESS
    assert cache.get(URL) is results[0]


def test_state_is_terminal_when_waiters_wake(png_factory):
    seen = []

    async def _run():
        cache = ImageLoadCache(FakeFetcher({URL: png_factory()}))
        fut = cache.resolve(URL)
        fut.add_done_callback(lambda _f: seen.append(cache.state(URL)))
        await fut

    asyncio.run(_run())
    assert seen == [LoadState.RESOLVED_SUCCESS]


def test_failure_is_cached_until_invalidated(png_factory):
    async def _run():
        fetcher = FakeFetcher()
        cache = ImageLoadCache(fetcher)
        first = await cache.resolve(URL)
        second = await cache.resolve(URL)
        assert first is None and second is None
        assert fetcher.calls == [URL]
        assert cache.state(URL) is LoadState.RESOLVED_FAILURE
        assert cache.failed_urls() == [URL]

        fetcher.payloads[URL] = png_factory()
        cache.invalidate(URL)
        assert cache.state(URL) is LoadState.UNRESOLVED
        third = await cache.resolve(URL)
        return fetcher, cache, third

    fetcher, cache, third = asyncio.run(_run())
    assert third is not None
    assert fetcher.calls == [URL, URL]
    assert fetcher.cleared == [URL]
    assert cache.state(URL) is LoadState.RESOLVED_SUCCESS


def test_resolve_all_dedups_within_and_across_batches(png_factory):
    other = "https://logos.example.com/b.png"

    async def _run():
        fetcher = FakeFetcher({URL: png_factory(), other: png_factory()})
        cache = ImageLoadCache(fetcher)
        first = await cache.resolve_all([URL, other, URL, " " + URL + " ", None, ""])
        second = await cache.resolve_all([other, URL])
        return fetcher, first, second

    fetcher, first, second = asyncio.run(_run())
    assert sorted(fetcher.calls) == sorted([URL, other])
    assert list(first) == [URL, other]
    assert first[URL] is second[URL]


def test_stale_completion_after_invalidate_is_ignored(png_factory):
    async def _run():
        gate = asyncio.Event()
        fetcher = FakeFetcher({URL: png_factory()}, gate=gate)
        cache = ImageLoadCache(fetcher)

        stale = cache.resolve(URL)
        await asyncio.sleep(0)
        cache.invalidate(URL)
        fetcher.gate = None
        fresh = cache.resolve(URL)
        assert fresh is not stale
        fresh_image = await fresh

        gate.set()
        await stale
        return fetcher, cache, fresh_image

    fetcher, cache, fresh_image = asyncio.run(_run())
    assert fetcher.calls == [URL, URL]
    assert cache.get(URL) is fresh_image
    assert cache.state(URL) is LoadState.RESOLVED_SUCCESS


def test_undecodable_payload_is_a_failure():
    async def _run():
        cache = ImageLoadCache(FakeFetcher({URL: b"not an image"}))
        return cache, await cache.resolve(URL)

    cache, image = asyncio.run(_run())
    assert image is None
    assert cache.state(URL) is LoadState.RESOLVED_FAILURE


def test_empty_url_resolves_to_none_without_fetching():
    async def _run():
        fetcher = FakeFetcher()
        cache = ImageLoadCache(fetcher)
        return fetcher, await cache.resolve(""), await cache.resolve(None)

    fetcher, a, b = asyncio.run(_run())
    assert a is None and b is None
    assert fetcher.calls == []


def test_clear_forgets_everything(png_factory):
    async def _run():
        fetcher = FakeFetcher({URL: png_factory()})
        cache = ImageLoadCache(fetcher)
        await cache.resolve(URL)
        cache.clear()
        assert cache.state(URL) is LoadState.UNRESOLVED
        assert cache.get(URL) is None
        await cache.resolve(URL)
        return fetcher

    assert len(asyncio.run(_run()).calls) == 2


def test_impatient_caller_does_not_cancel_shared_load(png_factory):
    async def _run():
        fetcher = FakeFetcher({URL: png_factory()}, delay=0.05)
        cache = ImageLoadCache(fetcher)

        patient = cache.resolve(URL)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(cache.resolve(URL), 0.01)
        assert cache.state(URL) is LoadState.IN_FLIGHT

        image = await patient
        fresh = await cache.resolve(URL)
        return fetcher, cache, image, fresh

    fetcher, cache, image, fresh = asyncio.run(_run())
    assert image is not None
    assert fresh is image
    assert fetcher.calls == [URL]
    assert cache.state(URL) is LoadState.RESOLVED_SUCCESS


def test_cancelled_batch_leaves_load_running(png_factory):
    async def _run():
        fetcher = FakeFetcher({URL: png_factory()}, delay=0.05)
        cache = ImageLoadCache(fetcher)

        batch = asyncio.create_task(cache.resolve_all([URL]))
        await asyncio.sleep(0.01)
        batch.cancel()
        with pytest.raises(asyncio.CancelledError):
            await batch

        return fetcher, await cache.resolve(URL)

    fetcher, image = asyncio.run(_run())
    assert image is not None
    assert fetcher.calls == [URL]


def test_cancelled_load_returns_url_to_unresolved(png_factory):
    async def _run():
        fetcher = FakeFetcher({URL: png_factory()}, delay=0.05)
        cache = ImageLoadCache(fetcher)

        waiter = cache.resolve(URL)
        await asyncio.sleep(0.01)
        cache._pending[URL].cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert cache.state(URL) is LoadState.UNRESOLVED

        return fetcher, await cache.resolve(URL)

    fetcher, image = asyncio.run(_run())
    assert image is not None
    assert fetcher.calls == [URL, URL]
