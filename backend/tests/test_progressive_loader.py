from __future__ import annotations

import asyncio

import pytest

from engine.config import LoaderSettings
from engine.errors import FetchError, LoadCancelledError
from engine.in_memory import InMemoryFetcher
from engine.loader import CancelToken, LoadProgress, ProgressiveLoader
from engine.types import RecordPage
from geo.aoi import ViewportBounds
from layers.types import SpatialRecord

BOUNDS = ViewportBounds(north=50.3, south=49.9, east=14.8, west=14.1)


def _records(n: int) -> list[SpatialRecord]:
    return [
        SpatialRecord(id=f"r{i:05d}", lat=50.0 + (i % 100) * 0.002, lon=14.2 + (i // 100) * 0.01)
        for i in range(n)
    ]


class PagedFetcher:
    """Counts calls and can fail the first few attempts."""

    def __init__(self, records: list[SpatialRecord], *, fail_first: int = 0, total_override: int | None = None):
        self.inner = InMemoryFetcher(records)
        self.fail_first = fail_first
        self.total_override = total_override
        self.calls: list[tuple[int, int]] = []

    async def fetch_in_bounds(self, bounds: ViewportBounds) -> list[SpatialRecord]:
        self.calls.append((0, -1))
        if len(self.calls) <= self.fail_first:
            raise FetchError("server said 503")
        return await self.inner.fetch_in_bounds(bounds)

    async def fetch_page(self, bounds: ViewportBounds, offset: int, limit: int) -> RecordPage:
        self.calls.append((offset, limit))
        if len(self.calls) <= self.fail_first:
            raise FetchError("server said 503")
        page = await self.inner.fetch_page(bounds, offset, limit)
        if self.total_override is not None:
            return RecordPage(records=page.records, total=self.total_override)
        return page


async def _no_sleep(_s: float) -> None:
    return None


def _fixed_500() -> LoaderSettings:
    return LoaderSettings(initial_batch_size=500, max_batch_size=500, min_batch_size=100)


def test_batched_load_reports_each_page_of_a_1200_record_set():
    fetcher = PagedFetcher(_records(1200))
    loader = ProgressiveLoader(fetcher)
    seen: list[LoadProgress] = []

    out = asyncio.run(loader.fetch_batched(BOUNDS, seen.append, initial_batch_size=500))

    assert [p.loaded for p in seen] == [500, 1000, 1200]
    assert [p.total_estimate for p in seen] == [1200, 1200, 1200]
    assert len(out) == 1200
    assert fetcher.calls == [(0, 500), (500, 500), (1000, 1000)]


def test_fixed_batch_size_pages_evenly():
    fetcher = PagedFetcher(_records(1200))
    loader = ProgressiveLoader(fetcher, _fixed_500())
    seen: list[LoadProgress] = []

    asyncio.run(loader.fetch_batched(BOUNDS, seen.append))

    assert [p.loaded for p in seen] == [500, 1000, 1200]
    assert fetcher.calls == [(0, 500), (500, 500), (1000, 500)]


@pytest.mark.parametrize("n", [1, 99, 100, 101, 250, 1234])
def test_progress_is_monotonic_and_ends_on_the_total(n: int):
    loader = ProgressiveLoader(
        PagedFetcher(_records(n)),
        LoaderSettings(initial_batch_size=100, min_batch_size=10, max_batch_size=400),
    )
    seen: list[LoadProgress] = []
    out = asyncio.run(loader.fetch_batched(BOUNDS, seen.append))

    loaded = [p.loaded for p in seen]
    assert loaded == sorted(loaded)
    assert seen[-1].loaded == seen[-1].total_estimate == len(out) == n
    assert all(p.loaded <= p.total_estimate for p in seen)


def test_empty_bounds_report_zero_once():
    loader = ProgressiveLoader(PagedFetcher([]), _fixed_500())
    seen: list[LoadProgress] = []
    out = asyncio.run(loader.fetch_batched(BOUNDS, seen.append))
    assert out == []
    assert [(p.loaded, p.total_estimate) for p in seen] == [(0, 0)]


def test_overstated_total_is_closed_on_what_arrived():
    fetcher = PagedFetcher(_records(250), total_override=300)
    loader = ProgressiveLoader(
        fetcher, LoaderSettings(initial_batch_size=100, max_batch_size=100, min_batch_size=10)
    )
    seen: list[LoadProgress] = []
    out = asyncio.run(loader.fetch_batched(BOUNDS, seen.append))

    assert len(out) == 250
    assert [p.loaded for p in seen] == [100, 200, 250, 250]
    assert seen[-1].total_estimate == 250


def test_batch_size_adapts_to_latency_within_limits():
    loader = ProgressiveLoader(PagedFetcher([]), LoaderSettings())
    assert loader._next_batch_size(500, 10.0, samples=2) == 1000
    assert loader._next_batch_size(500, 10.0, samples=1) == 500
    assert loader._next_batch_size(500, 2_000.0, samples=1) == 250
    assert loader._next_batch_size(500, 800.0, samples=5) == 500
    assert loader._next_batch_size(2_000, 10.0, samples=5) == 2_000
    assert loader._next_batch_size(100, 5_000.0, samples=5) == 100


def test_fast_pages_grow_the_batch():
    fetcher = PagedFetcher(_records(700))
    loader = ProgressiveLoader(
        fetcher, LoaderSettings(initial_batch_size=100, min_batch_size=100, max_batch_size=400)
    )
    asyncio.run(loader.fetch_batched(BOUNDS))
    assert [limit for _off, limit in fetcher.calls] == [100, 100, 200, 400]


def test_transient_failures_are_retried_with_backoff():
    fetcher = PagedFetcher(_records(10), fail_first=2)
    delays: list[float] = []

    async def record_sleep(s: float) -> None:
        delays.append(s)

    loader = ProgressiveLoader(
        fetcher,
        LoaderSettings(max_retries=3, backoff_base_s=0.25, backoff_max_s=4.0),
        sleep=record_sleep,
    )
    out = asyncio.run(loader.fetch_batched(BOUNDS))
    assert len(out) == 10
    assert delays == [0.25, 0.5]


def test_exhausted_retries_raise_fetch_error():
    fetcher = PagedFetcher(_records(10), fail_first=100)
    loader = ProgressiveLoader(fetcher, LoaderSettings(max_retries=2), sleep=_no_sleep)

    with pytest.raises(FetchError, match="failed after 3 attempts"):
        asyncio.run(loader.fetch_all(BOUNDS))
    assert len(fetcher.calls) == 3


def test_slow_batch_times_out_into_fetch_error():
    class Stuck:
        async def fetch_in_bounds(self, bounds):
            await asyncio.sleep(5)
            return []

        async def fetch_page(self, bounds, offset, limit):
            await asyncio.sleep(5)
            return RecordPage(records=[], total=0)

    loader = ProgressiveLoader(Stuck(), LoaderSettings(max_retries=0, batch_timeout_s=0.01))
    with pytest.raises(FetchError) as ei:
        asyncio.run(loader.fetch_batched(BOUNDS))
    assert isinstance(ei.value.__cause__, asyncio.TimeoutError)


def test_cancel_stops_before_the_next_batch():
    fetcher = PagedFetcher(_records(1200))
    loader = ProgressiveLoader(fetcher, _fixed_500())
    token = CancelToken()

    def on_progress(p: LoadProgress) -> None:
        token.cancel()

    with pytest.raises(LoadCancelledError):
        asyncio.run(loader.fetch_batched(BOUNDS, on_progress, cancel=token))
    assert len(fetcher.calls) == 1


def test_repeated_ids_are_dropped_as_pages_arrive():
    recs = _records(100)
    fetcher = PagedFetcher(recs + recs[:10])
    loader = ProgressiveLoader(
        fetcher, LoaderSettings(initial_batch_size=50, max_batch_size=50, min_batch_size=10)
    )
    seen: list[LoadProgress] = []
    out = asyncio.run(loader.fetch_batched(BOUNDS, seen.append))

    assert len(out) == 100
    assert len({r.id for r in out}) == 100
    assert [p.loaded for p in seen] == [40, 90, 100]
    assert seen[-1].total_estimate == 100
    assert [off for off, _limit in fetcher.calls] == [0, 50, 100]


def test_fetch_all_dedupes_by_id():
    dup = SpatialRecord(id="same", lat=50.0, lon=14.2)

    class Dupes:
        async def fetch_in_bounds(self, bounds):
            return [dup, dup, SpatialRecord(id="other", lat=50.1, lon=14.3)]

        async def fetch_page(self, bounds, offset, limit):
            return RecordPage(records=[], total=0)

    out = asyncio.run(ProgressiveLoader(Dupes()).fetch_all(BOUNDS))
    assert [r.id for r in out] == ["same", "other"]


def test_invalid_settings_are_rejected():
    with pytest.raises(ValueError):
        LoaderSettings(min_batch_size=500, max_batch_size=100)
