from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from engine.config import LoaderSettings
from engine.errors import FetchError, LoadCancelledError
from engine.types import Fetcher, RecordPage
from geo.aoi import ViewportBounds
from layers.types import SpatialRecord

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class LoadProgress:
    loaded: int
    total_estimate: int
    batch_size: int
    average_batch_time_ms: float


ProgressCallback = Callable[[LoadProgress], None]


class CancelToken:
    """
    Cooperative cancellation signal, checked by the loader between batches.

    In-flight requests are never aborted; only unscheduled batches are skipped.
    """

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise LoadCancelledError("load superseded")


def dedupe_by_id(records: list[SpatialRecord]) -> list[SpatialRecord]:
    seen: set[str] = set()
    out: list[SpatialRecord] = []
    for r in records:
        if r.id in seen:
            continue
        seen.add(r.id)
        out.append(r)
    return out


class ProgressiveLoader:
    """
    Fetches the records of a bounds in one call or in adaptive batches.

    The loader knows nothing about bounds caching; callers check `BoundsCache` first.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        settings: LoaderSettings | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.fetcher = fetcher
        self.settings = settings or LoaderSettings()
        self._sleep = sleep

    async def fetch_all(
        self, bounds: ViewportBounds, *, cancel: CancelToken | None = None
    ) -> list[SpatialRecord]:
        records = await self._with_retry(
            lambda: self.fetcher.fetch_in_bounds(bounds), what="fetch_in_bounds", cancel=cancel
        )
        return dedupe_by_id(records)

    async def fetch_batched(
        self,
        bounds: ViewportBounds,
        on_progress: ProgressCallback | None = None,
        *,
        initial_batch_size: int | None = None,
        cancel: CancelToken | None = None,
    ) -> list[SpatialRecord]:
        s = self.settings
        batch_size = s.clamp(initial_batch_size or s.initial_batch_size)
        received: list[SpatialRecord] = []
        seen_ids: set[str] = set()
        # Raw rows consumed from the source; drives paging even when ids repeat.
        fetched = 0
        batch_times_ms: list[float] = []
        total_estimate = 0
        last_reported: LoadProgress | None = None

        def report(p: LoadProgress) -> None:
            nonlocal last_reported
            if cancel is not None:
                cancel.raise_if_cancelled()
            last_reported = p
            if on_progress is not None:
                on_progress(p)

        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()

            offset = fetched
            size = batch_size
            t0 = time.perf_counter()
            page: RecordPage = await self._with_retry(
                lambda: self.fetcher.fetch_page(bounds, offset, size),
                what=f"fetch_page(offset={offset}, limit={size})",
                cancel=cancel,
            )
            batch_times_ms.append((time.perf_counter() - t0) * 1000.0)
            avg_ms = sum(batch_times_ms) / len(batch_times_ms)

            fetched += len(page.records)
            for r in page.records:
                if r.id not in seen_ids:
                    seen_ids.add(r.id)
                    received.append(r)
            loaded = len(received)
            total_estimate = max(int(page.total) - (fetched - loaded), loaded)
            done = not page.records or fetched >= int(page.total)

            if page.records or last_reported is None:
                report(
                    LoadProgress(
                        loaded=loaded,
                        total_estimate=loaded if done else total_estimate,
                        batch_size=size,
                        average_batch_time_ms=avg_ms,
                    )
                )
            if done:
                break

            batch_size = self._next_batch_size(batch_size, avg_ms, samples=len(batch_times_ms))

        # Source shrank mid-load: close the sequence on what we actually got.
        if last_reported is not None and last_reported.loaded != last_reported.total_estimate:
            report(
                LoadProgress(
                    loaded=len(received),
                    total_estimate=len(received),
                    batch_size=last_reported.batch_size,
                    average_batch_time_ms=last_reported.average_batch_time_ms,
                )
            )

        avg_ms = sum(batch_times_ms) / max(1, len(batch_times_ms))
        log.debug(
            "Batched load finished: %d records in %d batches (avg %.1fms)",
            len(received),
            len(batch_times_ms),
            avg_ms,
            extra={
                "records": len(received),
                "duplicates": fetched - len(received),
                "batches": len(batch_times_ms),
                "avg_batch_ms": round(avg_ms, 1),
            },
        )
        return received

    def _next_batch_size(self, current: int, avg_ms: float, *, samples: int) -> int:
        s = self.settings
        if avg_ms < s.fast_batch_ms:
            if samples < s.grow_min_batches:
                return current
            return s.clamp(current * s.grow_factor)
        if avg_ms > s.slow_batch_ms:
            return s.clamp(current * s.shrink_factor)
        return current

    def _backoff_s(self, attempt: int) -> float:
        s = self.settings
        return min(s.backoff_max_s, s.backoff_base_s * (2**attempt))

    async def _with_retry(
        self,
        op: Callable[[], Awaitable[T]],
        *,
        what: str,
        cancel: CancelToken | None,
    ) -> T:
        s = self.settings
        last_exc: BaseException | None = None
        for attempt in range(s.max_retries + 1):
            if attempt:
                await self._sleep(self._backoff_s(attempt - 1))
                if cancel is not None:
                    cancel.raise_if_cancelled()
            try:
                return await asyncio.wait_for(op(), timeout=s.batch_timeout_s)
            except asyncio.TimeoutError as e:
                last_exc = e
                log.warning("%s timed out after %.1fs (attempt %d)", what, s.batch_timeout_s, attempt + 1)
            except (FetchError, OSError) as e:
                last_exc = e
                log.warning("%s failed (attempt %d): %s", what, attempt + 1, e)
        raise FetchError(f"{what} failed after {s.max_retries + 1} attempts") from last_exc
