from __future__ import annotations

from typing import Iterable

from engine.types import Fetcher, RecordPage
from geo.aoi import ViewportBounds
from geo.index import RecordIndex
from layers.types import SpatialRecord


class InMemoryFetcher(Fetcher):
    """
    Holds a record set in memory, builds an STRtree-backed index,
    then slices by bounds for each request.
    """

    def __init__(self, records: Iterable[SpatialRecord]):
        self.index = RecordIndex(records=list(records))

    async def fetch_in_bounds(self, bounds: ViewportBounds) -> list[SpatialRecord]:
        return list(self.index.in_bounds(bounds))

    async def fetch_page(
        self, bounds: ViewportBounds, offset: int, limit: int
    ) -> RecordPage:
        rows = self.index.in_bounds(bounds)
        start = max(0, int(offset))
        return RecordPage(records=rows[start : start + max(0, int(limit))], total=len(rows))

    async def fetch_nearby(
        self, lat: float, lon: float, radius_m: float
    ) -> list[tuple[SpatialRecord, float]]:
        return self.index.nearby(lat, lon, radius_m)
