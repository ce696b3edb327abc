from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol

from geo.aoi import ViewportBounds
from layers.types import SpatialRecord


@dataclass(frozen=True)
class RecordPage:
    """
    One page of a paged bounds query.

    `total` is the fetcher's current estimate of all records in the bounds.
    """

    records: list[SpatialRecord]
    total: int


class Fetcher(Protocol):
    """
    Record source interface.

    - InMemoryFetcher: slices a preloaded record set via STRtree
    - DuckDBFetcher: queries a DuckDB table / Parquet file by bounds

    Failed attempts raise `FetchError`.
    """

    async def fetch_in_bounds(self, bounds: ViewportBounds) -> list[SpatialRecord]: ...

    async def fetch_page(
        self, bounds: ViewportBounds, offset: int, limit: int
    ) -> RecordPage: ...


class PersistentStore(Protocol):
    """
    Byte-oriented key/value persistence (map state, preferences, snapshots, counters).
    """

    def get(self, key: str) -> bytes | None: ...

    def set(self, key: str, value: bytes) -> None: ...

    def remove(self, key: str) -> None: ...


Handler = Callable[[dict[str, Any]], None]


class BroadcastBus(Protocol):
    """
    Optional cross-context messaging; `subscribe` returns an unsubscribe callable.
    """

    def publish(self, topic: str, message: dict[str, Any]) -> None: ...

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]: ...
