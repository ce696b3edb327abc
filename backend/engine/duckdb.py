from __future__ import annotations

import asyncio
import json
import threading
from pathlib import Path
from typing import Any, Iterable

import duckdb

from engine.duckdb_common import connect
from engine.errors import FetchError
from engine.types import Fetcher, RecordPage
from geo.aoi import ViewportBounds
from layers.types import SpatialRecord

CREATE_RECORDS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS records (
  id TEXT PRIMARY KEY,
  lat DOUBLE,
  lon DOUBLE,
  category TEXT,
  attrs_json TEXT
);
"""

_BOUNDS_WHERE = "lat BETWEEN ? AND ? AND lon BETWEEN ? AND ?"


class DuckDBFetcher(Fetcher):
    """
    DuckDB-backed fetcher.

    Two modes:
    - Table mode: records live in a `records` table (seeded via `seed()`).
    - Parquet mode: query-on-read over a Parquet file with id/lat/lon[/category] columns.

    DuckDB calls are blocking, so they run in a worker thread; a lock serializes
    access to the single connection.
    """

    def __init__(
        self,
        *,
        path: str | Path | None = None,
        parquet_path: str | Path | None = None,
        threads: int | None = None,
    ):
        self.parquet_path = Path(parquet_path) if parquet_path else None
        self.conn = connect(str(path) if path else ":memory:", threads=threads)
        self._lock = threading.RLock()
        if self.parquet_path is None:
            with self._lock:
                self.conn.execute(CREATE_RECORDS_TABLE_SQL)

    def _source(self) -> tuple[str, list[Any]]:
        if self.parquet_path is not None:
            return "read_parquet(?)", [str(self.parquet_path)]
        return "records", []

    def seed(self, records: Iterable[SpatialRecord]) -> int:
        if self.parquet_path is not None:
            raise ValueError("Cannot seed a Parquet-backed fetcher")
        rows = [
            (
                r.id,
                float(r.lat),
                float(r.lon),
                r.category,
                json.dumps(r.attributes, ensure_ascii=False),
            )
            for r in records
        ]
        with self._lock:
            self.conn.executemany(
                "INSERT OR REPLACE INTO records (id, lat, lon, category, attrs_json) VALUES (?, ?, ?, ?, ?)",
                rows,
            )
        return len(rows)

    def close(self) -> None:
        with self._lock:
            try:
                self.conn.close()
            except Exception:
                pass

    async def fetch_in_bounds(self, bounds: ViewportBounds) -> list[SpatialRecord]:
        return await asyncio.to_thread(self._query, bounds, None, None)

    async def fetch_page(
        self, bounds: ViewportBounds, offset: int, limit: int
    ) -> RecordPage:
        return await asyncio.to_thread(self._query_page, bounds, int(offset), int(limit))

    def _params(self, bounds: ViewportBounds) -> list[Any]:
        return [bounds.south, bounds.north, bounds.west, bounds.east]

    def _select_sql(self, src: str) -> str:
        if self.parquet_path is not None:
            cols = "CAST(id AS VARCHAR) AS id, CAST(lat AS DOUBLE), CAST(lon AS DOUBLE), NULL, NULL"
        else:
            cols = "id, lat, lon, category, attrs_json"
        return f"SELECT {cols} FROM {src} WHERE {_BOUNDS_WHERE} ORDER BY id"

    def _query(
        self, bounds: ViewportBounds, offset: int | None, limit: int | None
    ) -> list[SpatialRecord]:
        src, src_params = self._source()
        sql = self._select_sql(src)
        params = [*src_params, *self._params(bounds)]
        if limit is not None:
            sql += f" LIMIT {max(0, int(limit))} OFFSET {max(0, int(offset or 0))}"
        try:
            with self._lock:
                rows = self.conn.execute(sql, params).fetchall()
        except duckdb.Error as e:
            raise FetchError(f"DuckDB query failed: {e}") from e
        return [_row_to_record(row) for row in rows]

    def _query_page(self, bounds: ViewportBounds, offset: int, limit: int) -> RecordPage:
        src, src_params = self._source()
        try:
            with self._lock:
                total = self.conn.execute(
                    f"SELECT COUNT(*) FROM {src} WHERE {_BOUNDS_WHERE}",
                    [*src_params, *self._params(bounds)],
                ).fetchone()[0]
        except duckdb.Error as e:
            raise FetchError(f"DuckDB count failed: {e}") from e
        records = self._query(bounds, offset, limit)
        return RecordPage(records=records, total=int(total))


def _row_to_record(row: tuple) -> SpatialRecord:
    fid, lat, lon, category, attrs_json = row
    attrs: dict[str, Any] = {}
    if attrs_json:
        try:
            attrs = json.loads(attrs_json)
        except Exception:
            attrs = {}
    return SpatialRecord(
        id=str(fid),
        lat=float(lat),
        lon=float(lon),
        category=str(category or ""),
        attributes=attrs if isinstance(attrs, dict) else {},
    )
