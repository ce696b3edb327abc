from __future__ import annotations

import asyncio

import duckdb

from engine.duckdb import DuckDBFetcher
from engine.in_memory import InMemoryFetcher
from geo.aoi import ViewportBounds
from layers.types import SpatialRecord

BOUNDS = ViewportBounds(north=50.2, south=50.0, east=14.6, west=14.2)


def _records() -> list[SpatialRecord]:
    return [
        SpatialRecord(
            id=f"r{i:03d}",
            lat=50.0 + (i % 10) * 0.02,
            lon=14.2 + (i // 10) * 0.04,
            category="pub" if i % 3 == 0 else "stop",
            attributes={"rank": i},
        )
        for i in range(100)
    ] + [SpatialRecord(id="outside", lat=48.0, lon=14.3)]


def test_in_memory_pages_cover_the_bounds_exactly_once():
    f = InMemoryFetcher(_records())

    async def run():
        pages = [await f.fetch_page(BOUNDS, off, 30) for off in (0, 30, 60, 90, 120)]
        return pages, await f.fetch_in_bounds(BOUNDS)

    pages, all_in = asyncio.run(run())
    assert [len(p.records) for p in pages] == [30, 30, 30, 10, 0]
    assert {p.total for p in pages} == {100}
    paged_ids = [r.id for p in pages for r in p.records]
    assert paged_ids == [r.id for r in all_in]
    assert "outside" not in paged_ids


def test_in_memory_nearby_returns_distances():
    f = InMemoryFetcher(_records())
    got = asyncio.run(f.fetch_nearby(50.0, 14.2, 3_000.0))
    assert got[0][0].id == "r000"
    assert got[0][1] == 0.0
    assert all(d <= 3_000.0 for _r, d in got)


def test_duckdb_table_mode_matches_in_memory():
    recs = _records()
    db = DuckDBFetcher(threads=1)
    try:
        assert db.seed(recs) == len(recs)

        async def run():
            page = await db.fetch_page(BOUNDS, 30, 30)
            return page, await db.fetch_in_bounds(BOUNDS)

        page, all_in = asyncio.run(run())
        mem = asyncio.run(InMemoryFetcher(recs).fetch_in_bounds(BOUNDS))

        assert page.total == 100
        assert [r.id for r in page.records] == [r.id for r in mem[30:60]]
        assert all_in == mem
    finally:
        db.close()


def test_duckdb_parquet_mode(tmp_path):
    parquet = tmp_path / "records.parquet"
    con = duckdb.connect()
    con.execute(
        f"""
        COPY (
          SELECT * FROM (VALUES ('a', 50.1, 14.3), ('b', 50.15, 14.35), ('c', 10.0, 10.0))
            AS t(id, lat, lon)
        ) TO '{parquet.as_posix()}' (FORMAT PARQUET)
        """
    )
    con.close()

    db = DuckDBFetcher(parquet_path=parquet, threads=1)
    try:
        page = asyncio.run(db.fetch_page(BOUNDS, 0, 10))
    finally:
        db.close()
    assert page.total == 2
    assert [(r.id, r.category) for r in page.records] == [("a", ""), ("b", "")]
