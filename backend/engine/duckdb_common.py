from __future__ import annotations

import os
from pathlib import Path

import duckdb


def duckdb_threads() -> int:
    raw = (os.getenv("PINMAP_DUCKDB_THREADS") or "").strip()
    if raw:
        try:
            return max(1, int(raw))
        except Exception:
            pass
    return max(1, int(os.cpu_count() or 1))


def connect(path: str, *, threads: int | None = None) -> duckdb.DuckDBPyConnection:
    if path != ":memory:":
        p = Path(path)
        if p.parent and str(p.parent) not in {".", ""}:
            p.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(
        database=path,
        read_only=False,
        config={"threads": int(threads or duckdb_threads())},
    )
