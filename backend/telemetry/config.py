from __future__ import annotations

import os
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def store_path() -> Path:
    # Store under repo so it's easy to inspect (and stays local).
    return Path(
        os.getenv("PINMAP_STORE_PATH")
        or (_repo_root() / "data" / "state" / "pinmap.duckdb")
    )


def telemetry_enabled() -> bool:
    """
    Durable persistence switch; off -> in-memory store only.
    """
    v = (os.getenv("PINMAP_TELEMETRY") or "1").strip().lower()
    return v not in {"0", "false", "no", "off"}


def records_path() -> Path | None:
    raw = (os.getenv("PINMAP_RECORDS_PATH") or "").strip()
    return Path(raw) if raw else None


def fetcher_name() -> str:
    n = (os.getenv("PINMAP_FETCHER") or "in_memory").strip().lower()
    if n in {"duckdb", "in_memory"}:
        return n
    return "in_memory"
