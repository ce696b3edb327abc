from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

import duckdb

from engine.duckdb_common import connect
from engine.types import PersistentStore
from telemetry.sql import (
    CREATE_KV_TABLE_SQL,
    DELETE_KV_SQL,
    GET_KV_SQL,
    LIST_KEYS_SQL,
    UPSERT_KV_SQL,
)

log = logging.getLogger(__name__)


@dataclass
class MemoryStore(PersistentStore):
    """
    Process-local store; several contexts may share one instance.
    """

    data: dict[str, bytes] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def get(self, key: str) -> bytes | None:
        with self._lock:
            return self.data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self.data[key] = bytes(value)

    def remove(self, key: str) -> None:
        with self._lock:
            self.data.pop(key, None)

    def close(self) -> None:
        pass


@dataclass
class DuckDBStore(PersistentStore):
    """
    Durable key/value store on a single DuckDB file.

    Writes are synchronous; callers debounce high-frequency writers (telemetry).
    """

    path: Path
    conn: duckdb.DuckDBPyConnection
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @classmethod
    def open(cls, path: Path | str) -> "DuckDBStore":
        p = Path(path)
        store = cls(path=p, conn=connect(str(p), threads=1))
        store.ensure_schema()
        log.info("DuckDBStore opened: %s", p)
        return store

    def ensure_schema(self) -> None:
        with self._lock:
            self.conn.execute(CREATE_KV_TABLE_SQL)

    def get(self, key: str) -> bytes | None:
        with self._lock:
            row = self.conn.execute(GET_KV_SQL, [str(key)]).fetchone()
        if row is None or row[0] is None:
            return None
        return bytes(row[0])

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self.conn.execute(
                UPSERT_KV_SQL, [str(key), bytes(value), int(time.time() * 1000)]
            )

    def remove(self, key: str) -> None:
        with self._lock:
            self.conn.execute(DELETE_KV_SQL, [str(key)])

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            rows = self.conn.execute(LIST_KEYS_SQL, [f"{prefix}%"]).fetchall()
        return [str(r[0]) for r in rows]

    def close(self) -> None:
        with self._lock:
            try:
                self.conn.execute("CHECKPOINT;")
            except Exception:
                pass
            try:
                self.conn.close()
            except Exception:
                pass
