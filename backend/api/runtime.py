from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from cache.variants import RecordClassifier
from engine.config import EngineConfig, load_config
from engine.context import EngineContext
from engine.duckdb import DuckDBFetcher
from engine.in_memory import InMemoryFetcher
from engine.scheduler import RenderScheduler
from engine.types import BroadcastBus, Fetcher, PersistentStore
from layers.loaders import load_geojson_records
from layers.types import SpatialRecord
from telemetry.config import fetcher_name, records_path, store_path, telemetry_enabled
from telemetry.store import DuckDBStore, MemoryStore


@dataclass
class EngineRuntime:
    """
    Everything one map session needs, wired together.
    """

    ctx: EngineContext
    scheduler: RenderScheduler
    classifier: RecordClassifier
    fetcher: Fetcher
    owns_store: bool = False

    async def aclose(self) -> None:
        await self.scheduler.aclose()
        self.ctx.shutdown()
        if self.owns_store:
            close_store = getattr(self.ctx.store, "close", None)
            if callable(close_store):
                close_store()
        close = getattr(self.fetcher, "close", None)
        if callable(close):
            close()


def _load_records() -> list[SpatialRecord]:
    p = records_path()
    if p is None:
        return []
    if not p.exists():
        raise FileNotFoundError(f"Records file not found: {p}")
    return load_geojson_records(p)


def build_fetcher(name: str | None = None, records: list[SpatialRecord] | None = None) -> Fetcher:
    recs = records if records is not None else _load_records()
    if (name or fetcher_name()) == "duckdb":
        f = DuckDBFetcher()
        f.seed(recs)
        return f
    return InMemoryFetcher(recs)


def build_store() -> PersistentStore:
    if not telemetry_enabled():
        return MemoryStore()
    return DuckDBStore.open(store_path())


def _variant_for(record: SpatialRecord | None) -> str:
    if record is None:
        return "default"
    v = record.attributes.get("variant")
    if isinstance(v, str) and v.strip():
        return v.strip()
    return record.category or "default"


def build_runtime(
    config: EngineConfig | None = None,
    *,
    fetcher: Fetcher | None = None,
    store: PersistentStore | None = None,
    bus: BroadcastBus | None = None,
) -> EngineRuntime:
    cfg = config or load_config()
    owns_store = store is None
    ctx = EngineContext(cfg, store=store if store is not None else build_store(), bus=bus)
    f = fetcher or build_fetcher()
    scheduler = RenderScheduler(ctx, f)

    async def record_lookup(record_id: str) -> str:
        by_id = {r.id: r for r in scheduler.get_current_records()}
        return _variant_for(by_id.get(record_id))

    async def category_lookup(category: str) -> dict[str, Any]:
        return {"icon": category or "default"}

    classifier = RecordClassifier(
        ctx, record_lookup=record_lookup, category_lookup=category_lookup
    )
    ctx.init()
    return EngineRuntime(
        ctx=ctx, scheduler=scheduler, classifier=classifier, fetcher=f, owns_store=owns_store
    )
