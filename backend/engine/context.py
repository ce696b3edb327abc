from __future__ import annotations

import logging
import uuid
from typing import Any, Awaitable, Callable

from cache.metadata import MetadataCache
from engine.config import EngineConfig
from engine.map_state import MapStateStore
from engine.types import BroadcastBus, PersistentStore
from geo.bounds_cache import BoundsCache
from telemetry.counters import CacheTelemetry, Channel, TelemetryCounters
from telemetry.store import MemoryStore

log = logging.getLogger(__name__)


class EngineContext:
    """
    Owns the per-engine singletons: bounds cache, metadata caches, telemetry, map state.

    Created by the caller and injected into components; `init()` restores durable
    state, `shutdown()` flushes it. Several contexts may share one store and bus.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        store: PersistentStore | None = None,
        bus: BroadcastBus | None = None,
        context_id: str | None = None,
    ):
        self.config = config or EngineConfig()
        self._owns_store = store is None
        self.store: PersistentStore = store if store is not None else MemoryStore()
        self.bus = bus
        self.context_id = context_id or uuid.uuid4().hex
        self.bounds_cache = BoundsCache()
        self.map_state = MapStateStore(self.store)
        self.telemetry = CacheTelemetry(
            self.store,
            bus=bus,
            origin=self.context_id,
            flush_delay_s=self.config.cache.telemetry_flush_s,
        )
        self._caches: dict[str, MetadataCache[Any]] = {}
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def init(self) -> "EngineContext":
        if self._started:
            return self
        self.telemetry.restore()
        self.telemetry.attach()
        for cache in self._caches.values():
            cache.restore()
            cache.attach()
        self._started = True
        log.info("Engine context %s started (bus=%s)", self.context_id, self.bus is not None)
        return self

    def shutdown(self) -> None:
        if not self._started:
            return
        self.telemetry.flush()
        self.telemetry.detach()
        for cache in self._caches.values():
            cache.detach()
        if self._owns_store:
            close = getattr(self.store, "close", None)
            if callable(close):
                close()
        self._started = False
        log.info("Engine context %s shut down", self.context_id)

    def __enter__(self) -> "EngineContext":
        return self.init()

    def __exit__(self, *exc: object) -> None:
        self.shutdown()

    def metadata_cache(
        self,
        name: str,
        lookup: Callable[[str], Awaitable[Any]],
        *,
        channel: Channel = "a",
        ttl_s: float | None = None,
    ) -> MetadataCache[Any]:
        if name in self._caches:
            raise ValueError(f"Metadata cache {name!r} already registered")
        cache: MetadataCache[Any] = MetadataCache(
            name,
            lookup,
            store=self.store,
            telemetry=self.telemetry,
            channel=channel,
            ttl_s=ttl_s if ttl_s is not None else self.config.cache.metadata_ttl_s,
            bus=self.bus,
            origin=self.context_id,
        )
        self._caches[name] = cache
        if self._started:
            cache.restore()
            cache.attach()
        return cache

    def get_metadata_cache(self, name: str) -> MetadataCache[Any] | None:
        return self._caches.get(name)

    def cache_telemetry(self) -> TelemetryCounters:
        return self.telemetry.snapshot()

    def reset_cache_telemetry(self) -> None:
        self.telemetry.reset()

    def clear_caches(self) -> None:
        for cache in self._caches.values():
            cache.clear()
        self.bounds_cache.reset()
