from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from engine.filters import RecordFilter
from engine.types import PersistentStore
from geo.aoi import ViewportBounds

log = logging.getLogger(__name__)

MAP_STATE_KEY = "map:state:v1"
CLUSTERING_PREF_KEY = "map:clustering:v1"
FILTER_KEY = "map:filters:v1"


@dataclass(frozen=True)
class MapState:
    bounds: ViewportBounds
    zoom: float


class MapStateStore:
    """
    Last map view, the clustering preference and the record filter, persisted as small JSON blobs.

    Unreadable blobs are dropped and treated as absent.
    """

    def __init__(self, store: PersistentStore):
        self.store = store

    def save(self, state: MapState) -> None:
        raw = json.dumps({"bounds": state.bounds.to_dict(), "zoom": float(state.zoom)})
        try:
            self.store.set(MAP_STATE_KEY, raw.encode("utf-8"))
        except Exception as e:
            log.warning("Saving map state failed: %s", e)

    def load(self) -> MapState | None:
        raw = self.store.get(MAP_STATE_KEY)
        if raw is None:
            return None
        try:
            data = json.loads(raw.decode("utf-8"))
            return MapState(
                bounds=ViewportBounds.from_dict(data["bounds"]), zoom=float(data["zoom"])
            )
        except Exception as e:
            log.warning("Discarding unreadable map state: %s", e)
            self._remove(MAP_STATE_KEY)
            return None

    def save_clustering(self, enabled: bool) -> None:
        try:
            self.store.set(CLUSTERING_PREF_KEY, b"1" if enabled else b"0")
        except Exception as e:
            log.warning("Saving clustering preference failed: %s", e)

    def load_clustering(self, default: bool = True) -> bool:
        raw = self.store.get(CLUSTERING_PREF_KEY)
        if raw == b"1":
            return True
        if raw == b"0":
            return False
        if raw is not None:
            self._remove(CLUSTERING_PREF_KEY)
        return default

    def save_filter(self, record_filter: RecordFilter) -> None:
        try:
            self.store.set(FILTER_KEY, json.dumps(record_filter.to_dict()).encode("utf-8"))
        except Exception as e:
            log.warning("Saving record filter failed: %s", e)

    def load_filter(self) -> RecordFilter:
        raw = self.store.get(FILTER_KEY)
        if raw is None:
            return RecordFilter()
        try:
            return RecordFilter.from_dict(json.loads(raw.decode("utf-8")))
        except Exception as e:
            log.warning("Discarding unreadable record filter: %s", e)
            self._remove(FILTER_KEY)
            return RecordFilter()

    def _remove(self, key: str) -> None:
        try:
            self.store.remove(key)
        except Exception as e:
            log.warning("Removing %s failed: %s", key, e)
