from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Literal

from engine.errors import CacheCorruptionError
from engine.types import BroadcastBus, PersistentStore

log = logging.getLogger(__name__)

Channel = Literal["a", "b"]

COUNTERS_KEY = "telemetry:cache_counters:v1"
COUNTERS_TOPIC = "telemetry.cache_counters"


@dataclass(frozen=True)
class TelemetryCounters:
    hit_a: int = 0
    miss_a: int = 0
    hit_b: int = 0
    miss_b: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "TelemetryCounters":
        try:
            data = json.loads(raw.decode("utf-8"))
            return cls.from_dict(data)
        except CacheCorruptionError:
            raise
        except Exception as e:
            raise CacheCorruptionError(f"bad counters snapshot: {e}") from e

    @classmethod
    def from_dict(cls, data: Any) -> "TelemetryCounters":
        if not isinstance(data, dict):
            raise CacheCorruptionError("counters snapshot is not an object")
        out: dict[str, int] = {}
        for name in ("hit_a", "miss_a", "hit_b", "miss_b"):
            v = data.get(name, 0)
            if not isinstance(v, int) or isinstance(v, bool) or v < 0:
                raise CacheCorruptionError(f"counter {name!r} is invalid: {v!r}")
            out[name] = v
        return cls(**out)


class CacheTelemetry:
    """
    Hit/miss counters for the metadata caches.

    Durable writes are coalesced into one per `flush_delay_s` window. `flush()`
    and `reset()` write synchronously. Counter snapshots published on the bus
    are adopted wholesale by other contexts, never summed.
    """

    def __init__(
        self,
        store: PersistentStore,
        *,
        bus: BroadcastBus | None = None,
        origin: str = "",
        flush_delay_s: float = 1.0,
    ):
        self.store = store
        self.bus = bus
        self.origin = origin
        self.flush_delay_s = float(flush_delay_s)
        self._counters = TelemetryCounters()
        self._flush_handle: asyncio.TimerHandle | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self.writes = 0

    def restore(self) -> None:
        raw = self.store.get(COUNTERS_KEY)
        if raw is None:
            return
        try:
            self._counters = TelemetryCounters.from_json(raw)
        except CacheCorruptionError as e:
            log.warning("Discarding telemetry counters snapshot: %s", e)
            self._safe_remove()
            self._counters = TelemetryCounters()

    def attach(self) -> None:
        if self.bus is not None and self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(COUNTERS_TOPIC, self._on_message)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def snapshot(self) -> TelemetryCounters:
        # Frozen dataclass: callers can't mutate our state through it.
        return self._counters

    @property
    def dirty(self) -> bool:
        return self._flush_handle is not None

    def record(self, channel: Channel, *, hit: bool) -> None:
        c = self._counters
        if channel == "a":
            c = replace(c, hit_a=c.hit_a + 1) if hit else replace(c, miss_a=c.miss_a + 1)
        elif channel == "b":
            c = replace(c, hit_b=c.hit_b + 1) if hit else replace(c, miss_b=c.miss_b + 1)
        else:
            raise ValueError(f"Unknown telemetry channel: {channel!r}")
        self._counters = c
        self._schedule_flush()

    def reset(self) -> None:
        self._counters = TelemetryCounters()
        self.flush()

    def adopt(self, counters: TelemetryCounters) -> None:
        self._counters = counters

    def flush(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        try:
            self.store.set(COUNTERS_KEY, self._counters.to_json())
            self.writes += 1
        except Exception as e:
            log.warning("Telemetry flush failed: %s", e)
            return
        if self.bus is None:
            return
        try:
            self.bus.publish(
                COUNTERS_TOPIC,
                {"origin": self.origin, "counters": asdict(self._counters)},
            )
        except Exception as e:
            log.warning("Publishing telemetry counters failed: %s", e)

    def _schedule_flush(self) -> None:
        if self._flush_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to debounce on (sync caller): write through.
            self.flush()
            return
        self._flush_handle = loop.call_later(self.flush_delay_s, self._on_flush_timer)

    def _on_flush_timer(self) -> None:
        self._flush_handle = None
        self.flush()

    def _on_message(self, message: dict[str, Any]) -> None:
        if message.get("origin") == self.origin:
            return
        try:
            self.adopt(TelemetryCounters.from_dict(message.get("counters")))
        except CacheCorruptionError as e:
            log.warning("Ignoring malformed counters broadcast: %s", e)

    def _safe_remove(self) -> None:
        try:
            self.store.remove(COUNTERS_KEY)
        except Exception as e:
            log.warning("Could not remove counters snapshot: %s", e)
