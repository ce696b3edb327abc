from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from engine.errors import CacheCorruptionError
from engine.types import BroadcastBus, PersistentStore
from telemetry.counters import CacheTelemetry, Channel

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    inserted_at: float
    ttl_s: float

    def is_fresh(self, now: float) -> bool:
        return now - self.inserted_at < self.ttl_s


def snapshot_key(name: str) -> str:
    return f"metadata:{name}:v1"


def topic(name: str) -> str:
    return f"metadata.{name}"


class MetadataCache(Generic[T]):
    """
    TTL cache in front of an expensive per-key lookup (e.g. record classification).

    - Every miss persists a full snapshot `{key: {timestamp, value}}` and publishes it.
    - `clear()` persists the empty state and publishes an invalidation.
    - Messages from other contexts replace our entries wholesale.

    Values must be JSON-serializable to be persisted; otherwise they stay memory-only.
    """

    def __init__(
        self,
        name: str,
        lookup: Callable[[str], Awaitable[T]],
        *,
        store: PersistentStore,
        telemetry: CacheTelemetry,
        channel: Channel = "a",
        ttl_s: float = 24 * 60 * 60.0,
        bus: BroadcastBus | None = None,
        origin: str = "",
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.lookup = lookup
        self.store = store
        self.telemetry = telemetry
        self.channel = channel
        self.ttl_s = float(ttl_s)
        self.bus = bus
        self.origin = origin
        self._clock = clock
        self._entries: dict[str, CacheEntry[T]] = {}
        self._inflight: dict[str, asyncio.Future[T]] = {}
        self._unsubscribe: Callable[[], None] | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def restore(self) -> None:
        raw = self.store.get(snapshot_key(self.name))
        if raw is None:
            return
        try:
            self._entries = self._decode(raw)
        except CacheCorruptionError as e:
            log.warning("Discarding metadata snapshot %r, starting cold: %s", self.name, e)
            self._entries = {}
            try:
                self.store.remove(snapshot_key(self.name))
            except Exception as e2:
                log.warning("Could not remove metadata snapshot %r: %s", self.name, e2)

    def attach(self) -> None:
        if self.bus is not None and self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(topic(self.name), self._on_message)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def get(self, key: str) -> T:
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(now):
            self.telemetry.record(self.channel, hit=True)
            return entry.value

        pending = self._inflight.get(key)
        if pending is not None:
            # Someone is already looking this key up; share the result.
            self.telemetry.record(self.channel, hit=True)
            return await asyncio.shield(pending)

        self.telemetry.record(self.channel, hit=False)
        fut: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._inflight[key] = fut
        try:
            value = await self.lookup(key)
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            fut.set_exception(e)
            # Mark retrieved so an unshared failure is not reported as "never retrieved".
            fut.exception()
            raise
        finally:
            self._inflight.pop(key, None)

        self._entries[key] = CacheEntry(value=value, inserted_at=self._clock(), ttl_s=self.ttl_s)
        if not fut.done():
            fut.set_result(value)
        self._persist()
        self._publish({"type": "snapshot", "entries": self._encode_entries()})
        return value

    def peek(self, key: str) -> T | None:
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self._clock()):
            return None
        return entry.value

    def snapshot(self) -> dict[str, CacheEntry[T]]:
        return dict(self._entries)

    def invalidate(self, key: str) -> bool:
        if self._entries.pop(key, None) is None:
            return False
        self._persist()
        self._publish({"type": "snapshot", "entries": self._encode_entries()})
        return True

    def prune(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if not e.is_fresh(now)]
        for k in expired:
            del self._entries[k]
        if expired:
            self._persist()
        return len(expired)

    def clear(self) -> None:
        self._entries = {}
        self._persist()
        self._publish({"type": "clear"})

    def _on_message(self, message: dict[str, Any]) -> None:
        if message.get("origin") == self.origin:
            return
        kind = message.get("type")
        if kind == "clear":
            self._entries = {}
        elif kind == "snapshot":
            try:
                self._entries = self._decode_entries(message.get("entries"))
            except CacheCorruptionError as e:
                log.warning("Ignoring malformed %r snapshot broadcast: %s", self.name, e)

    def _publish(self, message: dict[str, Any]) -> None:
        if self.bus is None:
            return
        try:
            self.bus.publish(topic(self.name), {"origin": self.origin, **message})
        except Exception as e:
            log.warning("Publishing %r cache message failed: %s", self.name, e)

    def _encode_entries(self) -> dict[str, dict[str, Any]]:
        return {
            k: {"timestamp": e.inserted_at, "value": e.value}
            for k, e in self._entries.items()
        }

    def _persist(self) -> None:
        try:
            raw = json.dumps(self._encode_entries(), ensure_ascii=False).encode("utf-8")
            self.store.set(snapshot_key(self.name), raw)
        except Exception as e:
            log.warning("Persisting %r metadata snapshot failed: %s", self.name, e)

    def _decode(self, raw: bytes) -> dict[str, CacheEntry[T]]:
        try:
            data = json.loads(raw.decode("utf-8"))
        except Exception as e:
            raise CacheCorruptionError(f"snapshot is not valid JSON: {e}") from e
        return self._decode_entries(data)

    def _decode_entries(self, data: Any) -> dict[str, CacheEntry[T]]:
        if not isinstance(data, dict):
            raise CacheCorruptionError("snapshot root is not an object")
        out: dict[str, CacheEntry[T]] = {}
        for k, v in data.items():
            if not isinstance(v, dict) or "value" not in v:
                raise CacheCorruptionError(f"entry {k!r} is malformed")
            ts = v.get("timestamp")
            if not isinstance(ts, (int, float)) or isinstance(ts, bool):
                raise CacheCorruptionError(f"entry {k!r} has no valid timestamp")
            out[str(k)] = CacheEntry(value=v["value"], inserted_at=float(ts), ttl_s=self.ttl_s)
        return out
