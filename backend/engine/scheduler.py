from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum, IntEnum
from typing import Callable

from engine.context import EngineContext
from engine.errors import FetchError, LoadCancelledError
from engine.filters import RecordFilter
from engine.loader import CancelToken, LoadProgress, ProgressiveLoader
from engine.map_state import MapState
from engine.types import Fetcher
from geo.aoi import ViewportBounds
from layers.types import ClusterFeature, SpatialRecord
from lod.grid import GridClusterer, points_only
from telemetry.counters import TelemetryCounters

log = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    idle = "idle"
    animating = "animating"
    pending_during_animation = "pending_during_animation"


class RecomputeKind(IntEnum):
    # Ordered: a data pass also restyles, so it absorbs a style request.
    style = 1
    data = 2


@dataclass
class RenderState:
    is_animating: bool = False
    pending_recompute: bool = False
    last_applied_bounds: ViewportBounds | None = None
    last_zoom: float = 0.0


FeaturesCallback = Callable[[list[ClusterFeature]], None]
ErrorCallback = Callable[[Exception], None]
ProgressCallback = Callable[[LoadProgress], None]


def _merge(a: RecomputeKind | None, b: RecomputeKind) -> RecomputeKind:
    return b if a is None else max(a, b)


class RenderScheduler:
    """
    Coordinates viewport changes into recompute passes.

    - Two trailing debounce windows: data (viewport moved) and style (zoom only).
    - At most one pass runs at a time; triggers during a pass collapse into one follow-up.
    - While a zoom/pan animation is in flight nothing visible changes; requests collapse
      into a single pending flag that is honored by exactly one pass on animation end.
    - A failed fetch keeps the previous features on screen and is reported once.

    All methods must be called from the event loop thread that owns the scheduler.
    """

    def __init__(
        self,
        ctx: EngineContext,
        fetcher: Fetcher | None = None,
        *,
        loader: ProgressiveLoader | None = None,
        clusterer: GridClusterer | None = None,
    ):
        if loader is None and fetcher is None:
            raise ValueError("RenderScheduler needs a fetcher or a loader")
        self.ctx = ctx
        self.settings = ctx.config.scheduler
        self.loader = loader or ProgressiveLoader(fetcher, ctx.config.loader)  # type: ignore[arg-type]
        self.clusterer = clusterer or GridClusterer(ctx.config.cluster)
        self.clustering_enabled = ctx.map_state.load_clustering(default=True)
        self.record_filter = ctx.map_state.load_filter()

        self.viewport_loading = False
        self.progressive_loading = False
        self.last_progress: LoadProgress | None = None
        self.last_error: Exception | None = None
        self.passes_applied = 0
        self.fetches = 0

        self._state = SchedulerState.idle
        self._pending_kind: RecomputeKind | None = None
        self._render = RenderState()
        self._target: tuple[ViewportBounds, float] | None = None
        self._records: list[SpatialRecord] = []
        self._features: list[ClusterFeature] = []

        self._timers: dict[RecomputeKind, asyncio.TimerHandle] = {}
        self._task: asyncio.Task[None] | None = None
        self._follow_up: RecomputeKind | None = None
        self._load_token: CancelToken | None = None
        self._load_bounds: ViewportBounds | None = None

        self._feature_subs: list[FeaturesCallback] = []
        self._error_subs: list[ErrorCallback] = []
        self._progress_subs: list[ProgressCallback] = []

    # -- read side ---------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def render_state(self) -> RenderState:
        return replace(self._render)

    @property
    def is_busy(self) -> bool:
        return bool(self._timers) or (self._task is not None and not self._task.done())

    def get_current_features(self) -> list[ClusterFeature]:
        return list(self._features)

    def get_current_records(self) -> list[SpatialRecord]:
        return list(self._records)

    # -- subscriptions -----------------------------------------------------

    def on_features_changed(self, callback: FeaturesCallback) -> Callable[[], None]:
        return self._subscribe(self._feature_subs, callback)

    def on_error(self, callback: ErrorCallback) -> Callable[[], None]:
        return self._subscribe(self._error_subs, callback)

    def on_progress(self, callback: ProgressCallback) -> Callable[[], None]:
        return self._subscribe(self._progress_subs, callback)

    @staticmethod
    def _subscribe(subs: list, callback) -> Callable[[], None]:
        subs.append(callback)

        def unsubscribe() -> None:
            try:
                subs.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    # -- inputs ------------------------------------------------------------

    def request_viewport(self, bounds: ViewportBounds, zoom: float) -> None:
        zoom = float(zoom)
        same_bounds = self._target is not None and self._target[0] == bounds
        if same_bounds and self.ctx.bounds_cache.is_covered(bounds):
            kind = RecomputeKind.style
        else:
            kind = RecomputeKind.data
        self._target = (bounds, zoom)

        # Supersede an in-flight load that can't serve the new viewport.
        if (
            self._load_token is not None
            and self._load_bounds is not None
            and not self._load_bounds.contains(bounds)
        ):
            log.debug("Superseding in-flight load for %s", self._load_bounds)
            self._load_token.cancel()

        self._request(kind)

    def request_zoom(self, zoom: float) -> None:
        if self._target is None:
            return
        self._target = (self._target[0], float(zoom))
        self._request(RecomputeKind.style)

    def set_clustering_enabled(self, enabled: bool) -> None:
        self.clustering_enabled = bool(enabled)
        self.ctx.map_state.save_clustering(self.clustering_enabled)
        if self._target is not None:
            self._request(RecomputeKind.style)

    def set_record_filter(self, record_filter: RecordFilter) -> None:
        self.record_filter = record_filter
        self.ctx.map_state.save_filter(record_filter)
        if self._target is not None:
            self._request(RecomputeKind.style)

    def restore_map_state(self) -> MapState | None:
        state = self.ctx.map_state.load()
        if state is not None:
            self.request_viewport(state.bounds, state.zoom)
        return state

    def on_animation_start(self) -> None:
        if self._state == SchedulerState.animating:
            return
        self._state = SchedulerState.animating
        self._render.is_animating = True
        # Debounce windows still open become the pending request.
        for kind, handle in list(self._timers.items()):
            handle.cancel()
            self._mark_pending(kind)
        self._timers.clear()

    def on_animation_end(self) -> None:
        if self._state == SchedulerState.idle:
            return
        kind = self._pending_kind
        self._pending_kind = None
        self._render.pending_recompute = False
        self._render.is_animating = False
        self._state = SchedulerState.idle
        if kind is not None:
            self._start_pass(kind)

    # -- cache surface -----------------------------------------------------

    def get_cache_telemetry(self) -> TelemetryCounters:
        return self.ctx.cache_telemetry()

    def reset_cache_telemetry(self) -> None:
        self.ctx.reset_cache_telemetry()

    def clear_caches(self) -> None:
        self.ctx.clear_caches()

    # -- lifecycle ---------------------------------------------------------

    async def wait_idle(self) -> None:
        """
        Wait until no debounce window is open and no pass is running.
        """
        while True:
            task = self._task
            if task is not None and not task.done():
                await asyncio.wait({task})
                continue
            if self._timers:
                await asyncio.sleep(0.001)
                continue
            return

    async def aclose(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        if self._load_token is not None:
            self._load_token.cancel()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # -- state machine internals -------------------------------------------

    def _mark_pending(self, kind: RecomputeKind) -> None:
        self._pending_kind = _merge(self._pending_kind, kind)
        self._render.pending_recompute = True
        self._state = SchedulerState.pending_during_animation

    def _request(self, kind: RecomputeKind) -> None:
        if self._state != SchedulerState.idle:
            self._mark_pending(kind)
            return
        delay = (
            self.settings.data_debounce_s
            if kind == RecomputeKind.data
            else self.settings.style_debounce_s
        )
        old = self._timers.pop(kind, None)
        if old is not None:
            old.cancel()
        loop = asyncio.get_running_loop()
        self._timers[kind] = loop.call_later(delay, self._on_debounce_fired, kind)

    def _on_debounce_fired(self, kind: RecomputeKind) -> None:
        self._timers.pop(kind, None)
        if self._state != SchedulerState.idle:
            self._mark_pending(kind)
            return
        self._start_pass(kind)

    def _start_pass(self, kind: RecomputeKind) -> None:
        if self._task is not None and not self._task.done():
            self._follow_up = _merge(self._follow_up, kind)
            return
        self._task = asyncio.get_running_loop().create_task(self._run(kind))

    async def _run(self, kind: RecomputeKind) -> None:
        next_kind: RecomputeKind | None = kind
        while next_kind is not None:
            try:
                await self._run_pass(next_kind)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.exception("Recompute pass failed")
                self._notify_error(e)
            next_kind, self._follow_up = self._follow_up, None
            if next_kind is not None and self._state != SchedulerState.idle:
                self._mark_pending(next_kind)
                next_kind = None

    async def _run_pass(self, kind: RecomputeKind) -> None:
        if self._target is None:
            return
        bounds, zoom = self._target
        t0 = time.perf_counter()

        fetched = False
        if kind == RecomputeKind.data:
            try:
                fetched = await self._ensure_data(bounds)
            except LoadCancelledError:
                log.debug("Load for %s superseded", bounds)
                return
            except FetchError as e:
                log.warning("Fetch for %s failed, keeping previous features: %s", bounds, e)
                self._notify_error(e)
                return

        features = self._compute(bounds, zoom)

        if self._state != SchedulerState.idle:
            # Never mutate visible output mid-animation; redo after it ends.
            self._mark_pending(kind)
            return

        self._features = features
        self._render.last_applied_bounds = bounds
        self._render.last_zoom = zoom
        self.passes_applied += 1
        self.last_error = None
        self.ctx.map_state.save(MapState(bounds=bounds, zoom=zoom))
        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        log.debug(
            "Applied %s pass: %d records -> %d features (fetched=%s, %.1fms)",
            kind.name,
            len(self._records),
            len(features),
            fetched,
            elapsed_ms,
            extra={
                "pass_kind": kind.name,
                "records": len(self._records),
                "features": len(features),
                "fetched": fetched,
                "elapsed_ms": round(elapsed_ms, 1),
            },
        )
        self._notify_features(features)

    async def _ensure_data(self, bounds: ViewportBounds) -> bool:
        if self.ctx.bounds_cache.is_covered(bounds):
            return False

        padded = bounds.padded(self.settings.viewport_padding_ratio)
        token = CancelToken()
        self._load_token = token
        self._load_bounds = padded
        self.viewport_loading = True
        self.progressive_loading = self.settings.progressive
        try:
            if self.settings.progressive:
                records = await self.loader.fetch_batched(
                    padded, self._progress_handler(token), cancel=token
                )
            else:
                records = await self.loader.fetch_all(padded, cancel=token)
        finally:
            self.viewport_loading = False
            self.progressive_loading = False
            if self._load_token is token:
                self._load_token = None
                self._load_bounds = None

        token.raise_if_cancelled()
        self._records = records
        self.ctx.bounds_cache.record_loaded(padded)
        self.fetches += 1
        return True

    def _progress_handler(self, token: CancelToken) -> ProgressCallback:
        def handle(p: LoadProgress) -> None:
            if token.cancelled:
                return
            self.last_progress = p
            for cb in list(self._progress_subs):
                try:
                    cb(p)
                except Exception:
                    log.exception("Progress subscriber failed")

        return handle

    def _compute(self, bounds: ViewportBounds, zoom: float) -> list[ClusterFeature]:
        visible = self.clusterer.cull(self.record_filter.apply(self._records), bounds)
        if not self.clustering_enabled:
            return points_only(visible)
        return self.clusterer(visible, bounds, zoom)

    def _notify_features(self, features: list[ClusterFeature]) -> None:
        for cb in list(self._feature_subs):
            try:
                cb(list(features))
            except Exception:
                log.exception("Features subscriber failed")

    def _notify_error(self, error: Exception) -> None:
        self.last_error = error
        for cb in list(self._error_subs):
            try:
                cb(error)
            except Exception:
                log.exception("Error subscriber failed")
