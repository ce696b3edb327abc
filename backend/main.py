from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, model_validator

from api.runtime import EngineRuntime, build_runtime
from engine.filters import RecordFilter
from geo.aoi import ViewportBounds
from layers.types import ClusterMarker, feature_to_dict
from telemetry.logging_setup import setup_logging

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    rt = build_runtime()
    restored = rt.scheduler.restore_map_state()
    if restored is not None:
        log.info("Restored map view at zoom %.1f", restored.zoom)
    app.state.runtime = rt
    try:
        yield
    finally:
        await rt.aclose()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ApiBounds(BaseModel):
    north: float = Field(ge=-90, le=90)
    south: float = Field(ge=-90, le=90)
    east: float = Field(ge=-180, le=180)
    west: float = Field(ge=-180, le=180)

    @model_validator(mode="after")
    def _ordered(self) -> "ApiBounds":
        if self.north < self.south:
            raise ValueError("north must be >= south")
        if self.east < self.west:
            raise ValueError("east must be >= west (split antimeridian viewports)")
        return self

    def to_bounds(self) -> ViewportBounds:
        return ViewportBounds(north=self.north, south=self.south, east=self.east, west=self.west)


class ApiViewport(BaseModel):
    bbox: ApiBounds
    zoom: float = Field(ge=0, le=24)
    wait: bool = True


class ApiClustering(BaseModel):
    enabled: bool
    wait: bool = True


class ApiFilters(BaseModel):
    hidden_categories: list[str] = Field(default_factory=list)
    show_pending: bool = False
    show_rejected: bool = False
    show_removed: bool = False
    wait: bool = True

    def to_filter(self) -> RecordFilter:
        return RecordFilter(
            hidden_categories=frozenset(self.hidden_categories),
            show_pending=self.show_pending,
            show_rejected=self.show_rejected,
            show_removed=self.show_removed,
        )


def _runtime(request: Request) -> EngineRuntime:
    rt = getattr(request.app.state, "runtime", None)
    if rt is None:
        raise HTTPException(status_code=503, detail="Engine not started")
    return rt


def _state_payload(rt: EngineRuntime) -> dict[str, Any]:
    s = rt.scheduler
    rs = s.render_state
    progress = s.last_progress
    return {
        "state": s.state.value,
        "isAnimating": rs.is_animating,
        "pendingRecompute": rs.pending_recompute,
        "lastAppliedBounds": rs.last_applied_bounds.to_dict() if rs.last_applied_bounds else None,
        "lastZoom": rs.last_zoom,
        "viewportLoading": s.viewport_loading,
        "progressiveLoading": s.progressive_loading,
        "clusteringEnabled": s.clustering_enabled,
        "filters": {**s.record_filter.to_dict(), "activeCount": s.record_filter.active_count},
        "progress": (
            {
                "loaded": progress.loaded,
                "totalEstimate": progress.total_estimate,
                "batchSize": progress.batch_size,
                "averageBatchTimeMs": progress.average_batch_time_ms,
            }
            if progress is not None
            else None
        ),
        "lastError": str(s.last_error) if s.last_error is not None else None,
        "passesApplied": s.passes_applied,
        "fetches": s.fetches,
    }


async def _features_payload(rt: EngineRuntime, *, variants: bool = False) -> dict[str, Any]:
    features = rt.scheduler.get_current_features()
    if variants:
        rows = await rt.classifier.decorate(features)
    else:
        rows = [feature_to_dict(f) for f in features]
    clusters = sum(1 for f in features if isinstance(f, ClusterMarker))
    return {
        "features": rows,
        "stats": {
            "clusters": clusters,
            "points": len(features) - clusters,
            "records": len(rt.scheduler.get_current_records()),
        },
        "state": _state_payload(rt),
    }


@app.post("/viewport")
async def post_viewport(body: ApiViewport, request: Request):
    rt = _runtime(request)
    rt.scheduler.request_viewport(body.bbox.to_bounds(), body.zoom)
    if body.wait:
        await rt.scheduler.wait_idle()
    return await _features_payload(rt)


@app.get("/features")
async def get_features(request: Request, variants: bool = False):
    return await _features_payload(_runtime(request), variants=variants)


@app.post("/animation/start")
async def post_animation_start(request: Request):
    rt = _runtime(request)
    rt.scheduler.on_animation_start()
    return _state_payload(rt)


@app.post("/animation/end")
async def post_animation_end(request: Request, wait: bool = True):
    rt = _runtime(request)
    rt.scheduler.on_animation_end()
    if wait:
        await rt.scheduler.wait_idle()
    return await _features_payload(rt)


@app.get("/telemetry/cache")
async def get_cache_telemetry(request: Request):
    return _runtime(request).scheduler.get_cache_telemetry().to_dict()


@app.post("/telemetry/cache/reset")
async def post_cache_telemetry_reset(request: Request):
    rt = _runtime(request)
    rt.scheduler.reset_cache_telemetry()
    return rt.scheduler.get_cache_telemetry().to_dict()


@app.post("/caches/clear")
async def post_caches_clear(request: Request):
    _runtime(request).scheduler.clear_caches()
    return {"ok": True}


@app.put("/preferences/clustering")
async def put_clustering(body: ApiClustering, request: Request):
    rt = _runtime(request)
    rt.scheduler.set_clustering_enabled(body.enabled)
    if body.wait:
        await rt.scheduler.wait_idle()
    return await _features_payload(rt)


@app.put("/preferences/filters")
async def put_filters(body: ApiFilters, request: Request):
    rt = _runtime(request)
    rt.scheduler.set_record_filter(body.to_filter())
    if body.wait:
        await rt.scheduler.wait_idle()
    return await _features_payload(rt)


@app.get("/state")
async def get_state(request: Request):
    return _state_payload(_runtime(request))


@app.get("/nearby")
async def get_nearby(
    request: Request,
    lat: float = Query(ge=-90, le=90),
    lon: float = Query(ge=-180, le=180),
    radius_m: float = Query(default=1000.0, gt=0),
):
    rt = _runtime(request)
    fetch_nearby = getattr(rt.fetcher, "fetch_nearby", None)
    if fetch_nearby is None:
        raise HTTPException(status_code=501, detail="Fetcher does not support nearby search")
    rows = await fetch_nearby(lat, lon, radius_m)
    return [
        {
            "id": r.id,
            "lat": r.lat,
            "lon": r.lon,
            "category": r.category,
            "distanceM": round(d, 1),
        }
        for r, d in rows
    ]
