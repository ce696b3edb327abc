from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

# Both tunable per deployment (YAML or env).
DEFAULT_CLUSTER_MAX_ZOOM = 14.0
DEFAULT_VIEWPORT_PADDING_RATIO = 0.15

# 100px grid cells on a 256px tile at zoom 0, expressed in degrees of longitude.
DEFAULT_BASE_CELL_SIZE_DEG = 100.0 * 360.0 / 256.0


class ClusterSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    cluster_max_zoom: float = Field(default=DEFAULT_CLUSTER_MAX_ZOOM, ge=0.0, le=24.0)
    base_cell_size_deg: float = Field(default=DEFAULT_BASE_CELL_SIZE_DEG, gt=0.0)
    base_zoom: float = Field(default=0.0, ge=0.0, le=24.0)
    # Cells with fewer members render their points individually.
    min_cluster_size: int = Field(default=2, ge=1)
    # Viewport culling margin applied before clustering (avoids pop-in at edges).
    cull_padding_ratio: float = Field(default=0.1, ge=0.0, le=1.0)


class LoaderSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    initial_batch_size: int = Field(default=500, ge=1)
    min_batch_size: int = Field(default=100, ge=1)
    max_batch_size: int = Field(default=2_000, ge=1)
    # Average batch latency thresholds driving batch size adaptation.
    fast_batch_ms: float = Field(default=300.0, ge=0.0)
    slow_batch_ms: float = Field(default=1_500.0, ge=0.0)
    grow_factor: float = Field(default=2.0, ge=1.0)
    # Timed batches required before the batch size may grow.
    grow_min_batches: int = Field(default=2, ge=1)
    shrink_factor: float = Field(default=0.5, gt=0.0, le=1.0)
    max_retries: int = Field(default=3, ge=0)
    backoff_base_s: float = Field(default=0.25, ge=0.0)
    backoff_max_s: float = Field(default=4.0, ge=0.0)
    batch_timeout_s: float = Field(default=10.0, gt=0.0)

    @model_validator(mode="after")
    def _check_range(self) -> "LoaderSettings":
        if self.min_batch_size > self.max_batch_size:
            raise ValueError("min_batch_size must be <= max_batch_size")
        if self.fast_batch_ms > self.slow_batch_ms:
            raise ValueError("fast_batch_ms must be <= slow_batch_ms")
        return self

    def clamp(self, size: float) -> int:
        return max(self.min_batch_size, min(self.max_batch_size, int(size)))


class SchedulerSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    data_debounce_s: float = Field(default=0.25, ge=0.0)
    style_debounce_s: float = Field(default=0.05, ge=0.0)
    viewport_padding_ratio: float = Field(default=DEFAULT_VIEWPORT_PADDING_RATIO, ge=0.0, le=1.0)
    # Use batched loading with progress reporting instead of a single fetch.
    progressive: bool = True


class CacheSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    metadata_ttl_s: float = Field(default=24 * 60 * 60.0, gt=0.0)
    telemetry_flush_s: float = Field(default=1.0, ge=0.0)


class EngineConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    cluster: ClusterSettings = Field(default_factory=ClusterSettings)
    loader: LoaderSettings = Field(default_factory=LoaderSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)


def _env_float(name: str) -> float | None:
    raw = (os.getenv(name) or "").strip()
    if raw:
        try:
            return float(raw)
        except Exception:
            pass
    return None


def _load_yaml(path: Path) -> dict:
    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid engine config yaml root: {path}")
    return data


def load_config(path: Path | str | None = None) -> EngineConfig:
    """
    Load engine config from YAML (explicit path or `PINMAP_CONFIG`), then apply env overrides.

    No path and unset env -> defaults.
    """
    p = path or (os.getenv("PINMAP_CONFIG") or "").strip() or None
    data: dict = _load_yaml(Path(p)) if p else {}

    max_zoom = _env_float("PINMAP_CLUSTER_MAX_ZOOM")
    if max_zoom is not None:
        data.setdefault("cluster", {})["cluster_max_zoom"] = max_zoom
    padding = _env_float("PINMAP_VIEWPORT_PADDING")
    if padding is not None:
        data.setdefault("scheduler", {})["viewport_padding_ratio"] = padding

    return EngineConfig.model_validate(data)
