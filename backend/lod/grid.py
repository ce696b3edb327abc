from __future__ import annotations

import hashlib
import logging
import math
from typing import Iterable

from engine.config import ClusterSettings
from engine.errors import ClusterInputError
from geo.aoi import ViewportBounds
from geo.ops import is_finite_coord
from layers.types import ClusterFeature, ClusterMarker, PointFeature, SpatialRecord

log = logging.getLogger(__name__)


def cell_size_deg(zoom: float, settings: ClusterSettings) -> float:
    """
    Grid cell size in degrees; halves with every integer zoom step.

    Fractional zooms use the floor so the grid does not shift during a pinch.
    """
    steps = math.floor(float(zoom)) - settings.base_zoom
    return settings.base_cell_size_deg / (2.0**steps)


def cell_id(size_deg: float, cx: int, cy: int) -> str:
    # Depends only on the cell, never on its members.
    raw = f"{size_deg!r}:{cx}:{cy}".encode("utf-8")
    return hashlib.blake2b(raw, digest_size=8).hexdigest()


def _checked(record: SpatialRecord) -> SpatialRecord:
    if not is_finite_coord(record.lat, record.lon):
        raise ClusterInputError(
            f"record {record.id!r} has non-finite coordinates ({record.lat}, {record.lon})"
        )
    return record


def _valid_records(points: Iterable[SpatialRecord]) -> list[SpatialRecord]:
    out: list[SpatialRecord] = []
    dropped = 0
    for p in points:
        try:
            out.append(_checked(p))
        except ClusterInputError as e:
            dropped += 1
            log.debug("Dropping record from clustering: %s", e)
    if dropped:
        log.warning("Dropped %d record(s) with non-finite coordinates", dropped)
    return out


def _point_feature(r: SpatialRecord) -> PointFeature:
    props = {"category": r.category, **r.attributes}
    return PointFeature(id=r.id, lat=float(r.lat), lon=float(r.lon), properties=props)


def cluster_records(
    points: Iterable[SpatialRecord],
    bounds: ViewportBounds,
    zoom: float,
    settings: ClusterSettings | None = None,
) -> list[ClusterFeature]:
    """
    Grid clustering anchored at the viewport's south-west corner.

    Deterministic: the output does not depend on input ordering (centroids use
    `math.fsum`, member ids are sorted, cell ids hash only the cell).
    """
    s = settings or ClusterSettings()
    valid = _valid_records(points)

    if float(zoom) > s.cluster_max_zoom:
        return sorted((_point_feature(r) for r in valid), key=lambda f: f.id)

    size = cell_size_deg(zoom, s)
    buckets: dict[tuple[int, int], list[SpatialRecord]] = {}
    for r in valid:
        # floor() gives half-open [lo, hi) cells: boundary points go to the higher cell.
        cx = math.floor((r.lon - bounds.west) / size)
        cy = math.floor((r.lat - bounds.south) / size)
        buckets.setdefault((cx, cy), []).append(r)

    clusters: list[ClusterMarker] = []
    singles: list[PointFeature] = []
    for (cx, cy), members in buckets.items():
        if len(members) < s.min_cluster_size:
            singles.extend(_point_feature(m) for m in members)
            continue
        n = len(members)
        clusters.append(
            ClusterMarker(
                centroid_lat=math.fsum(m.lat for m in members) / n,
                centroid_lon=math.fsum(m.lon for m in members) / n,
                count=n,
                member_ids=tuple(sorted(m.id for m in members)),
                cell_id=cell_id(size, cx, cy),
            )
        )

    # Larger clusters first (nice at low zoom).
    clusters.sort(key=lambda c: (-c.count, c.cell_id))
    singles.sort(key=lambda p: p.id)
    return [*clusters, *singles]


def points_only(points: Iterable[SpatialRecord]) -> list[ClusterFeature]:
    """
    One point feature per valid record (clustering disabled by preference).
    """
    return sorted((_point_feature(r) for r in _valid_records(points)), key=lambda f: f.id)


def cull_to_viewport(
    points: Iterable[SpatialRecord], bounds: ViewportBounds, padding_ratio: float
) -> list[SpatialRecord]:
    """
    Keep records inside the padded viewport.
    """
    b = bounds.padded(padding_ratio)
    return [p for p in points if b.contains_point(p.lat, p.lon)]


class GridClusterer:
    """
    Callable wrapper binding cluster settings.
    """

    def __init__(self, settings: ClusterSettings | None = None):
        self.settings = settings or ClusterSettings()

    def __call__(
        self, points: Iterable[SpatialRecord], bounds: ViewportBounds, zoom: float
    ) -> list[ClusterFeature]:
        return cluster_records(points, bounds, zoom, self.settings)

    def cull(
        self, points: Iterable[SpatialRecord], bounds: ViewportBounds
    ) -> list[SpatialRecord]:
        return cull_to_viewport(points, bounds, self.settings.cull_padding_ratio)
