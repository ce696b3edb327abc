from __future__ import annotations

from dataclasses import dataclass, field

from shapely.geometry import Point
from shapely.geometry import box as shapely_box
from shapely.strtree import STRtree

from geo.aoi import ViewportBounds
from geo.ops import distance_m, is_finite_coord, radius_bbox_deg
from layers.types import SpatialRecord


@dataclass
class RecordIndex:
    """
    STRtree-backed index over a fixed record set.

    Notes:
    - Geometry is EPSG:4326 (lon/lat degrees), bbox queries are boundary-inclusive.
    - Records with non-finite coordinates are not indexed.
    - Query results are ordered by record id so paging is stable.
    """

    records: list[SpatialRecord]

    _tree: STRtree | None = field(default=None, repr=False)
    _indexed: list[SpatialRecord] = field(default_factory=list, repr=False)
    _slice_cache: dict[tuple[float, float, float, float], list[SpatialRecord]] = field(
        default_factory=dict, repr=False
    )

    def __post_init__(self) -> None:
        self._indexed = [r for r in self.records if is_finite_coord(r.lat, r.lon)]
        geoms = [Point(r.lon, r.lat) for r in self._indexed]
        self._tree = STRtree(geoms) if geoms else None

    def in_bounds(self, bounds: ViewportBounds) -> list[SpatialRecord]:
        key = bounds.rounded_key(decimals=6)
        cached = self._slice_cache.get(key)
        if cached is not None:
            return cached
        if self._tree is None:
            return []
        q = shapely_box(bounds.west, bounds.south, bounds.east, bounds.north)
        idxs = self._tree.query(q)
        out = [self._indexed[int(i)] for i in idxs]
        out.sort(key=lambda r: r.id)
        if len(self._slice_cache) >= 64:
            self._slice_cache.pop(next(iter(self._slice_cache)), None)
        self._slice_cache[key] = out
        return out

    def nearby(self, lat: float, lon: float, radius_m: float) -> list[tuple[SpatialRecord, float]]:
        """
        Records within `radius_m` meters, nearest first.
        """
        if self._tree is None or radius_m <= 0:
            return []
        min_lon, min_lat, max_lon, max_lat = radius_bbox_deg(lat, lon, radius_m)
        idxs = self._tree.query(shapely_box(min_lon, min_lat, max_lon, max_lat))
        out: list[tuple[SpatialRecord, float]] = []
        for i in idxs:
            r = self._indexed[int(i)]
            d = distance_m(lat, lon, r.lat, r.lon)
            if d <= radius_m:
                out.append((r, d))
        out.sort(key=lambda t: (t[1], t[0].id))
        return out
