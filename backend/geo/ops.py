from __future__ import annotations

import math
from functools import lru_cache

from pyproj import Geod


@lru_cache(maxsize=1)
def _geod() -> Geod:
    return Geod(ellps="WGS84")


def is_finite_coord(lat: float, lon: float) -> bool:
    try:
        return math.isfinite(float(lat)) and math.isfinite(float(lon))
    except (TypeError, ValueError):
        return False


def distance_m(lat_a: float, lon_a: float, lat_b: float, lon_b: float) -> float:
    """
    Geodesic distance in meters on the WGS84 ellipsoid.
    """
    _az12, _az21, dist = _geod().inv(
        float(lon_a), float(lat_a), float(lon_b), float(lat_b)
    )
    return float(dist)


def radius_bbox_deg(lat: float, lon: float, radius_m: float) -> tuple[float, float, float, float]:
    """
    Conservative (min_lon, min_lat, max_lon, max_lat) box around a circle.

    Used as a cheap prefilter before exact distance checks.
    """
    g = _geod()
    max_lat = g.fwd(lon, lat, 0.0, radius_m)[1]
    min_lat = g.fwd(lon, lat, 180.0, radius_m)[1]
    east_lon = g.fwd(lon, lat, 90.0, radius_m)[0]
    west_lon = g.fwd(lon, lat, 270.0, radius_m)[0]
    # Widen a little: meridians converge away from the equator.
    pad = abs(east_lon - lon) * 0.05
    return (
        max(-180.0, min(west_lon, lon) - pad),
        max(-90.0, min_lat),
        min(180.0, max(east_lon, lon) + pad),
        min(90.0, max_lat),
    )
