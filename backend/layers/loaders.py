from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from layers.types import SpatialRecord


def load_geojson_records(
    path: Path, *, category_prop: str = "category"
) -> list[SpatialRecord]:
    """
    Input: GeoJSON FeatureCollection of Point (or MultiPoint) features.

    The feature id falls back to `properties.id`, then to the feature index.
    Everything in `properties` except the category ends up in `attributes`.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    features = data.get("features") or []

    out: list[SpatialRecord] = []
    for i, feature in enumerate(features):
        geom = (feature or {}).get("geometry") or {}
        props = dict((feature or {}).get("properties") or {})
        gtype = geom.get("type")
        coords = geom.get("coordinates")
        if not coords:
            continue

        fid = str((feature or {}).get("id") or props.get("id") or f"rec-{i}")
        category = str(props.pop(category_prop, "") or "")

        if gtype == "Point":
            rec = _to_record(fid, coords, category, props)
            if rec is not None:
                out.append(rec)
        elif gtype == "MultiPoint":
            for j, p in enumerate(coords):
                rec = _to_record(f"{fid}-{j}", p, category, props)
                if rec is not None:
                    out.append(rec)

    return out


def _to_record(
    fid: str, coords: Any, category: str, props: dict[str, Any]
) -> SpatialRecord | None:
    if not coords or len(coords) < 2:
        return None
    lon, lat = float(coords[0]), float(coords[1])
    return SpatialRecord(id=fid, lat=lat, lon=lon, category=category, attributes=props)


def records_to_geojson(records: list[SpatialRecord]) -> dict[str, Any]:
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "id": r.id,
                "geometry": {"type": "Point", "coordinates": [r.lon, r.lat]},
                "properties": {"category": r.category, **r.attributes},
            }
            for r in records
        ],
    }
