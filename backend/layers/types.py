from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, TypeAlias, Union


@dataclass(frozen=True)
class SpatialRecord:
    """
    A geolocated record as returned by a fetcher.

    Records are immutable; a refetch replaces the whole set.
    """

    id: str
    lat: float
    lon: float
    category: str = ""
    # Opaque payload, passed through to point features untouched.
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PointFeature:
    id: str
    lat: float
    lon: float
    properties: dict[str, Any]


@dataclass(frozen=True)
class ClusterMarker:
    centroid_lat: float
    centroid_lon: float
    count: int
    member_ids: tuple[str, ...]
    cell_id: str

    @property
    def abbreviated(self) -> str:
        if self.count >= 1000:
            return f"{self.count / 1000:.1f}k"
        return str(self.count)


ClusterFeature: TypeAlias = Union[PointFeature, ClusterMarker]


def feature_to_dict(feature: ClusterFeature) -> dict[str, Any]:
    """
    JSON-friendly shape for a render feature (used by the HTTP layer).
    """
    match feature:
        case ClusterMarker():
            return {
                "kind": "cluster",
                "cellId": feature.cell_id,
                "lat": feature.centroid_lat,
                "lon": feature.centroid_lon,
                "count": feature.count,
                "countAbbreviated": feature.abbreviated,
                "memberIds": list(feature.member_ids),
            }
        case PointFeature():
            return {
                "kind": "point",
                "id": feature.id,
                "lat": feature.lat,
                "lon": feature.lon,
                "properties": dict(feature.properties),
            }
    raise TypeError(f"Unknown feature type: {type(feature).__name__}")
