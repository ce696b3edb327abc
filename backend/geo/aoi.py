from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ViewportBounds:
    """
    WGS84 viewport rectangle in degrees.

    Convention used throughout this repo:
    - north >= south, east >= west (enforced on construction)
    - bounds crossing the antimeridian are not representable; callers split them
    """

    north: float
    south: float
    east: float
    west: float

    def __post_init__(self) -> None:
        if self.north < self.south:
            raise ValueError(f"north ({self.north}) < south ({self.south})")
        if self.east < self.west:
            raise ValueError(f"east ({self.east}) < west ({self.west})")

    @classmethod
    def from_corners(
        cls, lat_a: float, lon_a: float, lat_b: float, lon_b: float
    ) -> "ViewportBounds":
        """
        Build bounds from any two opposite corners (order does not matter).
        """
        return cls(
            north=max(float(lat_a), float(lat_b)),
            south=min(float(lat_a), float(lat_b)),
            east=max(float(lon_a), float(lon_b)),
            west=min(float(lon_a), float(lon_b)),
        )

    @property
    def width(self) -> float:
        return self.east - self.west

    @property
    def height(self) -> float:
        return self.north - self.south

    @property
    def is_degenerate(self) -> bool:
        vals = (self.north, self.south, self.east, self.west)
        if not all(math.isfinite(v) for v in vals):
            return True
        return self.width <= 0.0 or self.height <= 0.0

    def contains(self, other: "ViewportBounds") -> bool:
        return (
            self.north >= other.north
            and self.south <= other.south
            and self.east >= other.east
            and self.west <= other.west
        )

    def contains_point(self, lat: float, lon: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lon <= self.east

    def padded(self, ratio: float) -> "ViewportBounds":
        """
        Grow each side by `ratio` of the span, clamped to valid lat/lon ranges.
        """
        r = max(0.0, float(ratio))
        dlat = self.height * r
        dlon = self.width * r
        return ViewportBounds(
            north=min(90.0, self.north + dlat),
            south=max(-90.0, self.south - dlat),
            east=min(180.0, self.east + dlon),
            west=max(-180.0, self.west - dlon),
        )

    def rounded_key(self, decimals: int = 4) -> tuple[float, float, float, float]:
        """
        A stable, hashable key for caching viewport-derived computations.

        decimals=4 is ~11m-ish in latitude, which is good enough for interactive caching.
        """
        return (
            round(self.north, decimals),
            round(self.south, decimals),
            round(self.east, decimals),
            round(self.west, decimals),
        )

    def to_dict(self) -> dict[str, float]:
        return {
            "north": self.north,
            "south": self.south,
            "east": self.east,
            "west": self.west,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ViewportBounds":
        return cls(
            north=float(data["north"]),
            south=float(data["south"]),
            east=float(data["east"]),
            west=float(data["west"]),
        )
