from __future__ import annotations

from dataclasses import dataclass, field

from geo.aoi import ViewportBounds


@dataclass
class BoundsCache:
    """
    Remembers the last successfully loaded (padded) rectangle.

    Only one rectangle is tracked; recording a new one overwrites the old.
    """

    _loaded: ViewportBounds | None = field(default=None, repr=False)

    @property
    def last_loaded(self) -> ViewportBounds | None:
        return self._loaded

    def record_loaded(self, bounds: ViewportBounds) -> None:
        self._loaded = bounds

    def is_covered(self, requested: ViewportBounds) -> bool:
        stored = self._loaded
        if stored is None or stored.is_degenerate:
            return False
        return stored.contains(requested)

    def reset(self) -> None:
        self._loaded = None
