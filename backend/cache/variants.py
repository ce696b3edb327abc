from __future__ import annotations

from typing import Any, Awaitable, Callable

from engine.context import EngineContext
from layers.types import ClusterFeature, ClusterMarker, PointFeature, feature_to_dict


class RecordClassifier:
    """
    Decides the visual variant of point features.

    Two cached lookups, counted on separate telemetry channels:
    - per record id -> variant name (channel "a")
    - per category -> style hints (channel "b")
    """

    def __init__(
        self,
        ctx: EngineContext,
        *,
        record_lookup: Callable[[str], Awaitable[str]],
        category_lookup: Callable[[str], Awaitable[dict[str, Any]]],
    ):
        self.variants = ctx.metadata_cache("record_variants", record_lookup, channel="a")
        self.styles = ctx.metadata_cache("category_styles", category_lookup, channel="b")

    async def variant(self, record_id: str) -> str:
        return str(await self.variants.get(record_id))

    async def style(self, category: str) -> dict[str, Any]:
        return dict(await self.styles.get(category or ""))

    async def decorate(self, features: list[ClusterFeature]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for f in features:
            d = feature_to_dict(f)
            match f:
                case PointFeature():
                    d["variant"] = await self.variant(f.id)
                    d["style"] = await self.style(str(f.properties.get("category") or ""))
                case ClusterMarker():
                    pass
            out.append(d)
        return out
