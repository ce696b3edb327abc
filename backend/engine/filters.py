from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from layers.types import SpatialRecord

# Records without a status are treated as approved.
DEFAULT_STATUS = "approved"
REMOVED_STATUS = "unknown"


@dataclass(frozen=True)
class RecordFilter:
    """
    Which records reach the clusterer, by category and moderation status.

    Approved records always pass the status check; pending and rejected ones only
    when their flag is on. Records whose status is `unknown` count as removed.
    Categories never seen before are shown.
    """

    hidden_categories: frozenset[str] = field(default_factory=frozenset)
    show_pending: bool = False
    show_rejected: bool = False
    show_removed: bool = False

    @property
    def is_default(self) -> bool:
        return self == RecordFilter()

    @property
    def active_count(self) -> int:
        return (
            len(self.hidden_categories)
            + int(self.show_pending)
            + int(self.show_rejected)
            + int(self.show_removed)
        )

    def allows(self, record: SpatialRecord) -> bool:
        if record.category in self.hidden_categories:
            return False
        status = record.attributes.get("status") or DEFAULT_STATUS
        if status == REMOVED_STATUS:
            return self.show_removed
        if status == "pending":
            return self.show_pending
        if status == "rejected":
            return self.show_rejected
        return True

    def apply(self, records: Iterable[SpatialRecord]) -> list[SpatialRecord]:
        return [r for r in records if self.allows(r)]

    def with_category(self, category: str, visible: bool) -> "RecordFilter":
        hidden = set(self.hidden_categories)
        if visible:
            hidden.discard(category)
        else:
            hidden.add(category)
        return replace(self, hidden_categories=frozenset(hidden))

    def to_dict(self) -> dict[str, Any]:
        return {
            "hiddenCategories": sorted(self.hidden_categories),
            "showPending": self.show_pending,
            "showRejected": self.show_rejected,
            "showRemoved": self.show_removed,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "RecordFilter":
        if not isinstance(data, dict):
            raise ValueError("filter state is not an object")
        hidden = data.get("hiddenCategories", [])
        if not isinstance(hidden, list) or not all(isinstance(c, str) for c in hidden):
            raise ValueError(f"hiddenCategories is invalid: {hidden!r}")
        flags: dict[str, bool] = {}
        for key, attr in (
            ("showPending", "show_pending"),
            ("showRejected", "show_rejected"),
            ("showRemoved", "show_removed"),
        ):
            v = data.get(key, False)
            if not isinstance(v, bool):
                raise ValueError(f"{key} is not a boolean: {v!r}")
            flags[attr] = v
        return cls(hidden_categories=frozenset(hidden), **flags)
