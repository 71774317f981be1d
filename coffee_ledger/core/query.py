"""Query primitives shared by the store adapters."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

OPERATORS = ("==", "!=", "<", "<=", ">", ">=", "in")

_MISSING = object()


@dataclass(frozen=True)
class Filter:
    """``field op value`` with a dotted ``field`` path (``organization.id``)."""

    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op!r}")

    def matches(self, data: dict[str, Any]) -> bool:
        current = lookup(data, self.field)
        if current is _MISSING:
            # Firestore semantics: a missing field never matches
            return False
        if self.op == "==":
            return current == self.value
        if self.op == "!=":
            return current != self.value
        if self.op == "in":
            return current in self.value
        try:
            if self.op == "<":
                return current < self.value
            if self.op == "<=":
                return current <= self.value
            if self.op == ">":
                return current > self.value
            return current >= self.value
        except TypeError:
            return False


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


def lookup(data: dict[str, Any], path: str) -> Any:
    """Resolve a dotted ``path`` inside nested dicts."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def matches_all(data: dict[str, Any], filters: Iterable[Filter]) -> bool:
    return all(f.matches(data) for f in filters)


def sort_documents(items: Sequence[Any], order_by: OrderBy | None) -> list[Any]:
    """Sort snapshots by ``order_by``; documents missing the field go last."""
    if order_by is None:
        return sorted(items, key=lambda s: s.id)

    present = [s for s in items if lookup(s.data, order_by.field) is not _MISSING]
    missing = [s for s in items if lookup(s.data, order_by.field) is _MISSING]
    present.sort(
        key=lambda s: (lookup(s.data, order_by.field), s.id),
        reverse=order_by.descending,
    )
    return present + sorted(missing, key=lambda s: s.id)
