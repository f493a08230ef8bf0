"""Canonical ordering of work items.

This is the single sort contract shared by the server (snapshots) and by
every client (re-sorting after an incremental update):

1. status priority ascending (table below, unknown statuses last);
2. ``last_modified`` descending (most recently touched first);
3. ``slug`` ascending.

The priority table is part of the wire contract and is sent to clients with
every snapshot.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Tuple, Union

from .models import BUG_KIND, SPEC_KIND, WorkItem, validate_kind

UNKNOWN_STATUS_PRIORITY = 99

STATUS_PRIORITY: Dict[str, Dict[str, int]] = {
    SPEC_KIND: {
        "in-progress": 1,
        "tasks": 2,
        "design": 3,
        "requirements": 4,
        "not-started": 5,
        "completed": 6,
    },
    BUG_KIND: {
        "reported": 1,
        "analyzing": 2,
        "fixing": 3,
        "verifying": 4,
        "resolved": 5,
    },
}

ItemLike = Union[WorkItem, Mapping[str, Any]]


def status_priority(kind: str, status: str) -> int:
    """Priority of ``status`` for items of ``kind``; lower sorts first."""
    return STATUS_PRIORITY[validate_kind(kind)].get(status, UNKNOWN_STATUS_PRIORITY)


def _fields(item: ItemLike) -> Tuple[str, str, float, str]:
    if isinstance(item, WorkItem):
        return item.kind, item.status, item.last_modified, item.slug
    return (
        item["kind"],
        item["status"],
        float(item.get("last_modified") or 0.0),
        item["slug"],
    )


def sort_key(item: ItemLike) -> Tuple[int, float, str]:
    """Key implementing the canonical order for a WorkItem or its wire dict."""
    kind, status, last_modified, slug = _fields(item)
    return (status_priority(kind, status), -last_modified, slug)


def sort_items(items: Iterable[ItemLike]) -> List[ItemLike]:
    """Return ``items`` in canonical order."""
    return sorted(items, key=sort_key)


def sort_contract() -> Dict[str, Dict[str, int]]:
    """Copy of the priority tables, as published to clients."""
    return {kind: dict(table) for kind, table in STATUS_PRIORITY.items()}
