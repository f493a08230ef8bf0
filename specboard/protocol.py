"""JSON wire protocol between the dashboard server and its clients.

Every frame is a JSON object with a ``type``:

* ``snapshot`` (server -> client): full ordered collection of one kind.
* ``update`` (server -> client): one re-parsed item after a change.
* ``error`` (server -> client): a client request could not be handled.
* ``subscribe`` / ``resync`` (client -> server).
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

from .models import CHANGE_REMOVED, CHANGE_TYPES, WorkItem, validate_kind
from .ordering import STATUS_PRIORITY

SNAPSHOT = "snapshot"
UPDATE = "update"
ERROR = "error"
SUBSCRIBE = "subscribe"
RESYNC = "resync"

SERVER_MESSAGE_TYPES = (SNAPSHOT, UPDATE, ERROR)
CLIENT_MESSAGE_TYPES = (SUBSCRIBE, RESYNC)

Message = Dict[str, Any]


class ProtocolError(ValueError):
    """Raised when a frame is not a valid protocol message."""


def encode(message: Message) -> str:
    return json.dumps(message, ensure_ascii=False)


def decode(raw: str | bytes) -> Message:
    """Parse one frame into a dict with a known ``type``.

    Only the envelope is checked here; use the ``validate_*`` helpers for the
    per-type fields.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not valid UTF-8: {e}") from e
    try:
        message = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Frame is not valid JSON: {e.msg}") from e
    if not isinstance(message, dict):
        raise ProtocolError("Frame must be a JSON object")
    message_type = message.get("type")
    if message_type not in SERVER_MESSAGE_TYPES + CLIENT_MESSAGE_TYPES:
        raise ProtocolError(f"Unknown message type: {message_type!r}")
    return message


# ----------------------------------------------------------------------
# Builders
# ----------------------------------------------------------------------

def snapshot_message(project_path: str, kind: str, items: Iterable[WorkItem]) -> Message:
    """Snapshot of one kind; ``items`` must already be in canonical order."""
    validate_kind(kind)
    return {
        "type": SNAPSHOT,
        "project_path": project_path,
        "kind": kind,
        "items": [item.to_dict() for item in items],
        "order": dict(STATUS_PRIORITY[kind]),
    }


def update_message(
    project_path: str,
    kind: str,
    slug: str,
    change_type: str,
    version: int,
    item: Optional[WorkItem],
) -> Message:
    validate_kind(kind)
    if change_type not in CHANGE_TYPES:
        raise ValueError(f"Unknown change type '{change_type}'")
    return {
        "type": UPDATE,
        "project_path": project_path,
        "kind": kind,
        "slug": slug,
        "change_type": change_type,
        "version": version,
        "item": item.to_dict() if item is not None else None,
    }


def error_message(message: str) -> Message:
    return {"type": ERROR, "message": message}


def subscribe_message(projects: Optional[List[str]] = None) -> Message:
    message: Message = {"type": SUBSCRIBE}
    if projects is not None:
        message["projects"] = list(projects)
    return message


def resync_message(project_path: Optional[str] = None, kind: Optional[str] = None) -> Message:
    message: Message = {"type": RESYNC}
    if project_path is not None:
        message["project_path"] = project_path
    if kind is not None:
        message["kind"] = kind
    return message


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def _require_str(message: Message, key: str) -> str:
    value = message.get(key)
    if not isinstance(value, str) or not value:
        raise ProtocolError(f"'{message.get('type')}' message needs a non-empty string '{key}'")
    return value


def _require_kind(message: Message) -> str:
    kind = _require_str(message, "kind")
    try:
        return validate_kind(kind)
    except ValueError as e:
        raise ProtocolError(str(e)) from e


def _to_item(data: Any, context: str) -> WorkItem:
    if not isinstance(data, dict):
        raise ProtocolError(f"{context}: item must be an object")
    try:
        return WorkItem.from_dict(data)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"{context}: invalid item ({e})") from e


def parse_snapshot(message: Message) -> List[WorkItem]:
    """Validate a snapshot and return its items."""
    _require_str(message, "project_path")
    kind = _require_kind(message)
    raw_items = message.get("items")
    if not isinstance(raw_items, list):
        raise ProtocolError("'snapshot' message needs an 'items' list")
    items = [_to_item(data, "snapshot") for data in raw_items]
    for item in items:
        if item.kind != kind:
            raise ProtocolError(f"snapshot of {kind} items contains a {item.kind} item '{item.slug}'")
    return items


def parse_update(message: Message) -> Optional[WorkItem]:
    """Validate an update and return its item (None for removals)."""
    _require_str(message, "project_path")
    kind = _require_kind(message)
    slug = _require_str(message, "slug")
    change_type = message.get("change_type")
    if change_type not in CHANGE_TYPES:
        raise ProtocolError(f"Unknown change type: {change_type!r}")
    version = message.get("version")
    if isinstance(version, bool) or not isinstance(version, int):
        raise ProtocolError("'update' message needs an integer 'version'")

    raw_item = message.get("item")
    if change_type == CHANGE_REMOVED or raw_item is None:
        if change_type != CHANGE_REMOVED:
            raise ProtocolError(f"'{change_type}' update for '{slug}' carries no item")
        return None
    item = _to_item(raw_item, "update")
    if item.kind != kind or item.slug != slug:
        raise ProtocolError(f"update for {kind} '{slug}' carries item {item.kind} '{item.slug}'")
    return item


def parse_subscribe(message: Message) -> Optional[List[str]]:
    """Project paths named by a subscribe request, or None for all."""
    projects = message.get("projects")
    if projects is None:
        return None
    if not isinstance(projects, list) or not all(isinstance(p, str) and p for p in projects):
        raise ProtocolError("'projects' must be a list of project paths")
    return projects


def parse_resync(message: Message) -> tuple[Optional[str], Optional[str]]:
    """``(project_path, kind)`` filters of a resync request."""
    project_path = message.get("project_path")
    if project_path is not None and (not isinstance(project_path, str) or not project_path):
        raise ProtocolError("'project_path' must be a non-empty string")
    kind = message.get("kind")
    if kind is not None:
        kind = _require_kind(message)
    return project_path, kind
