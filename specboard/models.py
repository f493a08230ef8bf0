"""Data models for specboard.

This module contains the core data structures shared by the parser, the
synchronization server and dashboard clients: work items, their documents and
task checklists, and the change events produced by the file watcher.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


SPEC_KIND = "spec"
BUG_KIND = "bug"
ITEM_KINDS = (SPEC_KIND, BUG_KIND)

# Directory under the project base dir holding one sub-directory per item
KIND_DIRECTORIES: Dict[str, str] = {
    SPEC_KIND: "specs",
    BUG_KIND: "bugs",
}

SPEC_DOCUMENTS: Tuple[str, ...] = ("requirements.md", "design.md", "tasks.md")
BUG_DOCUMENTS: Tuple[str, ...] = ("report.md", "analysis.md", "fix.md", "verification.md")

DOCUMENTS_BY_KIND: Dict[str, Tuple[str, ...]] = {
    SPEC_KIND: SPEC_DOCUMENTS,
    BUG_KIND: BUG_DOCUMENTS,
}

# Workflow phases, in forward order
SPEC_STATUSES: Tuple[str, ...] = (
    "not-started",
    "requirements",
    "design",
    "tasks",
    "in-progress",
    "completed",
)
BUG_STATUSES: Tuple[str, ...] = (
    "reported",
    "analyzing",
    "fixing",
    "verifying",
    "resolved",
)

STATUSES_BY_KIND: Dict[str, Tuple[str, ...]] = {
    SPEC_KIND: SPEC_STATUSES,
    BUG_KIND: BUG_STATUSES,
}

CHANGE_ADDED = "added"
CHANGE_CHANGED = "changed"
CHANGE_REMOVED = "removed"
CHANGE_TYPES = (CHANGE_ADDED, CHANGE_CHANGED, CHANGE_REMOVED)


def validate_kind(kind: str) -> str:
    """Return ``kind`` if it names a known work item kind."""
    if kind not in ITEM_KINDS:
        raise ValueError(f"Unknown item kind '{kind}'. Expected one of: {', '.join(ITEM_KINDS)}")
    return kind


@dataclass(slots=True)
class TaskEntry:
    """Representation of a single tasks.md checklist entry."""

    task_id: str
    description: str
    completed: bool
    requirements: List[str] = field(default_factory=list)
    leverage: Optional[str] = None
    subtasks: List["TaskEntry"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "task_id": self.task_id,
            "description": self.description,
            "completed": self.completed,
            "requirements": list(self.requirements),
            "leverage": self.leverage,
            "subtasks": [task.to_dict() for task in self.subtasks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskEntry":
        """Create from dictionary representation."""
        return cls(
            task_id=str(data["task_id"]),
            description=data["description"],
            completed=bool(data["completed"]),
            requirements=list(data.get("requirements", [])),
            leverage=data.get("leverage"),
            subtasks=[cls.from_dict(sub) for sub in data.get("subtasks", [])],
        )

    def walk(self):
        """Yield this entry followed by all nested subtasks, depth first."""
        yield self
        for subtask in self.subtasks:
            yield from subtask.walk()


def flatten_tasks(tasks: List[TaskEntry]) -> List[TaskEntry]:
    """Return every task entry in document order, subtasks included."""
    flat: List[TaskEntry] = []
    for task in tasks:
        flat.extend(task.walk())
    return flat


@dataclass(slots=True)
class DocumentFacts:
    """What the parser learned about one document of a work item."""

    name: str
    exists: bool = False
    has_content: bool = False
    approved: bool = False
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "exists": self.exists,
            "has_content": self.has_content,
            "approved": self.approved,
            "title": self.title,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentFacts":
        """Create from dictionary representation."""
        return cls(
            name=data["name"],
            exists=bool(data.get("exists", False)),
            has_content=bool(data.get("has_content", False)),
            approved=bool(data.get("approved", False)),
            title=data.get("title"),
        )


@dataclass(slots=True)
class WorkItem:
    """A tracked spec or bug, identified by ``(kind, slug)``.

    ``status`` is always derived from the current documents by the parser;
    nothing in this class computes or caches it.
    """

    kind: str
    slug: str
    display_name: str
    status: str
    last_modified: float = 0.0
    documents: Dict[str, DocumentFacts] = field(default_factory=dict)
    tasks: List[TaskEntry] = field(default_factory=list)
    facts: Dict[str, Any] = field(default_factory=dict)
    degraded: bool = False
    error: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.kind, self.slug)

    @property
    def task_total(self) -> int:
        return len(flatten_tasks(self.tasks))

    @property
    def task_completed(self) -> int:
        return sum(1 for task in flatten_tasks(self.tasks) if task.completed)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the plain record sent over the wire."""
        return {
            "kind": self.kind,
            "slug": self.slug,
            "display_name": self.display_name,
            "status": self.status,
            "last_modified": self.last_modified,
            "documents": {name: doc.to_dict() for name, doc in self.documents.items()},
            "tasks": [task.to_dict() for task in self.tasks],
            "task_total": self.task_total,
            "task_completed": self.task_completed,
            "facts": dict(self.facts),
            "degraded": self.degraded,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkItem":
        """Create from dictionary representation.

        Raises ``KeyError``/``TypeError``/``ValueError`` on records that are
        missing identity fields or carrying mistyped values; callers on the wire boundary translate those
        into protocol errors.
        """
        kind = validate_kind(data["kind"])
        slug = data["slug"]
        if not isinstance(slug, str) or not slug:
            raise ValueError("Work item slug must be a non-empty string")
        status = data["status"]
        if not isinstance(status, str):
            raise ValueError("Work item status must be a string")
        display_name = data.get("display_name") or slug
        if not isinstance(display_name, str):
            raise ValueError("Work item display_name must be a string")
        last_modified = float(data.get("last_modified") or 0.0)
        if not math.isfinite(last_modified):
            raise ValueError("Work item last_modified must be a finite number")
        return cls(
            kind=kind,
            slug=slug,
            display_name=display_name,
            status=status,
            last_modified=last_modified,
            documents={
                name: DocumentFacts.from_dict(doc)
                for name, doc in (data.get("documents") or {}).items()
            },
            tasks=[TaskEntry.from_dict(task) for task in data.get("tasks") or []],
            facts=dict(data.get("facts") or {}),
            degraded=bool(data.get("degraded", False)),
            error=data.get("error"),
        )


@dataclass(slots=True)
class ChangeEvent:
    """Filesystem change for one work item, consumed once by the server."""

    project_path: str
    kind: str
    slug: str
    change_type: str

    def to_dict(self) -> Dict[str, str]:
        """Convert to dictionary representation."""
        return {
            "project_path": self.project_path,
            "kind": self.kind,
            "slug": self.slug,
            "change_type": self.change_type,
        }
