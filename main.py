"""MCP server exposing read-only specboard queries."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.resources import TextResource

from specboard.collection import CollectionAssembler
from specboard.models import BUG_KIND, SPEC_KIND, validate_kind
from specboard.ordering import sort_contract as _sort_contract
from specboard.parser import DEFAULT_BASE_DIR, first_incomplete_task

mcp = FastMCP("specboard")


PROJECT_ROOT_ENV = "SPECBOARD_PROJECT_ROOT"
ITEMS_RESOURCE_URI = "specboard://items"


def _base_dir() -> str:
    return os.getenv("SPECBOARD_BASE_DIR") or DEFAULT_BASE_DIR


def _candidate_bases() -> List[Path]:
    cwd = Path.cwd().resolve()
    bases: List[Path] = [cwd]
    bases.extend(cwd.parents)
    return bases


def _locate_project_root() -> Optional[Path]:
    marker = _base_dir()
    for base in _candidate_bases():
        if (base / marker).is_dir():
            return base
    return None


def _resolve_root(root: Optional[str]) -> Path:
    if root:
        resolved = Path(root.replace("\\", "/")).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
        return resolved

    env_root = os.getenv(PROJECT_ROOT_ENV)
    if env_root:
        env_path = Path(env_root).expanduser().resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable {PROJECT_ROOT_ENV} points to '{env_root}', which does not exist."
            )
        return env_path

    detected_root = _locate_project_root()
    if detected_root:
        return detected_root

    raise ValueError(
        "Unable to determine project root automatically. Provide the 'root' argument when calling the tool "
        f"or set the {PROJECT_ROOT_ENV} environment variable."
    )


def _assembler(root: Optional[str]) -> CollectionAssembler:
    return CollectionAssembler(_resolve_root(root), base_dir=_base_dir())


def _assembler_optional(root: Optional[str]) -> Optional[CollectionAssembler]:
    try:
        return _assembler(root)
    except ValueError:
        return None


def _text_resource(text: str) -> TextResource:
    return TextResource(uri=ITEMS_RESOURCE_URI, name="items", text=text, mime_type="text/plain")


def _load(assembler: CollectionAssembler, kind: str, slug: str):
    item = assembler.load_item(kind, slug)
    if item is None:
        raise ValueError(f"No {kind} named '{slug}' under {assembler.parser.kind_dir(kind)}")
    return item


@mcp.tool()
def list_specs(root: Optional[str] = None) -> Dict[str, Any]:
    """List every spec with its inferred status, in dashboard order."""

    assembler = _assembler(root)
    return {
        "project_path": str(assembler.project_root),
        "specs": [item.to_dict() for item in assembler.collect(SPEC_KIND)],
    }


@mcp.tool()
def list_bugs(root: Optional[str] = None) -> Dict[str, Any]:
    """List every bug with its inferred status, in dashboard order."""

    assembler = _assembler(root)
    return {
        "project_path": str(assembler.project_root),
        "bugs": [item.to_dict() for item in assembler.collect(BUG_KIND)],
    }


@mcp.tool()
def item_status(kind: str, slug: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Re-parse one spec or bug and return its current state."""

    validate_kind(kind)
    assembler = _assembler(root)
    return _load(assembler, kind, slug).to_dict()


@mcp.tool()
def sort_contract() -> Dict[str, Any]:
    """Return the status priority tables used to order the dashboard."""

    return {
        "priorities": _sort_contract(),
        "tie_breakers": ["last_modified desc", "slug asc"],
    }


@mcp.tool()
def list_tasks(slug: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Return the task checklist for a spec, including completion state."""

    item = _load(_assembler(root), SPEC_KIND, slug)
    return {
        "slug": slug,
        "status": item.status,
        "tasks": [task.to_dict() for task in item.tasks],
        "total": item.task_total,
        "completed": item.task_completed,
    }


@mcp.tool()
def next_task(slug: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Retrieve the next incomplete task of a spec, if any."""

    item = _load(_assembler(root), SPEC_KIND, slug)
    task = first_incomplete_task(item.tasks)
    return {
        "slug": slug,
        "task": task.to_dict() if task else None,
        "remaining": item.task_total - item.task_completed,
    }


@mcp.resource(ITEMS_RESOURCE_URI)
def resource_items():
    """Resource view summarising every spec and bug of the detected project."""

    assembler = _assembler_optional(None)
    if not assembler:
        return _text_resource(
            f"No project root detected. Launch tools with a 'root' argument or set {PROJECT_ROOT_ENV}."
        )

    collections = assembler.collect_all()
    if not any(collections.values()):
        return _text_resource("No specs or bugs found yet.")

    lines = [f"Specboard: {assembler.project_root}"]
    for kind, title in ((SPEC_KIND, "Specs"), (BUG_KIND, "Bugs")):
        lines.append("")
        lines.append(f"{title}:")
        items = collections[kind]
        if not items:
            lines.append("  (none)")
        for item in items:
            line = f"- {item.slug}: {item.display_name} [{item.status}]"
            if item.task_total:
                line += f" {item.task_completed}/{item.task_total} tasks"
            if item.degraded:
                line += f" (unreadable: {item.error})"
            lines.append(line)

    return _text_resource("\n".join(lines))


def run() -> None:
    """Entry point for ``specboard-mcp``."""
    mcp.run(transport="stdio")


if __name__ == "__main__":
    run()
