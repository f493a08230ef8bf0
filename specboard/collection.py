"""Collection assembly: every work item of one kind, in canonical order."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from .models import ITEM_KINDS, WorkItem, validate_kind
from .ordering import sort_items
from .parser import DEFAULT_BASE_DIR, DocumentParser, degraded_item
from .specboard_logging import log_error_with_context, log_performance, observability_hooks

logger = logging.getLogger("specboard.collection")


class CollectionAssembler:
    """Enumerate and parse the work items of a project."""

    def __init__(self, project_root: Path | str, base_dir: str = DEFAULT_BASE_DIR):
        self.parser = DocumentParser(project_root, base_dir=base_dir)

    @property
    def project_root(self) -> Path:
        return self.parser.project_root

    def list_slugs(self, kind: str) -> List[str]:
        """Names of the item directories of ``kind``, hidden ones excluded."""
        kind_dir = self.parser.kind_dir(kind)
        try:
            return sorted(
                path.name
                for path in kind_dir.iterdir()
                if path.is_dir() and not path.name.startswith(".")
            )
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning(f"Could not list {kind_dir}: {e}")
            log_error_with_context(e, {"operation": "list_slugs", "path": str(kind_dir)})
            return []

    def load_item(self, kind: str, slug: str) -> Optional[WorkItem]:
        """Parse one item, isolating any failure into a degraded entry."""
        try:
            return self.parser.parse_item(kind, slug)
        except Exception as e:
            logger.error(f"Failed to parse {kind} '{slug}': {e}")
            log_error_with_context(e, {
                "operation": "parse_item",
                "project": str(self.project_root),
                "kind": kind,
                "slug": slug,
            })
            observability_hooks.log_workflow_event("item_degraded", kind=kind, slug=slug, error=str(e))
            return degraded_item(kind, slug, str(e))

    @log_performance("collect_items")
    def collect(self, kind: str) -> List[WorkItem]:
        """All items of ``kind`` under the project, in canonical order."""
        validate_kind(kind)
        items: List[WorkItem] = []
        for slug in self.list_slugs(kind):
            item = self.load_item(kind, slug)
            if item is not None:
                items.append(item)
        logger.debug(f"Collected {len(items)} {kind} items from {self.project_root}")
        return sort_items(items)

    def collect_all(self) -> dict:
        """Snapshot of every kind, keyed by kind."""
        return {kind: self.collect(kind) for kind in ITEM_KINDS}
