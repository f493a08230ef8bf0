"""Filesystem watching for work item directories.

One ``ProjectWatcher`` observes ``<project>/<base_dir>`` recursively with
watchdog. Raw events arrive on the observer thread, are normalized to
POSIX-style paths relative to the watched base, classified to the owning
``(kind, slug)`` and handed to the asyncio loop, where bursts are merged and
turned into at most one ChangeEvent per item.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Callable, Dict, List, NamedTuple, Optional, Set, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .models import (
    CHANGE_ADDED,
    CHANGE_CHANGED,
    CHANGE_REMOVED,
    DOCUMENTS_BY_KIND,
    ITEM_KINDS,
    KIND_DIRECTORIES,
    ChangeEvent,
)
from .parser import DEFAULT_BASE_DIR, DocumentParser
from .specboard_logging import log_change_detected, log_error_with_context

logger = logging.getLogger("specboard.watcher")

KIND_BY_DIRECTORY: Dict[str, str] = {directory: kind for kind, directory in KIND_DIRECTORIES.items()}

# Upper bound on how long a continuous burst can hold back its events
MAX_DEBOUNCE_DELAY = 1.0

_IGNORED_NAMES = {".DS_Store", "Thumbs.db"}
_IGNORED_EVENT_TYPES = {"opened", "closed_no_write"}
_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:/")

ItemKey = Tuple[str, str]
ChangeCallback = Callable[[ChangeEvent], None]


class ItemPath(NamedTuple):
    """Where a path sits inside the work item layout."""

    kind: str
    slug: str
    document: Optional[str]


def normalize_path(path: str | os.PathLike) -> str:
    """Render ``path`` with ``/`` separators whatever the platform wrote."""
    return os.fsdecode(path).replace("\\", "/")


def relative_parts(path: str | os.PathLike, base: str | os.PathLike | None = None) -> Optional[List[str]]:
    """Split ``path`` into segments relative to ``base``.

    Returns None for an absolute path outside ``base``.
    """
    normalized = normalize_path(path)
    if base is not None:
        base_normalized = normalize_path(base).rstrip("/")
        if normalized.rstrip("/") == base_normalized:
            return []
        if normalized.startswith(base_normalized + "/"):
            normalized = normalized[len(base_normalized) + 1:]
        elif normalized.startswith("/") or _DRIVE_PREFIX.match(normalized):
            return None
    return [part for part in normalized.split("/") if part and part != "."]


def classify_path(path: str | os.PathLike, base: str | os.PathLike | None = None) -> Optional[ItemPath]:
    """Map a path under the base dir to the item it belongs to.

    ``specs/login-flow`` is the item directory itself and
    ``bugs/foo-bar/report.md`` one of its recognized documents; anything else
    (unknown kinds, hidden entries, unrecognized or nested files) is None.
    """
    parts = relative_parts(path, base)
    if not parts or len(parts) < 2 or len(parts) > 3:
        return None
    kind = KIND_BY_DIRECTORY.get(parts[0])
    slug = parts[1]
    if kind is None or slug.startswith(".") or slug in _IGNORED_NAMES:
        return None
    if len(parts) == 2:
        return ItemPath(kind, slug, None)
    document = parts[2]
    if document not in DOCUMENTS_BY_KIND[kind]:
        return None
    return ItemPath(kind, slug, document)


def classify_kind_directory(path: str | os.PathLike, base: str | os.PathLike | None = None) -> Optional[str]:
    """Return the kind when ``path`` is a whole kind directory (``specs``/``bugs``)."""
    parts = relative_parts(path, base)
    if parts and len(parts) == 1:
        return KIND_BY_DIRECTORY.get(parts[0])
    return None


class _WatchdogHandler(FileSystemEventHandler):
    """Forwards watchdog events from the observer thread to the watcher."""

    def __init__(self, watcher: "ProjectWatcher"):
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in _IGNORED_EVENT_TYPES:
            return
        self.watcher.notify_path(event.src_path)
        dest_path = getattr(event, "dest_path", None)
        if dest_path:
            self.watcher.notify_path(dest_path)


class ProjectWatcher:
    """Watch one project's spec and bug directories and emit ChangeEvents."""

    def __init__(
        self,
        project_root: Path | str,
        on_change: ChangeCallback,
        *,
        base_dir: str = DEFAULT_BASE_DIR,
        debounce: float = 0.15,
    ):
        self.parser = DocumentParser(project_root, base_dir=base_dir)
        self.project_path = str(self.parser.project_root)
        self.on_change = on_change
        self.debounce = debounce

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._observer: Optional[Observer] = None
        # Observer sits on the project root until the base dir appears
        self._awaiting_base = False
        self._known: Set[ItemKey] = set()
        self._pending: Set[ItemKey] = set()
        self._burst_started: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def base_path(self) -> Path:
        return self.parser.base_dir

    @property
    def running(self) -> bool:
        return self._loop is not None

    @property
    def known_items(self) -> Set[ItemKey]:
        return set(self._known)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, *, observe: bool = True) -> None:
        """Start watching. Must be called from the running event loop."""
        if self._loop is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._known = self._scan_known()
        if observe:
            self._observer = Observer()
            self._schedule()
            self._observer.start()
        logger.info(f"Watching {self.base_path} ({len(self._known)} items known)")

    def stop(self) -> None:
        """Stop the observer thread and drop any pending burst."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending.clear()
        self._burst_started = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        self._loop = None
        self._awaiting_base = False
        logger.info(f"Stopped watching {self.base_path}")

    def _schedule(self) -> None:
        handler = _WatchdogHandler(self)
        if self.base_path.is_dir():
            self._observer.schedule(handler, str(self.base_path), recursive=True)
            self._awaiting_base = False
        else:
            # Wait for the base directory to be created next to the project files
            logger.debug(f"{self.base_path} does not exist yet; watching {self.parser.project_root}")
            self._observer.schedule(handler, str(self.parser.project_root), recursive=False)
            self._awaiting_base = True

    def _rewatch_base(self) -> None:
        if not self._awaiting_base or not self.base_path.is_dir():
            return
        if self._observer is not None:
            self._observer.unschedule_all()
            self._schedule()
        else:
            self._awaiting_base = False
        logger.info(f"{self.base_path} appeared; watching it again")
        for kind in ITEM_KINDS:
            self._record_kind(kind)

    def _base_lost(self) -> None:
        """The base directory was deleted: drop its items and wait for it to return."""
        logger.info(f"{self.base_path} was removed; waiting for it to be recreated")
        if self._observer is not None:
            # The recursive watch died with the directory
            self._observer.unschedule_all()
            self._schedule()
        else:
            self._awaiting_base = True
        for kind in ITEM_KINDS:
            self._record_kind(kind)

    # ------------------------------------------------------------------
    # Event intake (any thread)
    # ------------------------------------------------------------------

    def notify_path(self, path: str | os.PathLike) -> None:
        """Report a raw filesystem event for ``path``. Thread-safe."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        normalized = normalize_path(path)
        try:
            loop.call_soon_threadsafe(self._handle_path, normalized)
        except RuntimeError:
            # Loop shut down between the check and the call
            pass

    def _handle_path(self, normalized: str) -> None:
        if self._loop is None:
            return
        if self._awaiting_base:
            parts = relative_parts(normalized, self.parser.project_root)
            if parts and parts[0] == self.base_path.name:
                self._rewatch_base()
            return
        if relative_parts(normalized, self.base_path) is not None and not self.base_path.is_dir():
            self._base_lost()
            return

        item = classify_path(normalized, self.base_path)
        if item is not None:
            self._record(item.kind, item.slug)
            return
        kind = classify_kind_directory(normalized, self.base_path)
        if kind is not None:
            self._record_kind(kind)

    # ------------------------------------------------------------------
    # Debounce (event loop)
    # ------------------------------------------------------------------

    def _record(self, kind: str, slug: str) -> None:
        self._pending.add((kind, slug))
        now = self._loop.time()
        if self._burst_started is None:
            self._burst_started = now
        if self._timer is not None:
            self._timer.cancel()
        if now - self._burst_started >= MAX_DEBOUNCE_DELAY:
            self._timer = None
            self.flush()
        else:
            self._timer = self._loop.call_later(self.debounce, self.flush)

    def _record_kind(self, kind: str) -> None:
        """A whole kind directory appeared or vanished: recheck every item of it."""
        slugs = {slug for known_kind, slug in self._known if known_kind == kind}
        kind_dir = self.parser.kind_dir(kind)
        try:
            if kind_dir.is_dir():
                slugs.update(
                    path.name for path in kind_dir.iterdir()
                    if path.is_dir() and not path.name.startswith(".")
                )
        except OSError as e:
            logger.warning(f"Could not list {kind_dir}: {e}")
        for slug in sorted(slugs):
            self._record(kind, slug)

    def flush(self) -> List[ChangeEvent]:
        """Resolve every pending item into a ChangeEvent and deliver it."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        pending = sorted(self._pending)
        self._pending.clear()
        self._burst_started = None

        events: List[ChangeEvent] = []
        for kind, slug in pending:
            event = self._resolve(kind, slug)
            if event is None:
                continue
            events.append(event)
            logger.debug(f"Change detected: {event.change_type} {kind} '{slug}' in {self.project_path}")
            log_change_detected(self.project_path, kind, slug, event.change_type)
            try:
                self.on_change(event)
            except Exception as e:
                logger.error(f"Change handler failed for {kind} '{slug}': {e}")
                log_error_with_context(e, {"operation": "on_change", **event.to_dict()})
        return events

    def _resolve(self, kind: str, slug: str) -> Optional[ChangeEvent]:
        key = (kind, slug)
        try:
            present = self.parser.has_recognized_document(kind, slug)
        except OSError as e:
            logger.warning(f"Could not inspect {kind} '{slug}', treating as removed: {e}")
            present = False

        known = key in self._known
        if present and not known:
            self._known.add(key)
            change_type = CHANGE_ADDED
        elif present:
            change_type = CHANGE_CHANGED
        elif known:
            self._known.discard(key)
            change_type = CHANGE_REMOVED
        else:
            return None
        return ChangeEvent(self.project_path, kind, slug, change_type)

    def _scan_known(self) -> Set[ItemKey]:
        known: Set[ItemKey] = set()
        for kind in ITEM_KINDS:
            kind_dir = self.parser.kind_dir(kind)
            try:
                if not kind_dir.is_dir():
                    continue
                for path in kind_dir.iterdir():
                    if path.is_dir() and not path.name.startswith("."):
                        if self.parser.has_recognized_document(kind, path.name):
                            known.add((kind, path.name))
            except OSError as e:
                logger.warning(f"Could not scan {kind_dir}: {e}")
        return known
