"""Document parsing and workflow status inference for specboard.

This module reads the fixed document set of one work item, extracts the
structured facts the dashboard shows (task checklists, approvals, titles,
bug report details) and derives the item's workflow status from which
documents carry real, non-template content.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .classifier import has_real_content, is_template_line, parse_heading, section_lines
from .models import (
    BUG_DOCUMENTS,
    BUG_KIND,
    DOCUMENTS_BY_KIND,
    KIND_DIRECTORIES,
    SPEC_DOCUMENTS,
    SPEC_KIND,
    STATUSES_BY_KIND,
    DocumentFacts,
    TaskEntry,
    WorkItem,
    flatten_tasks,
    validate_kind,
)
from .specboard_logging import log_error_with_context, observability_hooks

logger = logging.getLogger("specboard.parser")

DEFAULT_BASE_DIR = ".claude"

# Words a document's title heading may carry to name the document type
# rather than the work item ("# Requirements: Login Flow").
DOCUMENT_TITLE_WORDS: Dict[str, Tuple[str, ...]] = {
    "requirements.md": ("Requirements Document", "Requirements"),
    "design.md": ("Design Document", "Technical Design", "Design"),
    "tasks.md": ("Implementation Plan", "Implementation Tasks", "Task List", "Tasks"),
    "report.md": ("Bug Report", "Report"),
    "analysis.md": ("Bug Analysis", "Analysis"),
    "fix.md": ("Bug Fix", "Fix Summary", "Fix"),
    "verification.md": ("Bug Verification", "Verification"),
}

# Sections whose content shows a bug phase has actually been worked on
BUG_SECTION_MARKERS: Dict[str, Tuple[str, ...]] = {
    "report.md": (),
    "analysis.md": (
        "Root Cause",
        "Investigation Summary",
        "Implementation Plan",
        "Changes Required",
    ),
    "fix.md": (
        "Fix Summary",
        "Implementation Details",
        "Changes Made",
        "Code Changes",
    ),
    "verification.md": (
        "Test Results",
        "Verification Steps",
        "Fix Verification",
        "Regression Testing",
        "Regression Checks",
        "Side Effects Check",
    ),
}

_STATUS_DECORATIONS = re.compile(r"[✅✓✔☑]|\bAPPROVED\b")
_TITLE_SEPARATORS = " \t-:–—|"

_APPROVAL_MARKERS = ("✅ APPROVED", "**Approved:** ✓", "**Approved:** ✅")
_VERIFIED_PATTERNS = (
    re.compile(r"✅\s*VERIFIED"),
    re.compile(r"\*\*Verified:\*\*\s*[✓✅]"),
    re.compile(r"\*\*Production Verified\*\*"),
    re.compile(r"\*\*Closed\*\*"),
    re.compile(r"^\s*(?:\*\*)?Status:?(?:\*\*)?:?\s*(?:Resolved|Closed|Verified)\b", re.IGNORECASE | re.MULTILINE),
)

_TASK_LINE_PATTERN = re.compile(r"^(?P<indent>[ \t]*)[-*+]\s+\[(?P<mark>[ xX])\]\s*(?P<rest>.*)$")
_TASK_BODY_PATTERN = re.compile(r"^(?P<id>[^\s.]+(?:\.[^\s.]+)*)\.?\s+(?P<desc>.+)$")
_TASK_ID_PATTERN = re.compile(r"^\d+(?:\.\d+)*$")
_REQUIREMENTS_ANNOTATION = re.compile(r"_Requirements?:\s*(?P<value>[^_]+?)_?\s*$|_Requirements?:\s*(?P<inline>[^_]+)_")
_LEVERAGE_ANNOTATION = re.compile(r"_Leverage:\s*(?P<value>[^_]+?)_?\s*$|_Leverage:\s*(?P<inline>[^_]+)_")
_ANNOTATION_STRIP = re.compile(r"\s*_(?:Requirements?|Leverage):[^_]*_?")

_REQUIREMENT_HEADING = re.compile(
    r"^#{2,3}\s+(?:Requirement\s+)?(?P<id>\d+(?:\.\d+)*|(?:FR|NFR|US|AC)-\d+)[.:]\s+(?P<title>.+)$"
)
_USER_STORY_HEADING = re.compile(r"^###\s+US-\d+:")
_SEVERITY_PATTERN = re.compile(r"\*\*Severity\*\*:?\s*:?\s*(critical|high|medium|low)", re.IGNORECASE)
_NUMBERED_LINE = re.compile(r"^\d+\.\s+(?P<text>.+)$")
_BULLET_LINE = re.compile(r"^[-*•✅❌]\s+(?P<text>.+)$")


def format_display_name(slug: str) -> str:
    """Turn a directory slug into a human-friendly name."""
    words = re.split(r"[-_]+", slug)
    return " ".join(word[:1].upper() + word[1:] for word in words if word)


def _strip_type_words(text: str, words: Sequence[str]) -> str:
    for word in words:
        escaped = re.escape(word)
        if re.fullmatch(escaped, text, re.IGNORECASE):
            return ""
        text = re.sub(rf"^{escaped}\s*[-:–—|]\s*", "", text, flags=re.IGNORECASE)
        text = re.sub(rf"\s+{escaped}$", "", text, flags=re.IGNORECASE)
    return text


def extract_title(content: Optional[str], document_name: str) -> Optional[str]:
    """Return the work item title from a document's first-level heading.

    Status decorations (check marks and the word APPROVED) and the document
    type words are stripped first; a heading that reduces to nothing, or to
    only the document type, yields None.
    """
    if not content:
        return None
    for line in content.splitlines():
        heading = parse_heading(line)
        if not heading or heading[0] != 1:
            continue
        text = _STATUS_DECORATIONS.sub(" ", heading[1])
        text = re.sub(r"\s+", " ", text).strip(_TITLE_SEPARATORS)
        text = _strip_type_words(text, DOCUMENT_TITLE_WORDS.get(document_name, ()))
        text = text.strip(_TITLE_SEPARATORS)
        if not text or not re.search(r"\w", text):
            return None
        return text
    return None


def is_approved(content: Optional[str]) -> bool:
    """True when a document carries an explicit approval marker."""
    if not content:
        return False
    return any(marker in content for marker in _APPROVAL_MARKERS)


def is_verified(content: Optional[str]) -> bool:
    """True when a verification document declares the bug verified or closed."""
    if not content:
        return False
    if any(pattern.search(content) for pattern in _VERIFIED_PATTERNS):
        return True
    return "✅" in content and "verified" in content.lower()


def _annotation_value(match: "re.Match[str]") -> str:
    return (match.group("value") or match.group("inline") or "").strip().rstrip("_").strip()


def _apply_annotations(task: TaskEntry, text: str) -> None:
    requirements = _REQUIREMENTS_ANNOTATION.search(text)
    if requirements:
        value = _annotation_value(requirements)
        task.requirements = [part.strip() for part in value.split(",") if part.strip()]
    leverage = _LEVERAGE_ANNOTATION.search(text)
    if leverage:
        task.leverage = _annotation_value(leverage) or None


def parse_tasks(content: Optional[str]) -> List[TaskEntry]:
    """Parse the checklist of a tasks document into nested task entries.

    Lines like ``- [ ] 1. Do it`` and ``- [x] **2.1 Done it**`` become
    entries; nesting follows indentation. Lines without a numeric ordinal or
    without a description are skipped.
    """
    if not content:
        return []

    tasks: List[TaskEntry] = []
    parents: List[Tuple[int, TaskEntry]] = []
    current: Optional[TaskEntry] = None

    for line in content.splitlines():
        match = _TASK_LINE_PATTERN.match(line)
        if not match:
            if current is None:
                continue
            if parse_heading(line):
                current = None
                continue
            _apply_annotations(current, line)
            continue

        rest = match.group("rest").strip()
        if rest.startswith("**"):
            rest = rest[2:].replace("**", "", 1).strip()
        body = _TASK_BODY_PATTERN.match(rest)
        if not body or not _TASK_ID_PATTERN.match(body.group("id")):
            logger.debug(f"Skipping malformed task line: {line!r}")
            current = None
            continue

        raw_description = body.group("desc")
        description = _ANNOTATION_STRIP.sub("", raw_description).strip().strip("*").strip()
        if not description:
            logger.debug(f"Skipping task line without description: {line!r}")
            current = None
            continue

        current = TaskEntry(
            task_id=body.group("id"),
            description=description,
            completed=match.group("mark").lower() == "x",
        )
        _apply_annotations(current, raw_description)

        level = len(match.group("indent").expandtabs(4)) // 2
        while parents and parents[-1][0] >= level:
            parents.pop()
        if parents:
            parents[-1][1].subtasks.append(current)
        else:
            tasks.append(current)
        parents.append((level, current))

    return tasks


def first_incomplete_task(tasks: List[TaskEntry]) -> Optional[TaskEntry]:
    """Return the first task, in document order, that is not complete."""
    for task in flatten_tasks(tasks):
        if not task.completed:
            return task
    return None


def infer_spec_status(documents: Dict[str, DocumentFacts], tasks: List[TaskEntry]) -> str:
    """Furthest spec phase whose document exists and has real content."""
    status = "not-started"
    requirements = documents.get("requirements.md")
    design = documents.get("design.md")
    tasks_doc = documents.get("tasks.md")

    if requirements and requirements.exists and requirements.has_content:
        status = "requirements"
    if design and design.exists and design.has_content:
        status = "design"
    if tasks_doc and tasks_doc.exists and tasks_doc.has_content:
        entries = flatten_tasks(tasks)
        completed = sum(1 for task in entries if task.completed)
        if not entries or completed == 0:
            # A checklist nobody has started on is still the tasks phase
            status = "tasks"
        elif completed == len(entries):
            status = "completed"
        else:
            status = "in-progress"
    return status


def infer_bug_status(documents: Dict[str, DocumentFacts], verified: bool) -> str:
    """Furthest bug phase whose document exists and has real content."""
    status = "reported"

    def _real(name: str) -> bool:
        doc = documents.get(name)
        return bool(doc and doc.exists and doc.has_content)

    if _real("analysis.md"):
        status = "analyzing"
    if _real("fix.md"):
        status = "fixing"
    if _real("verification.md"):
        status = "resolved" if verified else "verifying"
    return status


def degraded_item(kind: str, slug: str, error: str) -> WorkItem:
    """Placeholder entry for an item whose documents could not be parsed."""
    return WorkItem(
        kind=kind,
        slug=slug,
        display_name=format_display_name(slug),
        status=STATUSES_BY_KIND[kind][0],
        degraded=True,
        error=error,
    )


def _section_text(content: Optional[str], markers: Sequence[str]) -> Optional[str]:
    if not content:
        return None
    for marker in markers:
        body = section_lines(content, marker)
        if not body:
            continue
        text = " ".join(
            line.strip() for line in body if not is_template_line(line) and not parse_heading(line)
        )
        if text:
            return text
    return None


def _section_items(content: Optional[str], markers: Sequence[str], pattern: "re.Pattern[str]") -> List[str]:
    if not content:
        return []
    items: List[str] = []
    for marker in markers:
        for line in section_lines(content, marker) or []:
            stripped = line.strip()
            match = pattern.match(stripped)
            if match and not is_template_line(stripped):
                items.append(match.group("text").strip())
        if items:
            break
    return items


class DocumentParser:
    """Parse the work items stored under one project root."""

    def __init__(self, project_root: Path | str, base_dir: str = DEFAULT_BASE_DIR):
        """Initialize the parser for ``project_root``."""
        normalized = str(project_root).replace("\\", "/")
        self.project_root = Path(normalized).expanduser().resolve()
        self.base_dir = self.project_root / base_dir

    # ------------------------------------------------------------------
    # Layout helpers
    # ------------------------------------------------------------------

    def kind_dir(self, kind: str) -> Path:
        """Directory holding every item of ``kind``."""
        return self.base_dir / KIND_DIRECTORIES[validate_kind(kind)]

    def item_dir(self, kind: str, slug: str) -> Path:
        """Directory holding the documents of one item."""
        return self.kind_dir(kind) / slug

    def has_recognized_document(self, kind: str, slug: str) -> bool:
        """True when the item directory holds at least one known document."""
        item_dir = self.item_dir(kind, slug)
        return any((item_dir / name).is_file() for name in DOCUMENTS_BY_KIND[kind])

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse_item(self, kind: str, slug: str) -> Optional[WorkItem]:
        """Parse one item; None when it has no recognized documents."""
        validate_kind(kind)
        if kind == SPEC_KIND:
            return self.parse_spec(slug)
        return self.parse_bug(slug)

    def parse_spec(self, slug: str) -> Optional[WorkItem]:
        """Parse a spec from its requirements, design and tasks documents."""
        contents, documents, last_modified = self._load_documents(SPEC_KIND, slug)
        if not any(doc.exists for doc in documents.values()):
            return None

        for name in ("requirements.md", "design.md"):
            content = contents.get(name)
            documents[name].has_content = has_real_content(content)
            documents[name].approved = is_approved(content)

        tasks_content = contents.get("tasks.md")
        tasks = parse_tasks(tasks_content)
        documents["tasks.md"].has_content = bool(tasks) or has_real_content(tasks_content)
        documents["tasks.md"].approved = is_approved(tasks_content)

        status = infer_spec_status(documents, tasks)
        in_progress = first_incomplete_task(tasks) if status == "in-progress" else None

        item = WorkItem(
            kind=SPEC_KIND,
            slug=slug,
            display_name=self._display_name(slug, SPEC_DOCUMENTS, contents),
            status=status,
            last_modified=last_modified,
            documents=documents,
            tasks=tasks,
            facts={
                **self._requirements_facts(contents.get("requirements.md")),
                "has_code_reuse_analysis": self._has_code_reuse(contents.get("design.md")),
                "in_progress_task": in_progress.task_id if in_progress else None,
            },
        )
        self._log_parsed(item)
        return item

    def parse_bug(self, slug: str) -> Optional[WorkItem]:
        """Parse a bug from its report, analysis, fix and verification documents."""
        contents, documents, last_modified = self._load_documents(BUG_KIND, slug)
        if not any(doc.exists for doc in documents.values()):
            return None

        for name in BUG_DOCUMENTS:
            content = contents.get(name)
            documents[name].has_content = has_real_content(content, BUG_SECTION_MARKERS[name])
            documents[name].approved = is_approved(content)

        verification = contents.get("verification.md")
        verified = is_verified(verification)
        status = infer_bug_status(documents, verified)

        item = WorkItem(
            kind=BUG_KIND,
            slug=slug,
            display_name=self._display_name(slug, BUG_DOCUMENTS, contents),
            status=status,
            last_modified=last_modified,
            documents=documents,
            facts=self._bug_facts(contents, verified),
        )
        self._log_parsed(item)
        return item

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _load_documents(
        self, kind: str, slug: str
    ) -> Tuple[Dict[str, Optional[str]], Dict[str, DocumentFacts], float]:
        item_dir = self.item_dir(kind, slug)
        contents: Dict[str, Optional[str]] = {}
        documents: Dict[str, DocumentFacts] = {}
        last_modified = 0.0

        for name in DOCUMENTS_BY_KIND[kind]:
            path = item_dir / name
            content, mtime = self._read_document(path)
            contents[name] = content
            documents[name] = DocumentFacts(name=name, exists=content is not None)
            if mtime is not None:
                last_modified = max(last_modified, mtime)
            if content is not None:
                documents[name].title = extract_title(content, name)

        return contents, documents, last_modified

    def _read_document(self, path: Path) -> Tuple[Optional[str], Optional[float]]:
        try:
            if not path.is_file():
                return None, None
            mtime = path.stat().st_mtime
            return path.read_text(encoding="utf-8"), mtime
        except FileNotFoundError:
            # Deleted between the existence check and the read
            return None, None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read {path}: {e}")
            log_error_with_context(e, {"operation": "read_document", "path": str(path)})
            return None, None

    def _display_name(self, slug: str, names: Sequence[str], contents: Dict[str, Optional[str]]) -> str:
        for name in names:
            title = extract_title(contents.get(name), name)
            if title:
                return title
        return format_display_name(slug)

    def _requirements_facts(self, content: Optional[str]) -> Dict[str, Any]:
        requirements: List[Dict[str, str]] = []
        user_stories = 0
        for line in (content or "").splitlines():
            stripped = line.strip()
            heading = _REQUIREMENT_HEADING.match(stripped)
            if heading:
                requirements.append({"id": heading.group("id"), "title": heading.group("title").strip()})
            if "**User Story:**" in stripped or _USER_STORY_HEADING.match(stripped):
                user_stories += 1
        return {"requirements": requirements, "user_stories": user_stories}

    def _has_code_reuse(self, content: Optional[str]) -> bool:
        for line in (content or "").splitlines():
            heading = parse_heading(line)
            if heading and re.match(r"(code reuse|existing components)", heading[1], re.IGNORECASE):
                return True
        return False

    def _bug_facts(self, contents: Dict[str, Optional[str]], verified: bool) -> Dict[str, Any]:
        report = contents.get("report.md") or ""
        severity = _SEVERITY_PATTERN.search(report)
        verification = contents.get("verification.md") or ""

        tests_passed: Optional[bool] = None
        if "✅ All tests passed" in verification or "Tests: PASSED" in verification:
            tests_passed = True
        elif "❌ Tests failed" in verification or "Tests: FAILED" in verification:
            tests_passed = False

        return {
            "severity": severity.group(1).lower() if severity else None,
            "reproduction_steps": _section_items(
                report, ("Reproduction Steps", "Steps to Reproduce"), _NUMBERED_LINE
            ),
            "root_cause": _section_text(contents.get("analysis.md"), ("Root Cause",)),
            "files_affected": _section_items(
                contents.get("analysis.md"), ("Files Affected", "Affected Files"), _BULLET_LINE
            ),
            "fix_summary": _section_text(contents.get("fix.md"), ("Fix Summary",)),
            "verified": verified,
            "tests_passed": tests_passed,
            "regression_checks": _section_items(
                verification, ("Regression Checks", "Regression Testing"), _BULLET_LINE
            ),
        }

    def _log_parsed(self, item: WorkItem) -> None:
        logger.debug(f"Parsed {item.kind} '{item.slug}' -> {item.status}")
        observability_hooks.log_workflow_event(
            "item_parsed",
            kind=item.kind,
            slug=item.slug,
            status=item.status,
        )
