"""Unit tests for document parsing and status inference.

This module builds markdown trees under ``tmp_path`` and checks the
statuses, task checklists and extracted facts the parser derives.
"""

import os
import pytest
from pathlib import Path

from specboard.models import DocumentFacts, TaskEntry
from specboard.parser import (
    DocumentParser,
    degraded_item,
    extract_title,
    first_incomplete_task,
    format_display_name,
    infer_bug_status,
    infer_spec_status,
    is_approved,
    is_verified,
    parse_tasks,
)


REQUIREMENTS = """# Requirements Document: Login Flow

## Introduction
Users sign in with email and password.

## Requirements

### Requirement 1: Email login
**User Story:** As a user, I want to log in with email, so that I can access my account.

### Requirement 2: Lockout
**User Story:** As an admin, I want repeated failures to lock the account.
"""

DESIGN = """# Design Document

## Overview
A session service issues signed tokens after password verification.

## Code Reuse Analysis
- Reuse the existing auth middleware.
"""

TASKS = """# Implementation Plan

- [x] 1. Create models
  - [x] 1.1 Write dataclasses
    - _Requirements: 1.1, 1.2_
  - [ ] 1.2 Add serialization
    _Leverage: src/models.py_
- [ ] **2. Build server**
- [ ] Not numbered task
- [x] 3. Ship it _Requirements: 3.1_
"""

TASKS_DONE = """# Implementation Plan

- [x] 1. Create models
- [x] 2. Build server
"""

TASKS_TEMPLATE = """# Implementation Plan

*Tasks will be generated after design approval*
"""

REPORT = """# Bug Report: Login double submit

## Bug Summary
Pressing Enter submits the login form twice.

**Severity**: High

## Reproduction Steps
1. Open the login page
2. Press Enter twice quickly
"""

ANALYSIS_TEMPLATE = """# Bug Analysis

## Root Cause
*To be completed after investigation*

## Implementation Plan
[Describe the plan]
"""

ANALYSIS = """# Bug Analysis

## Root Cause
The submit handler is bound on both keydown and submit.

## Files Affected
- src/login.ts
"""

FIX = """# Bug Fix

## Fix Summary
Removed the duplicate keydown binding.
"""

VERIFICATION = """# Bug Verification

## Test Results
Manual test on Chrome: a single request is sent.

## Regression Checks
- Password reset form still submits
"""


def write_item(root: Path, kind_dir: str, slug: str, documents: dict) -> Path:
    item_dir = root / ".claude" / kind_dir / slug
    item_dir.mkdir(parents=True, exist_ok=True)
    for name, content in documents.items():
        (item_dir / name).write_text(content, encoding="utf-8")
    return item_dir


class TestDisplayNames:
    """Test cases for titles and display names."""

    def test_format_display_name(self):
        assert format_display_name("login-flow") == "Login Flow"
        assert format_display_name("api_v2-rate_limits") == "Api V2 Rate Limits"

    def test_extract_title_strips_document_words(self):
        assert extract_title(REQUIREMENTS, "requirements.md") == "Login Flow"
        assert extract_title(REPORT, "report.md") == "Login double submit"

    def test_extract_title_strips_status_decorations(self):
        content = "# ✅ APPROVED Requirements: Login Flow\n"

        assert extract_title(content, "requirements.md") == "Login Flow"

    def test_extract_title_generic_heading(self):
        assert extract_title(DESIGN, "design.md") is None
        assert extract_title("## Only a subsection\n", "design.md") is None
        assert extract_title(None, "design.md") is None


class TestMarkers:
    """Test cases for approval and verification markers."""

    def test_is_approved(self):
        assert is_approved("# Design\n\n**Approved:** ✓\n")
        assert is_approved("✅ APPROVED\n")
        assert not is_approved("Approval pending")
        assert not is_approved(None)

    @pytest.mark.parametrize("content", [
        "## Result\n✅ VERIFIED\n",
        "**Verified:** ✓\n",
        "**Production Verified**\n",
        "Status: Resolved\n",
        "**Status:** Closed\n",
        "✅ Fix verified in staging\n",
    ])
    def test_is_verified(self, content):
        assert is_verified(content)

    def test_not_verified(self):
        assert not is_verified(VERIFICATION)
        assert not is_verified(None)


class TestParseTasks:
    """Test cases for tasks.md checklist parsing."""

    def test_nesting_and_annotations(self):
        tasks = parse_tasks(TASKS)

        assert [task.task_id for task in tasks] == ["1", "2", "3"]
        first = tasks[0]
        assert first.completed is True
        assert [sub.task_id for sub in first.subtasks] == ["1.1", "1.2"]
        assert first.subtasks[0].requirements == ["1.1", "1.2"]
        assert first.subtasks[1].leverage == "src/models.py"
        assert first.subtasks[1].completed is False

    def test_bold_task_is_unwrapped(self):
        tasks = parse_tasks(TASKS)

        assert tasks[1].description == "Build server"
        assert tasks[1].completed is False

    def test_inline_annotations_are_removed_from_description(self):
        tasks = parse_tasks(TASKS)

        assert tasks[2].description == "Ship it"
        assert tasks[2].requirements == ["3.1"]

    def test_malformed_lines_are_skipped(self):
        content = "- [ ] Not numbered\n- [x]\n- [ ] 4.\n* [X] 5. Uppercase mark\n"

        tasks = parse_tasks(content)

        assert [(task.task_id, task.completed) for task in tasks] == [("5", True)]

    def test_empty_content(self):
        assert parse_tasks(None) == []
        assert parse_tasks("# Tasks\n") == []

    def test_first_incomplete_task_is_depth_first(self):
        task = first_incomplete_task(parse_tasks(TASKS))

        assert task.task_id == "1.2"
        assert first_incomplete_task(parse_tasks(TASKS_DONE)) is None


class TestStatusInference:
    """Test cases for the pure status functions."""

    def _docs(self, *real):
        names = ("requirements.md", "design.md", "tasks.md", "report.md", "analysis.md", "fix.md",
                 "verification.md")
        return {name: DocumentFacts(name=name, exists=True, has_content=name in real) for name in names}

    def test_spec_status_progression(self):
        assert infer_spec_status(self._docs(), []) == "not-started"
        assert infer_spec_status(self._docs("requirements.md"), []) == "requirements"
        assert infer_spec_status(self._docs("requirements.md", "design.md"), []) == "design"
        assert infer_spec_status(self._docs("requirements.md", "design.md", "tasks.md"), []) == "tasks"

    def test_spec_status_from_tasks(self):
        docs = self._docs("requirements.md", "design.md", "tasks.md")
        open_task = TaskEntry(task_id="1", description="Do", completed=False)
        done_task = TaskEntry(task_id="2", description="Done", completed=True)

        assert infer_spec_status(docs, [done_task, open_task]) == "in-progress"
        assert infer_spec_status(docs, [done_task]) == "completed"
        assert infer_spec_status(docs, [open_task]) == "tasks"

    def test_untouched_checklist_stays_in_tasks_phase(self, tmp_path):
        write_item(tmp_path, "specs", "login-flow", {
            "requirements.md": REQUIREMENTS,
            "design.md": DESIGN,
            "tasks.md": "# Tasks\n\n- [ ] 1. First\n- [ ] 2. Second\n",
        })

        item = DocumentParser(tmp_path).parse_spec("login-flow")

        assert item.status == "tasks"
        assert (item.task_completed, item.task_total) == (0, 2)
        assert item.facts["in_progress_task"] is None

    def test_bug_status_progression(self):
        assert infer_bug_status(self._docs("report.md"), False) == "reported"
        assert infer_bug_status(self._docs("report.md", "analysis.md"), False) == "analyzing"
        assert infer_bug_status(self._docs("report.md", "analysis.md", "fix.md"), False) == "fixing"
        all_docs = self._docs("report.md", "analysis.md", "fix.md", "verification.md")
        assert infer_bug_status(all_docs, False) == "verifying"
        assert infer_bug_status(all_docs, True) == "resolved"

    def test_verified_marker_needs_real_verification(self):
        assert infer_bug_status(self._docs("report.md", "fix.md"), True) == "fixing"

    def test_degraded_item(self):
        item = degraded_item("bug", "broken-bug", "boom")

        assert item.status == "reported"
        assert item.degraded is True
        assert item.error == "boom"
        assert item.display_name == "Broken Bug"


class TestDocumentParserSpecs:
    """Test cases for parsing spec directories."""

    def test_layout(self, tmp_path):
        parser = DocumentParser(tmp_path)

        assert parser.project_root == tmp_path.resolve()
        assert parser.kind_dir("spec") == tmp_path.resolve() / ".claude" / "specs"
        assert parser.item_dir("bug", "x") == tmp_path.resolve() / ".claude" / "bugs" / "x"
        with pytest.raises(ValueError):
            parser.kind_dir("feature")

    def test_custom_base_dir(self, tmp_path):
        parser = DocumentParser(tmp_path, base_dir="docs")

        assert parser.kind_dir("bug") == tmp_path.resolve() / "docs" / "bugs"

    def test_requirements_only(self, tmp_path):
        write_item(tmp_path, "specs", "login-flow", {"requirements.md": REQUIREMENTS})

        item = DocumentParser(tmp_path).parse_item("spec", "login-flow")

        assert item.status == "requirements"
        assert item.display_name == "Login Flow"
        assert item.documents["requirements.md"].has_content is True
        assert item.documents["design.md"].exists is False
        assert item.facts["requirements"] == [
            {"id": "1", "title": "Email login"},
            {"id": "2", "title": "Lockout"},
        ]
        assert item.facts["user_stories"] == 2

    def test_design_phase(self, tmp_path):
        write_item(tmp_path, "specs", "login-flow", {"requirements.md": REQUIREMENTS, "design.md": DESIGN})

        item = DocumentParser(tmp_path).parse_spec("login-flow")

        assert item.status == "design"
        assert item.facts["has_code_reuse_analysis"] is True

    def test_template_tasks_do_not_advance(self, tmp_path):
        write_item(tmp_path, "specs", "login-flow", {
            "requirements.md": REQUIREMENTS,
            "design.md": DESIGN,
            "tasks.md": TASKS_TEMPLATE,
        })

        item = DocumentParser(tmp_path).parse_spec("login-flow")

        assert item.status == "design"
        assert item.documents["tasks.md"].has_content is False

    def test_tasks_without_checklist(self, tmp_path):
        write_item(tmp_path, "specs", "login-flow", {
            "requirements.md": REQUIREMENTS,
            "design.md": DESIGN,
            "tasks.md": "# Tasks\n\nSplit the work into service and UI tracks.\n",
        })

        assert DocumentParser(tmp_path).parse_spec("login-flow").status == "tasks"

    def test_in_progress_then_completed(self, tmp_path):
        item_dir = write_item(tmp_path, "specs", "login-flow", {
            "requirements.md": REQUIREMENTS,
            "design.md": DESIGN,
            "tasks.md": TASKS,
        })
        parser = DocumentParser(tmp_path)

        item = parser.parse_spec("login-flow")
        assert item.status == "in-progress"
        assert item.facts["in_progress_task"] == "1.2"
        assert (item.task_completed, item.task_total) == (3, 5)

        (item_dir / "tasks.md").write_text(TASKS_DONE, encoding="utf-8")
        item = parser.parse_spec("login-flow")
        assert item.status == "completed"
        assert item.facts["in_progress_task"] is None

    def test_empty_requirements_is_not_started(self, tmp_path):
        write_item(tmp_path, "specs", "login-flow", {"requirements.md": ""})

        item = DocumentParser(tmp_path).parse_spec("login-flow")

        assert item.status == "not-started"
        assert item.documents["requirements.md"].exists is True
        assert item.display_name == "Login Flow"

    def test_no_recognized_documents(self, tmp_path):
        item_dir = write_item(tmp_path, "specs", "scratch", {"notes.md": "# Notes\nreal text\n"})
        parser = DocumentParser(tmp_path)

        assert parser.parse_spec("scratch") is None
        assert parser.has_recognized_document("spec", "scratch") is False
        assert parser.parse_spec("missing") is None

        (item_dir / "design.md").write_text(DESIGN, encoding="utf-8")
        assert parser.has_recognized_document("spec", "scratch") is True

    def test_last_modified_is_newest_document(self, tmp_path):
        item_dir = write_item(tmp_path, "specs", "login-flow", {"requirements.md": REQUIREMENTS, "design.md": DESIGN})
        os.utime(item_dir / "requirements.md", (1_600_000_000, 1_600_000_000))
        os.utime(item_dir / "design.md", (1_700_000_000, 1_700_000_000))

        item = DocumentParser(tmp_path).parse_spec("login-flow")

        assert item.last_modified == 1_700_000_000

    def test_unreadable_document_counts_as_absent(self, tmp_path):
        item_dir = write_item(tmp_path, "specs", "login-flow", {"requirements.md": REQUIREMENTS})
        (item_dir / "design.md").write_bytes(b"\xff\xfe\xfa invalid utf-8 \x80")

        item = DocumentParser(tmp_path).parse_spec("login-flow")

        assert item.status == "requirements"
        assert item.documents["design.md"].exists is False

    def test_parsing_is_idempotent(self, tmp_path):
        write_item(tmp_path, "specs", "login-flow", {
            "requirements.md": REQUIREMENTS,
            "design.md": DESIGN,
            "tasks.md": TASKS,
        })
        parser = DocumentParser(tmp_path)

        assert parser.parse_spec("login-flow").to_dict() == parser.parse_spec("login-flow").to_dict()

    def test_backslash_project_root(self, tmp_path):
        write_item(tmp_path, "specs", "login-flow", {"requirements.md": REQUIREMENTS})
        windows_style = str(tmp_path).replace("/", "\\")

        parser = DocumentParser(windows_style)

        assert parser.parse_spec("login-flow").status == "requirements"


class TestDocumentParserBugs:
    """Test cases for parsing bug directories."""

    def test_report_then_analysis(self, tmp_path):
        item_dir = write_item(tmp_path, "bugs", "foo-bar", {"report.md": REPORT, "analysis.md": ANALYSIS_TEMPLATE})
        parser = DocumentParser(tmp_path)

        item = parser.parse_item("bug", "foo-bar")
        assert item.status == "reported"
        assert item.display_name == "Login double submit"
        assert item.documents["analysis.md"].exists is True
        assert item.documents["analysis.md"].has_content is False

        (item_dir / "analysis.md").write_text(ANALYSIS, encoding="utf-8")
        item = parser.parse_item("bug", "foo-bar")
        assert item.status == "analyzing"
        assert item.facts["root_cause"] == "The submit handler is bound on both keydown and submit."
        assert item.facts["files_affected"] == ["src/login.ts"]

    def test_report_facts(self, tmp_path):
        write_item(tmp_path, "bugs", "foo-bar", {"report.md": REPORT})

        item = DocumentParser(tmp_path).parse_bug("foo-bar")

        assert item.facts["severity"] == "high"
        assert item.facts["reproduction_steps"] == ["Open the login page", "Press Enter twice quickly"]
        assert item.facts["verified"] is False

    def test_status_is_monotonic_as_documents_fill_in(self, tmp_path):
        item_dir = write_item(tmp_path, "bugs", "foo-bar", {"report.md": REPORT})
        parser = DocumentParser(tmp_path)
        statuses = [parser.parse_bug("foo-bar").status]

        for name, content in (("analysis.md", ANALYSIS), ("fix.md", FIX), ("verification.md", VERIFICATION)):
            (item_dir / name).write_text(content, encoding="utf-8")
            statuses.append(parser.parse_bug("foo-bar").status)

        (item_dir / "verification.md").write_text(VERIFICATION + "\n✅ VERIFIED\n", encoding="utf-8")
        statuses.append(parser.parse_bug("foo-bar").status)

        assert statuses == ["reported", "analyzing", "fixing", "verifying", "resolved"]

    def test_verification_facts(self, tmp_path):
        write_item(tmp_path, "bugs", "foo-bar", {
            "report.md": REPORT,
            "fix.md": FIX,
            "verification.md": VERIFICATION + "\n✅ All tests passed\n",
        })

        item = DocumentParser(tmp_path).parse_bug("foo-bar")

        assert item.facts["fix_summary"] == "Removed the duplicate keydown binding."
        assert item.facts["tests_passed"] is True
        assert item.facts["regression_checks"] == ["Password reset form still submits"]

    def test_bug_without_report(self, tmp_path):
        write_item(tmp_path, "bugs", "orphan", {"fix.md": FIX})

        item = DocumentParser(tmp_path).parse_bug("orphan")

        assert item.status == "fixing"
        assert item.display_name == "Orphan"
