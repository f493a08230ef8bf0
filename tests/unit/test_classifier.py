"""Unit tests for template and placeholder detection."""

import pytest

from specboard.classifier import (
    TEMPLATE_RULES,
    has_real_content,
    is_template_line,
    matching_rules,
    parse_heading,
    section_lines,
)


class TestTemplateLines:
    """Each rule of the table flags its own kind of scaffolding."""

    @pytest.mark.parametrize("line, rule", [
        ("", "blank"),
        ("   ", "blank"),
        ("---", "horizontal-rule"),
        ("----------", "horizontal-rule"),
        ("*Describe the expected behavior*", "italic-placeholder"),
        ("The root cause is *to be investigated* later", "italic-placeholder"),
        ("**Pending**", "pending-marker"),
        ("Status: pending review", "pending-marker"),
        ("To be completed after analysis", "template-phrase"),
        ("Details will be filled in once fixed", "template-phrase"),
        ("Root cause to be determined", "template-phrase"),
        ("[Describe the fix here]", "bracket-placeholder"),
        ("<component name>", "bracket-placeholder"),
        ("{insert steps}", "bracket-placeholder"),
    ])
    def test_rule_matches(self, line, rule):
        assert rule in matching_rules(line)
        assert is_template_line(line)

    @pytest.mark.parametrize("line", [
        "The login form submits twice on Enter.",
        "**Root cause**: the handler is bound on both keydown and submit",
        "- Updated `auth/form.ts` to debounce submissions",
        "[Design notes](docs/design.md) describe the flow",
        "[x] Regression suite passed",
        "[Note] the cache is per-locale",
        "[WIP] rollout behind a flag, see below",
        "1. Open the login page",
        "Use 2 * 3 spacing in the grid",
    ])
    def test_authored_lines_are_real(self, line):
        assert matching_rules(line) == []
        assert not is_template_line(line)

    def test_rule_table_order_is_stable(self):
        assert [rule.name for rule in TEMPLATE_RULES] == [
            "blank",
            "horizontal-rule",
            "italic-placeholder",
            "pending-marker",
            "template-phrase",
            "bracket-placeholder",
        ]


class TestHeadings:
    """Test cases for heading parsing and sections."""

    def test_parse_heading(self):
        assert parse_heading("## Root Cause") == (2, "Root Cause")
        assert parse_heading("  # Title ##") == (1, "Title")
        assert parse_heading("#hashtag") is None
        assert parse_heading("plain text") is None

    def test_section_lines_stops_at_same_level(self):
        text = "\n".join([
            "# Bug Analysis",
            "## Root Cause",
            "Off-by-one in the pager.",
            "### Evidence",
            "Stack trace attached.",
            "## Next Steps",
            "Fix it.",
        ])

        body = section_lines(text, "root cause")

        assert body == ["Off-by-one in the pager.", "### Evidence", "Stack trace attached."]

    def test_section_lines_missing_heading(self):
        assert section_lines("## Summary\ntext", "Root Cause") is None

    def test_section_lines_empty_section(self):
        assert section_lines("## Root Cause\n## Next", "Root Cause") == []


class TestHasRealContent:
    """Test cases for the content-presence verdict."""

    def test_empty_and_missing(self):
        assert has_real_content(None) is False
        assert has_real_content("") is False
        assert has_real_content("\n  \n") is False

    def test_headings_only_is_template(self):
        assert has_real_content("# Bug Analysis\n\n## Root Cause\n\n## Fix Plan\n") is False

    def test_template_document(self):
        text = "\n".join([
            "# Bug Fix",
            "",
            "## Fix Summary",
            "*To be completed after analysis is approved*",
            "",
            "---",
            "## Changes Made",
            "[List the files changed]",
            "**Pending**",
        ])

        assert has_real_content(text) is False
        assert has_real_content(text, ["Fix Summary", "Changes Made"]) is False

    def test_one_real_line_is_enough(self):
        text = "## Root Cause\n*Describe the root cause*\nThe cache key ignores the locale.\n"

        assert has_real_content(text, ["Root Cause"]) is True

    def test_partial_line_italics_do_not_count(self):
        text = "## Root Cause\nThe cause is *unknown* for now\n"

        assert has_real_content(text, ["Root Cause"]) is False

    def test_markers_scope_the_scan(self):
        text = "\n".join([
            "# Verification",
            "Overview written by the reporter.",
            "## Test Results",
            "*Pending verification*",
        ])

        # Prose outside the named sections does not count once a section exists
        assert has_real_content(text, ["Test Results"]) is False
        assert has_real_content(text) is True

    def test_falls_back_to_whole_document_without_sections(self):
        text = "# Verification\n\nAll regression tests pass on main.\n"

        assert has_real_content(text, ["Test Results", "Regression Testing"]) is True

    def test_code_blocks_count_as_content(self):
        text = "## Code Changes\n```python\nreturn cache[key, locale]\n```\n"

        assert has_real_content(text, ["Code Changes"]) is True

    def test_heading_inside_code_fence_is_content(self):
        text = "```\n# not a heading\n```\n"

        assert has_real_content(text) is True

    def test_leading_bracket_tag_is_content(self):
        text = "## Root Cause\n[Note] the cache is per-locale, so each locale misses once.\n"

        assert has_real_content(text, ["Root Cause"]) is True

    def test_never_raises_on_odd_input(self):
        assert has_real_content("[[[<<<{{{***]]]") is False
        assert has_real_content("\x00\x01") is True
