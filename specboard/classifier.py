"""Template/placeholder detection for work item documents.

Documents are scaffolded from templates long before anyone writes real
content into them. Status inference must only count authored text, so every
trimmed line is run through an ordered table of rules; a line is template
text when any rule matches.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple


# Phrases the document templates use as stand-ins for content that is
# written in a later workflow phase.
TEMPLATE_PHRASES: Tuple[str, ...] = (
    "to be completed after",
    "to be performed after",
    "to be defined after",
    "to be filled in after",
    "to be documented after",
    "to be determined",
    "will be completed after",
    "will be filled in",
    "not yet started",
)

_HORIZONTAL_RULE = re.compile(r"^-{3,}$")
# Single-star emphasis with a non-empty interior; ``**bold**`` does not match.
_ITALIC = re.compile(r"(?<![*\w])\*(?![*\s])[^*]+?(?<![*\s])\*(?![*\w])")
_BOLD_PENDING = re.compile(r"\*\*\s*pending\s*\*\*", re.IGNORECASE)
_WRAPPED_PLACEHOLDER = re.compile(r"^(\[.*\]|<.*>|\{.*\})$")
# ``[text](url)`` and ``[ ]``/``[x]`` checkboxes are real markdown, not placeholders
_LINK_OR_CHECKBOX = re.compile(r"^\[(?:[^\]]*\]\(|[ xX]\])")
_HEADING = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")


@dataclass(frozen=True)
class TemplateRule:
    """One named predicate over a trimmed line."""

    name: str
    matches: Callable[[str], bool]


def _is_blank(line: str) -> bool:
    return not line


def _is_horizontal_rule(line: str) -> bool:
    return bool(_HORIZONTAL_RULE.match(line))


def _has_italic_placeholder(line: str) -> bool:
    return bool(_ITALIC.search(line))


def _has_pending_marker(line: str) -> bool:
    return bool(_BOLD_PENDING.search(line)) or "pending" in line.lower()


def _has_template_phrase(line: str) -> bool:
    lowered = line.lower()
    return any(phrase in lowered for phrase in TEMPLATE_PHRASES)


def _is_bracket_placeholder(line: str) -> bool:
    if _LINK_OR_CHECKBOX.match(line):
        return False
    return bool(_WRAPPED_PLACEHOLDER.match(line))


TEMPLATE_RULES: Tuple[TemplateRule, ...] = (
    TemplateRule("blank", _is_blank),
    TemplateRule("horizontal-rule", _is_horizontal_rule),
    TemplateRule("italic-placeholder", _has_italic_placeholder),
    TemplateRule("pending-marker", _has_pending_marker),
    TemplateRule("template-phrase", _has_template_phrase),
    TemplateRule("bracket-placeholder", _is_bracket_placeholder),
)


def matching_rules(line: str) -> List[str]:
    """Return the names of every rule that flags ``line`` as template text."""
    trimmed = line.strip()
    return [rule.name for rule in TEMPLATE_RULES if rule.matches(trimmed)]


def is_template_line(line: str) -> bool:
    """True when ``line`` carries no authored content."""
    trimmed = line.strip()
    return any(rule.matches(trimmed) for rule in TEMPLATE_RULES)


def parse_heading(line: str) -> Optional[Tuple[int, str]]:
    """Return ``(level, text)`` for a markdown ATX heading, else None."""
    match = _HEADING.match(line.strip())
    if not match:
        return None
    return len(match.group(1)), match.group(2)


def _heading_matches(text: str, marker: str) -> bool:
    return text.strip().lower().startswith(marker.strip().lower())


def _content_lines(lines: Iterable[str]) -> Iterable[str]:
    in_fence = False
    for line in lines:
        stripped = line.strip()
        if stripped.startswith("```") or stripped.startswith("~~~"):
            in_fence = not in_fence
            continue
        if not in_fence and parse_heading(stripped):
            continue
        yield line


def _any_real_line(lines: Iterable[str]) -> bool:
    return any(not is_template_line(line) for line in _content_lines(lines))


def section_lines(text: str, marker: str) -> Optional[List[str]]:
    """Return the body lines of every section whose heading starts with ``marker``.

    A section runs from its heading to the next heading of equal or higher
    level. Returns None when no heading matches.
    """
    lines = text.splitlines()
    body: Optional[List[str]] = None
    index = 0
    while index < len(lines):
        heading = parse_heading(lines[index])
        if heading and _heading_matches(heading[1], marker):
            level = heading[0]
            if body is None:
                body = []
            index += 1
            while index < len(lines):
                nested = parse_heading(lines[index])
                if nested and nested[0] <= level:
                    break
                body.append(lines[index])
                index += 1
            continue
        index += 1
    return body


def has_real_content(text: Optional[str], section_markers: Optional[Sequence[str]] = None) -> bool:
    """Decide whether a document holds authored content.

    With ``section_markers``, only the sections under those headings are
    considered; when none of the markers occur in the document the whole text
    is scanned instead, so documents written as free prose still count.
    Heading lines never count as content. Never raises.
    """
    if not text or not text.strip():
        return False

    if section_markers:
        found_section = False
        for marker in section_markers:
            body = section_lines(text, marker)
            if body is None:
                continue
            found_section = True
            if _any_real_line(body):
                return True
        if found_section:
            return False

    return _any_real_line(text.splitlines())
