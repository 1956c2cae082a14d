"""Tag and note extraction from free-form entry text.

Tags are ``@name`` or ``@name(value)`` tokens anywhere in the text. A tag
must not be glued to a preceding word or ``@`` (so ``me@example.com`` is not
a tag). Values may contain ``|`` and ``:``; a literal ``)`` or ``\\`` inside a
value is written escaped as ``\\)`` / ``\\\\``.

A note is a single top-level parenthetical aside, e.g. ``Meeting (discuss
roadmap) @urgent``. Parentheses that belong to a tag value or are escaped
never count.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .models import TagValue, format_tag_value, parse_timestamp

TAG_RE = re.compile(
    r"(?<![\w@])@(?P<name>\w+(?:[.\-]\w+)*)(?![\w@])"
    r"(?:\((?P<value>(?:\\.|[^)\\\n])*)\))?"
)

_ESCAPE_RE = re.compile(r"\\(.)")
_TIMESTAMP_LIKE = re.compile(r"^\d{4}[-/]\d{2}[-/]\d{2} \d{2}:\d{2}(?::\d{2})?$")


@dataclass
class Extraction:
    """Result of pulling tags and a note out of raw text."""
    description: str
    tags: dict[str, TagValue] = field(default_factory=dict)
    note: Optional[str] = None


def parse_tag_value(raw: str) -> TagValue:
    """Unescape a raw tag value; timestamps become datetimes."""
    value = _ESCAPE_RE.sub(r"\1", raw)
    if _TIMESTAMP_LIKE.match(value):
        try:
            return parse_timestamp(value)
        except ValueError:
            pass  # e.g. 2024-13-45 00:00 stays a plain string
    return value


def escape_tag_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace(")", "\\)").replace("\n", " ")


def format_tag(name: str, value: TagValue = None) -> str:
    """Render a tag token as it appears in the file."""
    text = format_tag_value(value)
    if text is None:
        return f"@{name}"
    if not isinstance(value, datetime):
        text = escape_tag_value(text)
    return f"@{name}({text})"


def normalize_tag_name(name: str) -> str:
    """Strip a leading @ from a tag name given by a user."""
    return name[1:] if name.startswith("@") else name


def _join(left: str, right: str) -> str:
    """Join text around a removed token with a single space."""
    left = left.rstrip()
    right = right.lstrip()
    if left and right:
        return f"{left} {right}"
    return left + right


def extract_tags(text: str) -> tuple[str, dict[str, TagValue]]:
    """Remove tag tokens from text.

    Returns:
        Tuple of (clean text, tags). Re-adding a tag replaces its value and
        moves it to the end of the order.
    """
    tags: dict[str, TagValue] = {}
    clean = ""
    last = 0
    removed = False
    for match in TAG_RE.finditer(text):
        segment = text[last:match.start()]
        clean = _join(clean, segment) if removed else segment
        removed = True
        raw = match.group("value")
        name = match.group("name")
        tags.pop(name, None)
        tags[name] = parse_tag_value(raw) if raw is not None else None
        last = match.end()
    tail = text[last:]
    clean = _join(clean, tail) if removed else tail
    return clean.strip(), tags


def _tag_value_spans(text: str) -> list[tuple[int, int]]:
    return [m.span() for m in TAG_RE.finditer(text) if m.group("value") is not None]


def _find_parentheticals(text: str) -> list[tuple[int, int]]:
    """Spans of balanced, unescaped, top-level (...) groups outside tag values."""
    spans = _tag_value_spans(text)
    groups = []
    depth = 0
    start = -1
    i = 0
    while i < len(text):
        tag_end = next((end for s, end in spans if s <= i < end), None)
        if tag_end is not None:
            i = tag_end
            continue
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "(":
            if depth == 0:
                start = i
            depth += 1
        elif ch == ")" and depth > 0:
            depth -= 1
            if depth == 0:
                groups.append((start, i + 1))
        i += 1
    return groups


def extract_note(text: str) -> tuple[str, Optional[str]]:
    """Pull the parenthetical note out of text.

    Only a text with exactly one top-level parenthetical yields a note; with
    none, several, or an empty one the text is returned unchanged.
    """
    groups = _find_parentheticals(text)
    if len(groups) != 1:
        return text, None
    start, end = groups[0]
    note = text[start + 1:end - 1].strip()
    if not note:
        return text, None
    return _join(text[:start], text[end:]), note


def extract(text: str) -> Extraction:
    """Split raw entry text into clean description, tags and optional note.

    The note is taken only when the text holds exactly one top-level
    parenthetical. With two or more, all of them stay in the description
    and no note is extracted, so extracting a clean description again
    never finds a new note.
    """
    remaining, note = extract_note(text)
    description, tags = extract_tags(remaining)
    return Extraction(description=description, tags=tags, note=note)
