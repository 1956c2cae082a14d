"""Parser and serializer for the TaskPaper-style doing file.

File format::

    Currently:
     - 2024-01-15 09:30 | Writing docs @docs @done(2024-01-15 11:30) <32-hex-id>
      indented note line
      indented note line 2

The parser is resilient: blank and unrecognized lines are skipped and
reported, never fatal. Only undecodable bytes or control characters abort
a load. ``parse(serialize(doc)) == doc`` holds for every parsed document.
"""

from __future__ import annotations

import re
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from loguru import logger

from .errors import StructuralParseFailure
from .extract import extract_tags, format_tag
from .models import (
    DEFAULT_SECTION,
    Document,
    Entry,
    Section,
    format_timestamp,
    generate_entry_id,
    normalize_entry_id,
    parse_timestamp,
)

NOTE_INDENT = "  "

SECTION_RE = re.compile(r"^(?P<name>[^\s:\-](?:[^:]*[^\s:])?):[ \t]*$")
ENTRY_RE = re.compile(
    r"^\s*- (?P<ts>\d{4}[-/]\d{2}[-/]\d{2} \d{2}:\d{2}(?::\d{2})?) ?\|(?P<rest>.*)$"
)
ID_TAIL_RE = re.compile(
    r"\s*<(?P<id>[0-9A-Fa-f]{32}"
    r"|[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12})>\s*$"
)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0e-\x1f]")


@dataclass
class SkippedLine:
    """A line the parser did not recognize and dropped."""
    lineno: int
    text: str
    reason: str


@dataclass
class ParseReport:
    """A parsed document plus the lines that were skipped on the way."""
    document: Document
    skipped: list[SkippedLine] = field(default_factory=list)


def _decode(data: Union[str, bytes]) -> str:
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise StructuralParseFailure(f"File is not valid UTF-8 text: {e}") from e
    if data.startswith("\ufeff"):
        data = data[1:]
    return data


def normalize_note(text: str) -> Optional[str]:
    """Dedent a note block and drop trailing blank lines; blank means no note."""
    text = textwrap.dedent(text.replace("\r\n", "\n"))
    note_lines = text.split("\n")
    while note_lines and not note_lines[-1].strip():
        note_lines.pop()
    if not note_lines:
        return None
    return "\n".join(note_lines)


class _Parser:
    """Line-by-line state machine building a Document."""

    def __init__(self) -> None:
        self.document = Document()
        self.skipped: list[SkippedLine] = []
        self.section: Optional[Section] = None
        self.entry: Optional[Entry] = None
        self.note_lines: list[str] = []
        self.seen_ids: set[str] = set()

    def skip(self, lineno: int, line: str, reason: str) -> None:
        logger.debug(f"Skipping line {lineno} ({reason}): {line[:60]!r}")
        self.skipped.append(SkippedLine(lineno=lineno, text=line, reason=reason))

    def flush_note(self) -> None:
        if self.entry is not None and self.note_lines:
            self.entry.note = normalize_note("\n".join(self.note_lines))
        self.note_lines = []

    def end_entry(self) -> None:
        self.flush_note()
        self.entry = None

    def open_section(self, name: str, lineno: int) -> None:
        self.end_entry()
        if self.document.has_section(name):
            logger.warning(f"Line {lineno}: section '{name}' repeated, merging into the first one")
            self.section = self.document.section(name)
        else:
            self.section = self.document.add_section(name)

    def open_entry(self, match: re.Match, lineno: int, line: str) -> None:
        self.end_entry()
        try:
            started_at = parse_timestamp(match.group("ts"))
        except ValueError:
            self.skip(lineno, line, "invalid timestamp")
            return

        rest = match.group("rest")
        entry_id = None
        id_match = ID_TAIL_RE.search(rest)
        if id_match:
            entry_id = normalize_entry_id(id_match.group("id"))
            rest = rest[:id_match.start()]
        if entry_id is None:
            entry_id = generate_entry_id()
        elif entry_id in self.seen_ids:
            logger.warning(f"Line {lineno}: duplicate entry id {entry_id}, assigning a new one")
            entry_id = generate_entry_id()
        self.seen_ids.add(entry_id)

        description, tags = extract_tags(rest)
        entry = Entry(
            started_at=started_at,
            description=description,
            tags=tags,
            entry_id=entry_id,
        )
        if self.section is None:
            if self.document.has_section(DEFAULT_SECTION):
                self.section = self.document.section(DEFAULT_SECTION)
            else:
                self.section = self.document.add_section(DEFAULT_SECTION)
        self.section.entries.append(entry)
        self.entry = entry

    def feed(self, lineno: int, line: str) -> None:
        if line == "":
            self.end_entry()
            return

        entry_match = ENTRY_RE.match(line)
        if entry_match:
            self.open_entry(entry_match, lineno, line)
            return

        section_match = SECTION_RE.match(line)
        if section_match:
            self.open_section(section_match.group("name"), lineno)
            return

        if line[0] in " \t":
            if self.entry is not None:
                self.note_lines.append(line)
            elif line.strip():
                self.skip(lineno, line, "indented line without an entry")
            return

        self.end_entry()
        self.skip(lineno, line, "unrecognized line")


def parse_with_report(text: Union[str, bytes]) -> ParseReport:
    """Parse doing file text, returning the document and skipped lines.

    Raises:
        StructuralParseFailure: If the input is not text.
    """
    content = _decode(text)
    parser = _Parser()
    for lineno, line in enumerate(content.split("\n"), start=1):
        line = line.rstrip("\r")
        if _CONTROL_RE.search(line):
            raise StructuralParseFailure("Control characters in input", lineno=lineno)
        parser.feed(lineno, line)
    parser.end_entry()
    return ParseReport(document=parser.document, skipped=parser.skipped)


def parse(text: Union[str, bytes]) -> Document:
    """Parse doing file text into a Document."""
    return parse_with_report(text).document


def serialize_entry(entry: Entry) -> str:
    """Render one entry (and its note) as file lines."""
    parts = [entry.description] if entry.description else []
    parts.extend(format_tag(name, value) for name, value in entry.ordered_tags())
    parts.append(f"<{entry.entry_id}>")
    lines = [f" - {format_timestamp(entry.started_at)} | {' '.join(parts)}"]
    if entry.note is not None:
        lines.extend(NOTE_INDENT + line for line in entry.note.split("\n"))
    return "\n".join(lines)


def serialize(document: Document) -> str:
    """Render a Document in canonical file form."""
    blocks = []
    for section in document.sections:
        lines = [f"{section.name}:"]
        lines.extend(serialize_entry(entry) for entry in section.entries)
        blocks.append("\n".join(lines))
    if not blocks:
        return ""
    return "\n\n".join(blocks) + "\n"


# Core API names
load = parse
save = serialize


def read_file(path: Path) -> ParseReport:
    """Read and parse a doing file. A missing file is an empty log."""
    if not path.exists():
        document = Document()
        document.ensure_default_section()
        return ParseReport(document=document)
    report = parse_with_report(path.read_bytes())
    report.document.ensure_default_section()
    return report
