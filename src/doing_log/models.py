"""Data models for the doing log: entries, sections and the document."""

from __future__ import annotations

import copy
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Optional, Union

from .errors import (
    DuplicateId,
    DuplicateSectionName,
    UnknownEntryId,
    UnknownSectionName,
)

DEFAULT_SECTION = "Currently"
ARCHIVE_SECTION = "Archive"
LATER_SECTION = "Later"
DONE_TAG = "done"

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M"

# Older files and hand edits use seconds or slashes
_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
)

_ID_RE = re.compile(r"^[0-9a-f]{32}$")

# A tag value is absent (bare flag), a timestamp, or a string.
TagValue = Union[None, str, datetime]


def local_now() -> datetime:
    """Get the current local time truncated to the minute."""
    return truncate_to_minute(datetime.now())


def truncate_to_minute(dt: datetime) -> datetime:
    return dt.replace(second=0, microsecond=0)


def generate_entry_id() -> str:
    """Generate a fresh entry ID: 128 random bits as 32 lowercase hex chars."""
    return secrets.token_hex(16)


def normalize_entry_id(raw: str) -> str:
    """Normalize an ID read from disk to 32 lowercase hex chars.

    Accepts the hyphenated 8-4-4-4-12 form written by older versions.

    Raises:
        ValueError: If the text is not a 128-bit hex identifier.
    """
    candidate = raw.strip().replace("-", "").lower()
    if not _ID_RE.match(candidate):
        raise ValueError(f"Invalid entry id: {raw!r}")
    return candidate


def format_timestamp(dt: datetime) -> str:
    """Format datetime as YYYY-MM-DD HH:MM."""
    return dt.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(s: str) -> datetime:
    """Parse a stored timestamp, truncated to the minute.

    Raises:
        ValueError: If the text matches none of the accepted formats.
    """
    text = s.strip()
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return truncate_to_minute(datetime.strptime(text, fmt))
        except ValueError:
            continue
    raise ValueError(f"Invalid timestamp: {s!r}")


def format_tag_value(value: TagValue) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return format_timestamp(value)
    return value


@dataclass
class Entry:
    """A single logged activity."""
    started_at: datetime
    description: str
    tags: dict[str, TagValue] = field(default_factory=dict)
    note: Optional[str] = None
    entry_id: str = field(default_factory=generate_entry_id)

    @property
    def is_done(self) -> bool:
        return DONE_TAG in self.tags

    @property
    def done_at(self) -> Optional[datetime]:
        """Completion time carried by the @done tag, if it has one."""
        value = self.tags.get(DONE_TAG)
        return value if isinstance(value, datetime) else None

    def has_tag(self, name: str) -> bool:
        return name in self.tags

    def set_tag(self, name: str, value: TagValue = None) -> None:
        """Set a tag, replacing any previous value.

        The tag moves to the end of the emission order.
        """
        self.tags.pop(name, None)
        self.tags[name] = value

    def remove_tag(self, name: str) -> bool:
        """Remove a tag. Returns True if it was present."""
        return self.tags.pop(name, _MISSING) is not _MISSING

    def mark_done(self, at: Optional[datetime]) -> None:
        """Tag the entry @done, with a completion time unless `at` is None."""
        self.set_tag(DONE_TAG, truncate_to_minute(at) if at is not None else None)

    def ordered_tags(self) -> list[tuple[str, TagValue]]:
        """Tags in serialization order: @done first, then last-set order."""
        items = [(k, v) for k, v in self.tags.items() if k != DONE_TAG]
        if DONE_TAG in self.tags:
            items.insert(0, (DONE_TAG, self.tags[DONE_TAG]))
        return items

    def to_dict(self, section: Optional[str] = None) -> dict:
        """Convert entry to dictionary for JSON serialization."""
        result = {
            "entry_id": self.entry_id,
            "started_at": format_timestamp(self.started_at),
            "description": self.description,
            "tags": {k: format_tag_value(v) for k, v in self.ordered_tags()},
            "note": self.note,
            "done": self.is_done,
            "done_at": format_timestamp(self.done_at) if self.done_at else None,
        }
        if section is not None:
            result["section"] = section
        return result


_MISSING = object()


@dataclass
class Section:
    """A named, ordered bucket of entries. Most recent entries go first."""
    name: str
    entries: list[Entry] = field(default_factory=list)

    def __post_init__(self) -> None:
        validate_section_name(self.name)

    def __len__(self) -> int:
        return len(self.entries)


def validate_section_name(name: str) -> None:
    """Reject names that could not round-trip as a section header line."""
    if not name or name != name.strip():
        raise ValueError(f"Invalid section name: {name!r}")
    if ":" in name or "\n" in name or "\r" in name or name.startswith("-"):
        raise ValueError(f"Invalid section name: {name!r}")


@dataclass
class Document:
    """The whole log: an ordered sequence of uniquely named sections."""
    sections: list[Section] = field(default_factory=list)

    # ========== Sections ==========

    def section_names(self) -> list[str]:
        return [s.name for s in self.sections]

    def has_section(self, name: str) -> bool:
        return any(s.name == name for s in self.sections)

    def section(self, name: str) -> Section:
        """Look up a section by exact name.

        Raises:
            UnknownSectionName: If no section has that name.
        """
        for s in self.sections:
            if s.name == name:
                return s
        raise UnknownSectionName(f"Section not found: {name}")

    def add_section(self, name: str) -> Section:
        """Append a new empty section.

        Raises:
            DuplicateSectionName: If the name is taken.
        """
        if self.has_section(name):
            raise DuplicateSectionName(f"Section already exists: {name}")
        section = Section(name)
        self.sections.append(section)
        return section

    def remove_section(self, name: str, move_entries_to: Optional[str] = None) -> Section:
        """Remove a section, optionally moving its entries to the head of another.

        Raises:
            UnknownSectionName: If either section does not exist.
        """
        section = self.section(name)
        if move_entries_to is not None:
            target = self.section(move_entries_to)
            if target is not section:
                target.entries[0:0] = section.entries
                section.entries = []
        self.sections.remove(section)
        return section

    def rename_section(self, old: str, new: str) -> Section:
        section = self.section(old)
        if old == new:
            return section
        if self.has_section(new):
            raise DuplicateSectionName(f"Section already exists: {new}")
        validate_section_name(new)
        section.name = new
        return section

    def ensure_default_section(self) -> Section:
        """Create the "Currently" section when the document has none yet."""
        if not self.sections:
            return self.add_section(DEFAULT_SECTION)
        return self.sections[0]

    # ========== Entries ==========

    def ids(self) -> set[str]:
        return {e.entry_id for s in self.sections for e in s.entries}

    def iter_entries(self) -> Iterator[tuple[Section, Entry]]:
        """Iterate (section, entry) pairs in file order."""
        for section in self.sections:
            for entry in section.entries:
                yield section, entry

    def entries(self) -> list[Entry]:
        return [entry for _, entry in self.iter_entries()]

    def locate(self, entry_id: str) -> tuple[Section, Entry]:
        """Find an entry and the section holding it.

        Raises:
            UnknownEntryId: If no entry has that id.
        """
        for section, entry in self.iter_entries():
            if entry.entry_id == entry_id:
                return section, entry
        raise UnknownEntryId(f"Entry not found: {entry_id}")

    def find(self, entry_id: str) -> Entry:
        return self.locate(entry_id)[1]

    def insert(self, entry: Entry, section_name: str, at_head: bool = True) -> Entry:
        """Insert an entry into a section, at the head by default.

        Raises:
            DuplicateId: If the entry's id is already in the document.
            UnknownSectionName: If the section does not exist.
        """
        section = self.section(section_name)
        if entry.entry_id in self.ids():
            raise DuplicateId(f"Entry id already in document: {entry.entry_id}")
        if at_head:
            section.entries.insert(0, entry)
        else:
            section.entries.append(entry)
        return entry

    def remove(self, entry_id: str) -> Entry:
        """Remove an entry by id and return it.

        Raises:
            UnknownEntryId: If no entry has that id.
        """
        section, entry = self.locate(entry_id)
        section.entries.remove(entry)
        return entry

    def move(self, entry_id: str, section_name: str, at_head: bool = True) -> Entry:
        """Move an entry to another section.

        Raises:
            UnknownEntryId: If no entry has that id.
            UnknownSectionName: If the destination does not exist.
        """
        target = self.section(section_name)
        source, entry = self.locate(entry_id)
        source.entries.remove(entry)
        if at_head:
            target.entries.insert(0, entry)
        else:
            target.entries.append(entry)
        return entry

    def copy(self) -> Document:
        return copy.deepcopy(self)
