"""Document operations and the file-backed doing engine.

The module-level functions are pure operations on an in-memory Document:
they mutate it in place and return the affected entry (or the document),
raising a DoingError subclass when the target does not exist.

DoingEngine wraps them in load -> mutate -> save cycles against the doing
file named by the configuration.
"""

from __future__ import annotations

import fnmatch
import re
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Generator, Iterable, Mapping, Optional, Sequence, Union

from loguru import logger

from .config import DoingConfig
from .errors import InvalidFilterExpression, NoMatchingEntry, ProtectedSection
from .extract import extract, extract_tags, normalize_tag_name
from .locking import file_lock, write_text
from .models import (
    ARCHIVE_SECTION,
    DEFAULT_SECTION,
    DONE_TAG,
    LATER_SECTION,
    Document,
    Entry,
    Section,
    TagValue,
    local_now,
    truncate_to_minute,
    validate_section_name,
)
from .query import (
    DateRange,
    FilterExpression,
    FilterOptions,
    IsDone,
    Not,
    Predicate,
    QueryContext,
    durations_by_tag,
    entry_duration,
    query,
    tag_counts,
    to_predicate,
    total_duration,
)
from .taskpaper import ParseReport, normalize_note, parse_with_report, read_file, serialize
from .timeparse import (
    TimeInterval,
    format_duration,
    parse_duration,
    resolve_interval,
    resolve_point,
)

TimeArg = Union[datetime, str, None]


# ========== Entry Creation ==========

def create_entry(
    description_text: str,
    section: str = DEFAULT_SECTION,
    started_at: Optional[datetime] = None,
    *,
    note: Optional[str] = None,
    document: Optional[Document] = None,
) -> Entry:
    """Build an entry from raw text, running tag and note extraction.

    The first line of the text is the entry itself; any further lines are
    note text. An explicit note is appended after an extracted one. With a
    document, the entry is inserted at the head of `section`.

    Raises:
        ValueError: If the description is empty or the section name invalid.
        UnknownSectionName: If the document has no such section.
    """
    validate_section_name(section)
    first, _, rest = description_text.strip().partition("\n")
    extraction = extract(first)
    if not extraction.description and not extraction.tags:
        raise ValueError("Entry text cannot be empty")

    notes = [n for n in (extraction.note, rest, note) if n and n.strip()]
    entry = Entry(
        started_at=truncate_to_minute(started_at or local_now()),
        description=extraction.description,
        tags=extraction.tags,
        note=normalize_note("\n".join(notes)) if notes else None,
    )
    if document is not None:
        document.insert(entry, section)
    return entry


def add_entry(
    document: Document,
    text: str,
    section: str = DEFAULT_SECTION,
    started_at: Optional[datetime] = None,
    note: Optional[str] = None,
    done_at: Optional[datetime] = None,
) -> Entry:
    """Create an entry and insert it at the head of a section, optionally done."""
    entry = create_entry(text, section, started_at, note=note, document=document)
    if done_at is not None:
        entry.mark_done(done_at)
    return entry


def parse_tag_args(tags: Iterable[str]) -> dict[str, TagValue]:
    """Turn user tag arguments (``urgent``, ``@p(2)``) into a tag mapping."""
    tokens = []
    for tag in tags:
        tag = tag.strip()
        if not tag:
            continue
        tokens.append(tag if tag.startswith("@") else f"@{tag}")
    leftover, parsed = extract_tags(" ".join(tokens))
    if leftover:
        raise InvalidFilterExpression(f"Not a tag: {leftover!r}")
    return parsed


# ========== Completion ==========

def toggle_done(document: Document, entry_id: str, at: Optional[datetime] = None) -> Document:
    """Mark an entry done at `at` (default now), or undo it if already done.

    Raises:
        UnknownEntryId: If no entry has that id.
    """
    entry = document.find(entry_id)
    if entry.is_done:
        entry.remove_tag(DONE_TAG)
    else:
        entry.mark_done(at or local_now())
    return document


def mark_done(
    document: Document,
    entry_id: str,
    at: Optional[datetime] = None,
    took: Optional[timedelta] = None,
) -> Entry:
    """Complete an entry. `at` wins over `took`; with neither, now."""
    entry = document.find(entry_id)
    if at is None and took is not None:
        at = entry.started_at + took
    entry.mark_done(at or local_now())
    return entry


def cancel(document: Document, entry_id: str) -> Entry:
    """Close an entry with a bare @done: no completion time, no duration."""
    entry = document.find(entry_id)
    entry.mark_done(None)
    return entry


def reopen(document: Document, entry_id: str) -> Entry:
    entry = document.find(entry_id)
    entry.remove_tag(DONE_TAG)
    return entry


def delete(document: Document, entry_id: str) -> Document:
    """Remove an entry.

    Raises:
        UnknownEntryId: If no entry has that id.
    """
    document.remove(entry_id)
    return document


# ========== Editing ==========

def add_tags(document: Document, entry_id: str, tags: Mapping[str, TagValue]) -> Entry:
    entry = document.find(entry_id)
    for name, value in tags.items():
        entry.set_tag(normalize_tag_name(name), value)
    return entry


def remove_tags(document: Document, entry_id: str, patterns: Sequence[str], regex: bool = False) -> list[str]:
    """Remove tags matching glob patterns (or regexes). Returns removed names.

    Raises:
        InvalidFilterExpression: For a bad regex.
    """
    entry = document.find(entry_id)
    matchers: list[Callable[[str], bool]] = []
    for pattern in patterns:
        pattern = normalize_tag_name(pattern.strip())
        if regex:
            try:
                compiled = re.compile(pattern)
            except re.error as e:
                raise InvalidFilterExpression(f"Invalid regular expression {pattern!r}: {e}") from e
            matchers.append(lambda name, c=compiled: c.fullmatch(name) is not None)
        else:
            matchers.append(lambda name, p=pattern: fnmatch.fnmatchcase(name, p))

    removed = [name for name in entry.tags if any(m(name) for m in matchers)]
    for name in removed:
        entry.remove_tag(name)
    return removed


def rename_tag(document: Document, old: str, new: str, entry_ids: Optional[Iterable[str]] = None) -> int:
    """Rename a tag, keeping its value. Returns the number of entries changed."""
    old, new = normalize_tag_name(old), normalize_tag_name(new)
    if entry_ids is not None:
        targets = [document.find(i) for i in entry_ids]
    else:
        targets = document.entries()
    changed = 0
    for entry in targets:
        if old in entry.tags:
            value = entry.tags[old]
            entry.remove_tag(old)
            entry.set_tag(new, value)
            changed += 1
    return changed


def set_note(document: Document, entry_id: str, note: Optional[str], append: bool = False) -> Entry:
    """Replace (or append to) an entry's note. An empty note clears it."""
    entry = document.find(entry_id)
    text = normalize_note(note) if note else None
    if append and entry.note and text:
        entry.note = f"{entry.note}\n{text}"
    elif text:
        entry.note = text
    elif not append:
        entry.note = None
    return entry


def set_description(document: Document, entry_id: str, text: str) -> Entry:
    """Replace the description; tags written in the text are set on the entry."""
    entry = document.find(entry_id)
    description, tags = extract_tags(text)
    entry.description = description
    for name, value in tags.items():
        entry.set_tag(name, value)
    return entry


def move_entry(document: Document, entry_id: str, section: str) -> Entry:
    return document.move(entry_id, section)


def _check_sections(document: Document, names: Sequence[str]) -> None:
    """Raise UnknownSectionName for any name (other than "all") not in the document."""
    for name in names:
        if name.lower() != "all":
            document.section(name)


# ========== Archiving ==========

def _select_for_move(
    document: Document,
    expr: FilterExpression,
    exclude: str,
    keep: Optional[int],
    sections: Optional[Sequence[str]],
    now: Optional[datetime],
) -> list[tuple[Section, Entry]]:
    """Matching entries outside `exclude`, minus the `keep` newest per section."""
    result = query(document, expr, sections=sections, now=now)
    by_section: dict[str, list[tuple[Section, Entry]]] = {}
    for section, entry in result.pairs():
        if section.name == exclude:
            continue
        by_section.setdefault(section.name, []).append((section, entry))

    selected = []
    for pairs in by_section.values():
        selected.extend(pairs[keep:] if keep else pairs)
    selected.sort(key=lambda pair: pair[1].started_at, reverse=True)
    return selected


def _label(entry: Entry, section_name: str, default_section: str) -> None:
    if section_name != default_section:
        entry.set_tag(f"from_{section_name.lower().replace(' ', '_')}")


def archive(
    document: Document,
    expr: FilterExpression = None,
    to: str = ARCHIVE_SECTION,
    keep: Optional[int] = None,
    label: bool = False,
    sections: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
    default_section: str = DEFAULT_SECTION,
) -> list[Entry]:
    """Move matching entries to the head of section `to`.

    The destination is created when missing. keep leaves the newest N
    matches of each source section in place. label tags each moved entry
    ``@from_<section>`` (except entries from the default section).

    Returns:
        The moved entries, most recent first.
    """
    if sections and to in sections:
        raise ProtectedSection(f"Cannot archive section '{to}' into itself")
    if not document.has_section(to):
        document.add_section(to)

    selected = _select_for_move(document, expr, to, keep, sections, now)
    moved = []
    for section, entry in reversed(selected):
        document.move(entry.entry_id, to)
        if label:
            _label(entry, section.name, default_section)
        moved.append(entry)
    moved.reverse()
    if moved:
        logger.info(f"Archived {len(moved)} entries to {to}")
    return moved


def rotate(
    document: Document,
    archive_document: Document,
    expr: FilterExpression = None,
    keep: Optional[int] = None,
    sections: Optional[Sequence[str]] = None,
    label: bool = False,
    now: Optional[datetime] = None,
    archive_section: str = ARCHIVE_SECTION,
    default_section: str = DEFAULT_SECTION,
) -> list[Entry]:
    """Move matching entries out of `document` into a separate archive document.

    Entries land at the head of the archive's `archive_section`, which is
    created when missing.
    """
    if not archive_document.has_section(archive_section):
        archive_document.add_section(archive_section)
    selected = _select_for_move(document, expr, "", keep, sections, now)
    moved = []
    for section, entry in reversed(selected):
        document.remove(entry.entry_id)
        if label:
            _label(entry, section.name, default_section)
        archive_document.insert(entry, archive_section)
        moved.append(entry)
    moved.reverse()
    if moved:
        logger.info(f"Rotated {len(moved)} entries to the archive file")
    return moved


def remove_section(
    document: Document,
    name: str,
    archive_entries: bool = False,
    archive_section: str = ARCHIVE_SECTION,
    default_section: str = DEFAULT_SECTION,
) -> Section:
    """Remove a section; its entries are dropped or moved to the archive.

    Raises:
        ProtectedSection: For the default section.
        UnknownSectionName: If the section does not exist.
    """
    if name == default_section:
        raise ProtectedSection(f"Cannot remove the default section '{name}'")
    document.section(name)
    if archive_entries:
        if name == archive_section:
            raise ProtectedSection(f"Cannot archive section '{name}' into itself")
        if not document.has_section(archive_section):
            document.add_section(archive_section)
        return document.remove_section(name, move_entries_to=archive_section)
    return document.remove_section(name)


# ========== Resuming ==========

def reset_start(
    document: Document,
    entry_id: str,
    at: datetime,
    took: Optional[timedelta] = None,
    resume: bool = True,
) -> Entry:
    """Move an entry's start time.

    With took the entry is closed at the new start plus took; otherwise
    resume drops any @done so the entry is running again.
    """
    entry = document.find(entry_id)
    entry.started_at = truncate_to_minute(at)
    if took is not None:
        entry.mark_done(entry.started_at + took)
    elif resume:
        entry.remove_tag(DONE_TAG)
    return entry


def resume(
    document: Document,
    entry_id: str,
    at: Optional[datetime] = None,
    section: Optional[str] = None,
    note: Optional[str] = None,
) -> Entry:
    """Start a fresh copy of an entry: same description and tags, no @done."""
    source_section, source = document.locate(entry_id)
    entry = Entry(
        started_at=truncate_to_minute(at or local_now()),
        description=source.description,
        tags={k: v for k, v in source.tags.items() if k != DONE_TAG},
        note=note,
    )
    return document.insert(entry, section or source_section.name)


def last_entry(
    document: Document,
    expr: FilterExpression = None,
    sections: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
) -> Optional[Entry]:
    return query(document, expr, sections=sections, limit=1, now=now).first()


def finish_last(
    document: Document,
    section: str = DEFAULT_SECTION,
    at: Optional[datetime] = None,
    took: Optional[timedelta] = None,
) -> Entry:
    """Complete the most recent unfinished entry of a section.

    Raises:
        UnknownSectionName: If the section does not exist.
        NoMatchingEntry: If every entry there is already done.
    """
    document.section(section)
    entry = last_entry(document, Not(IsDone()), sections=[section])
    if entry is None:
        raise NoMatchingEntry(f"No unfinished entries in {section}")
    return mark_done(document, entry.entry_id, at, took)


def recent(document: Document, count: int = 10, sections: Optional[Sequence[str]] = None) -> list[Entry]:
    return query(document, sections=sections, limit=count).entries()


def entries_on(document: Document, day: str, now: Optional[datetime] = None) -> list[Entry]:
    """Entries started within a day (or any interval expression)."""
    interval = resolve_interval(day, now)
    return query(document, DateRange(interval), now=now).entries()


def entries_since(document: Document, point: str, now: Optional[datetime] = None) -> list[Entry]:
    start = resolve_interval(point, now).start
    return query(document, DateRange(TimeInterval(start, None)), now=now).entries()


# ========== File-backed Engine ==========

class DoingEngine:
    """File-backed service: every mutating command is one load -> mutate -> save."""

    def __init__(self, config: DoingConfig, clock: Optional[Callable[[], datetime]] = None):
        self.config = config
        self._clock = clock or local_now
        self.last_report: Optional[ParseReport] = None

    @property
    def path(self) -> Path:
        return self.config.get_doing_path()

    def now_time(self) -> datetime:
        return truncate_to_minute(self._clock())

    def _time(self, value: TimeArg) -> Optional[datetime]:
        """Resolve a datetime or time expression. Unparseable text raises."""
        if value is None or isinstance(value, datetime):
            return value
        return resolve_point(value, self.now_time())

    def _duration(self, value: Union[timedelta, str, None]) -> Optional[timedelta]:
        if value is None or isinstance(value, timedelta):
            return value
        return parse_duration(value)

    def _context(self) -> QueryContext:
        return self.config.query_context(self.now_time())

    def _run_hook(self, name: str, *args: Any) -> Any:
        hook = self.config.hooks.get(name)
        if hook is None:
            return None
        return hook(*args)

    # ========== Load / Save ==========

    def load(self) -> Document:
        """Read the doing file. A missing file loads as an empty log."""
        report = read_file(self.path)
        if report.skipped:
            logger.info(f"Skipped {len(report.skipped)} unrecognized lines in {self.path}")
        if not report.document.has_section(self.config.default_section):
            report.document.add_section(self.config.default_section)
        self.last_report = report
        return report.document

    def save(self, document: Document, path: Optional[Path] = None, lock: Optional[bool] = None) -> Path:
        """Overwrite the whole file with the serialized document."""
        target = path or self.path
        if lock is None:
            lock = self.config.lock_file
        write_text(target, serialize(document), lock=lock, timeout=self.config.lock_timeout)
        logger.info(f"Saved {len(document.entries())} entries to {target}")
        self._run_hook("post_save", target, document)
        return target

    @contextmanager
    def transaction(self) -> Generator[Document, None, None]:
        """Load, yield for mutation, then save. Nothing is saved on error."""
        if self.config.lock_file:
            with file_lock(self.path, timeout=self.config.lock_timeout):
                document = self.load()
                yield document
                self.save(document, lock=False)
        else:
            document = self.load()
            yield document
            self.save(document)

    def _entry_dict(self, document: Document, entry: Entry) -> dict:
        section, _ = document.locate(entry.entry_id)
        return self._describe(section, entry)

    def _describe(self, section: Section, entry: Entry) -> dict:
        data = entry.to_dict(section.name)
        duration = entry_duration(entry)
        data["duration"] = format_duration(duration) if duration is not None else None
        return data

    def _target(self, document: Document, entry_id: Optional[str], section: Optional[str]) -> Entry:
        """The entry by id, or the most recent entry of a section."""
        if entry_id:
            return document.find(entry_id)
        section = section or self.config.default_section
        document.section(section)
        entry = last_entry(document, sections=[section], now=self.now_time())
        if entry is None:
            raise NoMatchingEntry(f"No entries in {section}")
        return entry

    # ========== Adding ==========

    def now(
        self,
        text: str,
        section: Optional[str] = None,
        back: TimeArg = None,
        note: Optional[str] = None,
        finish_last: bool = False,
    ) -> dict:
        """Start a new entry, optionally finishing the previous one first."""
        section = section or self.config.default_section
        with self.transaction() as document:
            started_at = self._time(back) or self.now_time()
            if finish_last:
                previous = last_entry(document, Not(IsDone()), sections=[section])
                if previous is not None:
                    previous.mark_done(started_at)
            entry = create_entry(text, section, started_at, note=note)
            replaced = self._run_hook("pre_add", entry)
            if isinstance(replaced, Entry):
                entry = replaced
            document.insert(entry, section)
            self._run_hook("post_add", entry)
            return self._entry_dict(document, entry)

    def done(
        self,
        text: str,
        section: Optional[str] = None,
        at: TimeArg = None,
        took: Union[timedelta, str, None] = None,
        back: TimeArg = None,
        note: Optional[str] = None,
        archive: bool = False,
    ) -> dict:
        """Add an already-finished entry.

        at sets the completion time, took the length; back sets the start.
        """
        section = section or self.config.default_section
        now = self.now_time()
        done_at = self._time(at)
        length = self._duration(took)
        started_at = self._time(back)
        if started_at is None:
            if length is not None:
                started_at = (done_at or now) - length
            else:
                started_at = done_at or now
        if done_at is None:
            done_at = started_at + length if length is not None else now

        with self.transaction() as document:
            entry = create_entry(text, section, started_at, note=note)
            entry.mark_done(done_at)
            replaced = self._run_hook("pre_add", entry)
            if isinstance(replaced, Entry):
                entry = replaced
            document.insert(entry, section)
            if archive:
                if not document.has_section(self.config.archive_section):
                    document.add_section(self.config.archive_section)
                document.move(entry.entry_id, self.config.archive_section)
            self._run_hook("post_add", entry)
            return self._entry_dict(document, entry)

    def later(self, text: str, tags: Sequence[str] = (), note: Optional[str] = None) -> dict:
        """Park an entry in the Later section (created when missing)."""
        with self.transaction() as document:
            if not document.has_section(LATER_SECTION):
                document.add_section(LATER_SECTION)
            entry = create_entry(text, LATER_SECTION, self.now_time(), note=note)
            for name, value in parse_tag_args(tags).items():
                entry.set_tag(name, value)
            document.insert(entry, LATER_SECTION)
            return self._entry_dict(document, entry)

    def again(
        self,
        entry_id: Optional[str] = None,
        section: Optional[str] = None,
        back: TimeArg = None,
        note: Optional[str] = None,
    ) -> dict:
        """Resume an entry (default: the most recent one) as a new entry."""
        with self.transaction() as document:
            source = self._target(document, entry_id, None)
            entry = resume(document, source.entry_id, self._time(back) or self.now_time(), section, note)
            return self._entry_dict(document, entry)

    # ========== Completion ==========

    def finish(
        self,
        entry_id: Optional[str] = None,
        count: int = 1,
        section: Optional[str] = None,
        at: TimeArg = None,
        took: Union[timedelta, str, None] = None,
        expr: FilterExpression = None,
    ) -> list[dict]:
        """Mark an entry, or the last `count` unfinished matches, @done."""
        with self.transaction() as document:
            at_time = self._time(at)
            length = self._duration(took)
            if entry_id:
                targets = [document.find(entry_id)]
            else:
                section = section or self.config.default_section
                document.section(section)
                predicate = to_predicate(expr, self.now_time()) & Not(IsDone())
                targets = query(document, predicate, sections=[section], limit=count, context=self._context()).entries()
                if not targets:
                    raise NoMatchingEntry(f"No unfinished entries in {section}")
            for entry in targets:
                mark_done(document, entry.entry_id, at_time or (None if length else self.now_time()), length)
            return [self._entry_dict(document, e) for e in targets]

    def reset(
        self,
        entry_id: Optional[str] = None,
        section: Optional[str] = None,
        at: TimeArg = None,
        took: Union[timedelta, str, None] = None,
        resume: bool = True,
    ) -> dict:
        """Restart an entry (default: the most recent one) at `at`, default now."""
        with self.transaction() as document:
            entry = self._target(document, entry_id, section)
            reset_start(document, entry.entry_id, self._time(at) or self.now_time(), self._duration(took), resume)
            return self._entry_dict(document, entry)

    def cancel(self, entry_id: Optional[str] = None, section: Optional[str] = None) -> dict:
        with self.transaction() as document:
            entry = self._target(document, entry_id, section)
            cancel(document, entry.entry_id)
            return self._entry_dict(document, entry)

    def toggle(self, entry_id: str, at: TimeArg = None) -> dict:
        with self.transaction() as document:
            toggle_done(document, entry_id, self._time(at) or self.now_time())
            return self._entry_dict(document, document.find(entry_id))

    def delete(self, entry_id: str) -> dict:
        with self.transaction() as document:
            section, entry = document.locate(entry_id)
            data = self._describe(section, entry)
            delete(document, entry_id)
            return data

    # ========== Editing ==========

    def tag(self, tags: Sequence[str], entry_id: Optional[str] = None, section: Optional[str] = None) -> dict:
        parsed = parse_tag_args(tags)
        with self.transaction() as document:
            entry = self._target(document, entry_id, section)
            add_tags(document, entry.entry_id, parsed)
            return self._entry_dict(document, entry)

    def untag(
        self,
        patterns: Sequence[str],
        entry_id: Optional[str] = None,
        section: Optional[str] = None,
        regex: bool = False,
    ) -> dict:
        with self.transaction() as document:
            entry = self._target(document, entry_id, section)
            removed = remove_tags(document, entry.entry_id, patterns, regex=regex)
            return {**self._entry_dict(document, entry), "removed": removed}

    def rename_tag(self, old: str, new: str, entry_id: Optional[str] = None) -> int:
        with self.transaction() as document:
            return rename_tag(document, old, new, [entry_id] if entry_id else None)

    def note(
        self,
        text: Optional[str],
        entry_id: Optional[str] = None,
        section: Optional[str] = None,
        append: bool = False,
    ) -> dict:
        with self.transaction() as document:
            entry = self._target(document, entry_id, section)
            set_note(document, entry.entry_id, text, append=append)
            return self._entry_dict(document, entry)

    def edit(self, entry_id: str, description: str) -> dict:
        with self.transaction() as document:
            entry = set_description(document, entry_id, description)
            return self._entry_dict(document, entry)

    def move(self, entry_id: str, section: str) -> dict:
        with self.transaction() as document:
            entry = move_entry(document, entry_id, section)
            return self._entry_dict(document, entry)

    # ========== Archiving ==========

    def archive(
        self,
        expr: FilterExpression = None,
        sections: Optional[Sequence[str]] = None,
        to: Optional[str] = None,
        keep: Optional[int] = None,
        label: bool = False,
    ) -> list[dict]:
        to = to or self.config.archive_section
        with self.transaction() as document:
            moved = archive(
                document, expr, to=to, keep=keep, label=label, sections=sections,
                now=self.now_time(), default_section=self.config.default_section,
            )
            return [self._entry_dict(document, e) for e in moved]

    def rotate(
        self,
        expr: FilterExpression = None,
        sections: Optional[Sequence[str]] = None,
        keep: Optional[int] = None,
        label: bool = False,
    ) -> dict:
        """Move matching entries into the archive file (``<stem>_archive.taskpaper``)."""
        archive_path = self.config.get_archive_path()
        with self.transaction() as document:
            if archive_path.exists():
                archive_document = parse_with_report(archive_path.read_bytes()).document
            else:
                archive_document = Document()
            moved = rotate(
                document, archive_document, expr, keep=keep, sections=sections, label=label,
                now=self.now_time(), archive_section=self.config.archive_section,
                default_section=self.config.default_section,
            )
            if moved:
                self.save(archive_document, path=archive_path)
            return {
                "archive_file": str(archive_path),
                "count": len(moved),
                "entries": [e.to_dict() for e in moved],
            }

    # ========== Sections ==========

    def sections(self) -> list[dict]:
        document = self.load()
        return [{"name": s.name, "count": len(s)} for s in document.sections]

    def add_section(self, name: str) -> dict:
        with self.transaction() as document:
            section = document.add_section(name)
            return {"name": section.name, "count": 0}

    def remove_section(self, name: str, archive_entries: bool = False) -> dict:
        with self.transaction() as document:
            section = remove_section(
                document, name, archive_entries,
                self.config.archive_section, self.config.default_section,
            )
            return {"name": section.name, "archived": archive_entries}

    def rename_section(self, old: str, new: str) -> dict:
        if old == self.config.default_section:
            raise ProtectedSection(f"Cannot rename the default section '{old}'")
        with self.transaction() as document:
            section = document.rename_section(old, new)
            return {"name": section.name, "count": len(section)}

    # ========== Reading ==========

    def show(
        self,
        expr: FilterExpression = None,
        sections: Optional[Sequence[str]] = None,
        count: Optional[int] = None,
    ) -> list[dict]:
        """Matching entries, most recent first, as dicts with section and duration."""
        document = self.load()
        if isinstance(expr, FilterOptions):
            _check_sections(document, expr.sections)
        if sections:
            _check_sections(document, sections)
            if any(name.lower() == "all" for name in sections):
                sections = None
        result = query(document, expr, sections=sections, limit=count, context=self._context())
        return [self._describe(section, entry) for section, entry in result.pairs()]

    def search(self, options: FilterOptions) -> list[dict]:
        if options.case == "smart" and self.config.search_case != "smart":
            options = replace(options, case=self.config.search_case)
        return self.show(options, count=options.count)

    def entry(self, entry_id: str) -> dict:
        document = self.load()
        return self._entry_dict(document, document.find(entry_id))

    def last(self, section: Optional[str] = None, expr: FilterExpression = None) -> Optional[dict]:
        results = self.show(expr, [section] if section else None, count=1)
        return results[0] if results else None

    def recent(self, count: int = 10, section: Optional[str] = None) -> list[dict]:
        return self.show(None, [section] if section else None, count=count)

    def on(self, day: str, expr: FilterExpression = None) -> list[dict]:
        interval = resolve_interval(day, self.now_time())
        return self.show(self._scoped(interval, expr))

    def since(self, point: str, expr: FilterExpression = None) -> list[dict]:
        start = resolve_interval(point, self.now_time()).start
        return self.show(self._scoped(TimeInterval(start, None), expr))

    def today(self) -> list[dict]:
        return self.on("today")

    def yesterday(self) -> list[dict]:
        return self.on("yesterday")

    def _scoped(self, interval: TimeInterval, expr: FilterExpression) -> Predicate:
        predicate = DateRange(interval)
        if expr is not None:
            predicate = predicate & to_predicate(expr, self.now_time())
        return predicate

    def tags_report(
        self,
        expr: FilterExpression = None,
        sections: Optional[Sequence[str]] = None,
        sort: str = "name",
    ) -> dict[str, int]:
        document = self.load()
        result = query(document, expr, sections=sections, context=self._context())
        return tag_counts(result, sort=sort)

    def totals(self, expr: FilterExpression = None, sections: Optional[Sequence[str]] = None) -> dict:
        """Time spent on finished entries, overall and per tag."""
        document = self.load()
        entries = query(document, expr, sections=sections, context=self._context()).entries()
        return {
            "count": len(entries),
            "total": format_duration(total_duration(entries)),
            "by_tag": {k: format_duration(v) for k, v in durations_by_tag(entries).items()},
        }
