"""Tests for document operations and the file-backed engine."""

from datetime import datetime, timedelta

import pytest

from doing_log.engine import (
    DoingEngine,
    add_entry,
    archive,
    cancel,
    create_entry,
    delete,
    entries_on,
    entries_since,
    finish_last,
    last_entry,
    mark_done,
    parse_tag_args,
    recent,
    remove_section,
    remove_tags,
    rename_tag,
    reopen,
    reset_start,
    resume,
    rotate,
    set_note,
    toggle_done,
)
from doing_log.errors import (
    DuplicateSectionName,
    InvalidFilterExpression,
    NoMatchingEntry,
    ProtectedSection,
    UnknownEntryId,
    UnknownSectionName,
    UnparseableTimeExpression,
)
from doing_log.models import Document
from doing_log.query import FilterOptions
from doing_log.taskpaper import parse, serialize
from doing_log.timeparse import compute_duration, format_duration

from conftest import FIXED_NOW, ID_A, ID_B, ID_C, ID_D


@pytest.fixture
def doc(sample_text):
    return parse(sample_text)


def empty_doc():
    doc = Document()
    doc.add_section("Currently")
    return doc


# ========== Pure Operations ==========


class TestCreateEntry:
    """Tests for create_entry."""

    def test_note_and_tag_extracted(self):
        """A parenthetical becomes the note and @tags are pulled out."""
        entry = create_entry("Meeting (discuss roadmap) @urgent", started_at=FIXED_NOW)
        assert entry.description == "Meeting"
        assert entry.note == "discuss roadmap"
        assert entry.tags == {"urgent": None}
        assert entry.started_at == FIXED_NOW

    def test_extra_lines_become_note(self):
        entry = create_entry("Write report\n  intro\n  summary", started_at=FIXED_NOW)
        assert entry.description == "Write report"
        assert entry.note == "intro\nsummary"

    def test_explicit_note_appended(self):
        entry = create_entry("Call (about invoice)", started_at=FIXED_NOW, note="ring twice")
        assert entry.note == "about invoice\nring twice"

    def test_inserts_at_head(self, doc):
        entry = create_entry("New thing", started_at=FIXED_NOW, document=doc)
        assert doc.section("Currently").entries[0] is entry

    def test_unknown_section(self, doc):
        with pytest.raises(UnknownSectionName):
            create_entry("New thing", "Nowhere", document=doc)

    def test_empty_text(self):
        with pytest.raises(ValueError):
            create_entry("   ")

    def test_seconds_truncated(self):
        entry = create_entry("Task", started_at=datetime(2024, 1, 16, 10, 0, 45))
        assert entry.started_at == datetime(2024, 1, 16, 10, 0)


class TestCompletion:
    """Tests for done/undone operations."""

    def test_toggle_done_duration(self):
        """Marking done two hours after start gives a two hour duration."""
        doc = empty_doc()
        start = datetime(2024, 1, 15, 9, 0)
        entry = create_entry("Deep work", started_at=start, document=doc)
        result = toggle_done(doc, entry.entry_id, start + timedelta(hours=2))

        assert result is doc
        assert entry.is_done
        assert format_duration(compute_duration(entry.started_at, entry.done_at).duration) == "02:00:00"

    def test_toggle_twice_undoes(self, doc):
        toggle_done(doc, ID_B)
        assert not doc.find(ID_B).is_done

    def test_toggle_unknown(self, doc):
        with pytest.raises(UnknownEntryId):
            toggle_done(doc, "0" * 32)

    def test_mark_done_at_wins_over_took(self, doc):
        entry = mark_done(doc, ID_A, at=datetime(2024, 1, 16, 9, 45), took=timedelta(hours=5))
        assert entry.done_at == datetime(2024, 1, 16, 9, 45)

    def test_mark_done_took(self, doc):
        entry = mark_done(doc, ID_A, took=timedelta(minutes=30))
        assert entry.done_at == datetime(2024, 1, 16, 9, 30)

    def test_cancel(self, doc):
        entry = cancel(doc, ID_A)
        assert entry.is_done
        assert entry.done_at is None

    def test_delete(self, doc):
        assert delete(doc, ID_C) is doc
        assert ID_C not in doc.ids()
        with pytest.raises(UnknownEntryId):
            delete(doc, ID_C)

    def test_finish_last(self, doc):
        entry = finish_last(doc, at=FIXED_NOW)
        assert entry.entry_id == ID_A
        with pytest.raises(NoMatchingEntry):
            finish_last(doc, at=FIXED_NOW)

    def test_resume_copies_without_done(self, doc):
        entry = resume(doc, ID_B, at=FIXED_NOW)
        assert entry.entry_id != ID_B
        assert entry.description == "Fix login bug"
        assert entry.tags == {"bug": None, "priority": "3"}
        assert doc.section("Currently").entries[0] is entry

    def test_reset_start_resumes(self, doc):
        entry = reset_start(doc, ID_B, FIXED_NOW)
        assert entry.started_at == FIXED_NOW
        assert not entry.is_done

    def test_reset_start_with_took(self, doc):
        entry = reset_start(doc, ID_A, FIXED_NOW, took=timedelta(minutes=20))
        assert entry.done_at == datetime(2024, 1, 16, 10, 20)


class TestEditing:
    """Tests for tag and note editing."""

    def test_parse_tag_args(self):
        assert parse_tag_args(["urgent", "@client(acme)", " "]) == {"urgent": None, "client": "acme"}

    def test_parse_tag_args_rejects_text(self):
        with pytest.raises(InvalidFilterExpression):
            parse_tag_args(["not a tag"])

    def test_remove_tags_glob(self, doc):
        assert remove_tags(doc, ID_B, ["pri*"]) == ["priority"]
        assert "priority" not in doc.find(ID_B).tags

    def test_remove_tags_regex(self, doc):
        assert remove_tags(doc, ID_B, ["^b.g$"], regex=True) == ["bug"]

    def test_rename_tag_everywhere(self, doc):
        assert rename_tag(doc, "@bug", "defect") == 2
        assert doc.find(ID_D).has_tag("defect")

    def test_rename_tag_keeps_value(self, doc):
        rename_tag(doc, "priority", "p", [ID_B])
        assert doc.find(ID_B).tags["p"] == "3"

    def test_set_note_append_and_clear(self, doc):
        set_note(doc, ID_B, "more detail", append=True)
        assert doc.find(ID_B).note == "stack trace in the ticket\nmore detail"
        set_note(doc, ID_B, "")
        assert doc.find(ID_B).note is None


class TestArchive:
    """Tests for archive, rotate and section removal."""

    def test_archive_moves_to_head(self, doc):
        moved = archive(doc, "@bug", now=FIXED_NOW)
        assert [e.entry_id for e in moved] == [ID_B]
        assert [e.entry_id for e in doc.section("Archive").entries] == [ID_B, ID_D]

    def test_archive_label(self, doc):
        """Labels name the source section, except for the default one."""
        archive(doc, "@planning OR @docs", label=True, now=FIXED_NOW)
        assert doc.find(ID_C).has_tag("from_later")
        assert not any(name.startswith("from_") for name in doc.find(ID_A).tags)

    def test_archive_keep(self, doc):
        moved = archive(doc, sections=["Currently"], keep=1, now=FIXED_NOW)
        assert [e.entry_id for e in moved] == [ID_B]
        assert [e.entry_id for e in doc.section("Currently").entries] == [ID_A]

    def test_archive_creates_destination(self, doc):
        archive(doc, sections=["Later"], to="Old Stuff", now=FIXED_NOW)
        assert doc.section("Old Stuff").entries[0].entry_id == ID_C

    def test_archive_into_source_refused(self, doc):
        with pytest.raises(ProtectedSection):
            archive(doc, sections=["Archive"], now=FIXED_NOW)

    def test_refused_archive_leaves_document_unchanged(self, doc):
        before = serialize(doc)
        with pytest.raises(ProtectedSection):
            archive(doc, sections=["Old Stuff"], to="Old Stuff", now=FIXED_NOW)
        assert not doc.has_section("Old Stuff")
        assert serialize(doc) == before

    def test_rotate(self, doc):
        archive_doc = Document()
        moved = rotate(doc, archive_doc, "@done", now=FIXED_NOW)
        assert [e.entry_id for e in moved] == [ID_B, ID_D]
        assert [e.entry_id for e in archive_doc.section("Archive").entries] == [ID_B, ID_D]
        assert not doc.ids() & {ID_B, ID_D}

    def test_remove_section_archives(self, doc):
        remove_section(doc, "Later", archive_entries=True)
        assert doc.locate(ID_C)[0].name == "Archive"

    def test_remove_default_section_refused(self, doc):
        with pytest.raises(ProtectedSection):
            remove_section(doc, "Currently")


class TestReadingHelpers:
    """Tests for the pure reading helpers."""

    def test_add_entry_done(self, doc):
        entry = add_entry(doc, "Standup @meeting", "Later", datetime(2024, 1, 16, 9, 30), done_at=FIXED_NOW)
        assert doc.section("Later").entries[0] is entry
        assert entry.done_at == FIXED_NOW

    def test_reopen(self, doc):
        entry = reopen(doc, ID_B)
        assert not entry.is_done
        assert entry.tags == {"bug": None, "priority": "3"}

    def test_last_entry(self, doc):
        assert last_entry(doc, now=FIXED_NOW).entry_id == ID_A
        assert last_entry(doc, "@planning", now=FIXED_NOW).entry_id == ID_C
        assert last_entry(doc, "@nothing", now=FIXED_NOW) is None

    def test_recent(self, doc):
        assert [e.entry_id for e in recent(doc, 2)] == [ID_A, ID_B]
        assert [e.entry_id for e in recent(doc, sections=["Archive"])] == [ID_D]

    def test_entries_on(self, doc):
        assert [e.entry_id for e in entries_on(doc, "yesterday", now=FIXED_NOW)] == [ID_B]
        assert [e.entry_id for e in entries_on(doc, "2024-01-14", now=FIXED_NOW)] == [ID_C]

    def test_entries_since(self, doc):
        assert [e.entry_id for e in entries_since(doc, "2024-01-14", now=FIXED_NOW)] == [ID_A, ID_B, ID_C]


# ========== File-backed Engine ==========


class TestEngineLoadSave:
    """Tests for engine file handling."""

    def test_missing_file_loads_empty(self, engine):
        doc = engine.load()
        assert doc.section_names() == ["Currently"]
        assert not engine.path.exists()

    def test_first_entry_creates_file(self, engine):
        engine.now("First thing")
        assert engine.path.exists()
        assert "First thing" in engine.path.read_text(encoding="utf-8")

    def test_save_is_canonical(self, sample_engine, sample_text):
        sample_engine.save(sample_engine.load())
        assert sample_engine.path.read_text(encoding="utf-8") == serialize(parse(sample_text))

    def test_failed_mutation_leaves_file(self, sample_engine):
        before = sample_engine.path.read_text(encoding="utf-8")
        with pytest.raises(UnknownSectionName):
            sample_engine.now("Task", section="Nowhere")
        assert sample_engine.path.read_text(encoding="utf-8") == before

    def test_skipped_lines_recorded(self, engine):
        engine.path.write_text("Currently:\nstray line\n", encoding="utf-8")
        engine.load()
        assert engine.last_report.skipped[0].text == "stray line"

    def test_lock_file_option(self, config):
        config.lock_file = True
        engine = DoingEngine(config, clock=lambda: FIXED_NOW)
        engine.now("Locked write")
        assert engine.path.with_suffix(".taskpaper.lock").exists()
        assert engine.last()["description"] == "Locked write"


class TestEngineAdding:
    """Tests for now, done, later and again."""

    def test_now(self, engine):
        entry = engine.now("Write tests @testing (unit only)")
        assert entry["description"] == "Write tests"
        assert entry["tags"] == {"testing": None}
        assert entry["note"] == "unit only"
        assert entry["started_at"] == "2024-01-16 10:00"
        assert entry["section"] == "Currently"
        assert entry["done"] is False

    def test_now_backdated(self, engine):
        assert engine.now("Task", back="30m")["started_at"] == "2024-01-16 09:30"

    def test_now_bad_back(self, engine):
        with pytest.raises(UnparseableTimeExpression):
            engine.now("Task", back="flibbertigibbet")

    def test_now_finish_last(self, sample_engine):
        sample_engine.now("Next task", finish_last=True)
        assert sample_engine.entry(ID_A)["done_at"] == "2024-01-16 10:00"

    def test_done_took(self, engine):
        entry = engine.done("Quick fix", took="45m")
        assert entry["started_at"] == "2024-01-16 09:15"
        assert entry["done_at"] == "2024-01-16 10:00"
        assert entry["duration"] == "00:45:00"

    def test_done_at_and_took(self, engine):
        entry = engine.done("Standup", at="9am", took="15m")
        assert entry["started_at"] == "2024-01-16 08:45"
        assert entry["done_at"] == "2024-01-16 09:00"

    def test_done_back(self, engine):
        entry = engine.done("Review", back="8am")
        assert entry["started_at"] == "2024-01-16 08:00"
        assert entry["duration"] == "02:00:00"

    def test_done_archive(self, engine):
        assert engine.done("Old task", archive=True)["section"] == "Archive"

    def test_later(self, engine):
        entry = engine.later("Buy milk", tags=["errand"])
        assert entry["section"] == "Later"
        assert entry["tags"] == {"errand": None}

    def test_again(self, sample_engine):
        entry = sample_engine.again(ID_B)
        assert entry["entry_id"] != ID_B
        assert entry["description"] == "Fix login bug"
        assert entry["done"] is False
        assert entry["started_at"] == "2024-01-16 10:00"
        assert sample_engine.entry(ID_B)["done"] is True

    def test_again_defaults_to_last(self, sample_engine):
        assert sample_engine.again()["description"] == "Writing docs"


class TestEngineCompletion:
    """Tests for finish, cancel, toggle, reset and delete."""

    def test_finish_last_unfinished(self, sample_engine):
        finished = sample_engine.finish()
        assert [e["entry_id"] for e in finished] == [ID_A]
        assert finished[0]["done_at"] == "2024-01-16 10:00"
        with pytest.raises(NoMatchingEntry):
            sample_engine.finish()

    def test_finish_took(self, sample_engine):
        finished = sample_engine.finish(took="2h")
        assert finished[0]["done_at"] == "2024-01-16 11:00"

    def test_finish_by_id_at(self, sample_engine):
        finished = sample_engine.finish(entry_id=ID_C, at="yesterday at 5pm")
        assert finished[0]["done_at"] == "2024-01-15 17:00"

    def test_finish_unknown_section(self, sample_engine):
        with pytest.raises(UnknownSectionName):
            sample_engine.finish(section="Nowhere")

    def test_cancel(self, sample_engine):
        entry = sample_engine.cancel()
        assert entry["entry_id"] == ID_A
        assert entry["done"] is True
        assert entry["done_at"] is None
        assert entry["duration"] is None

    def test_toggle(self, sample_engine):
        assert sample_engine.toggle(ID_B)["done"] is False
        assert sample_engine.toggle(ID_B)["done_at"] == "2024-01-16 10:00"

    def test_reset(self, sample_engine):
        entry = sample_engine.reset(ID_B, at="9am")
        assert entry["started_at"] == "2024-01-16 09:00"
        assert entry["done"] is False

    def test_reset_took(self, sample_engine):
        entry = sample_engine.reset(ID_B, at="9am", took="30m")
        assert entry["done_at"] == "2024-01-16 09:30"

    def test_delete(self, sample_engine):
        deleted = sample_engine.delete(ID_C)
        assert deleted["description"] == "Plan sprint"
        with pytest.raises(UnknownEntryId):
            sample_engine.entry(ID_C)


class TestEngineEditing:
    """Tests for tag, untag, note, edit and move."""

    def test_tag(self, sample_engine):
        entry = sample_engine.tag(["urgent", "project(api)"], entry_id=ID_A)
        assert entry["tags"] == {"docs": None, "urgent": None, "project": "api"}

    def test_tag_defaults_to_last_entry(self, sample_engine):
        assert sample_engine.tag(["x"])["entry_id"] == ID_A

    def test_untag(self, sample_engine):
        entry = sample_engine.untag(["pri*"], entry_id=ID_B)
        assert entry["removed"] == ["priority"]
        assert "priority" not in sample_engine.entry(ID_B)["tags"]

    def test_rename_tag(self, sample_engine):
        assert sample_engine.rename_tag("bug", "defect") == 2

    def test_note(self, sample_engine):
        entry = sample_engine.note("more detail", entry_id=ID_B, append=True)
        assert entry["note"] == "stack trace in the ticket\nmore detail"

    def test_edit(self, sample_engine):
        entry = sample_engine.edit(ID_A, "Writing API docs @api")
        assert entry["description"] == "Writing API docs"
        assert entry["tags"] == {"docs": None, "api": None}

    def test_move(self, sample_engine):
        assert sample_engine.move(ID_C, "Currently")["section"] == "Currently"

    def test_move_unknown_section(self, sample_engine):
        with pytest.raises(UnknownSectionName):
            sample_engine.move(ID_C, "Nowhere")


class TestEngineArchiving:
    """Tests for archive and rotate through the engine."""

    def test_archive(self, sample_engine):
        moved = sample_engine.archive("@bug")
        assert [e["entry_id"] for e in moved] == [ID_B]
        assert sample_engine.entry(ID_B)["section"] == "Archive"

    def test_rotate_writes_archive_file(self, sample_engine, temp_project):
        result = sample_engine.rotate("@done")
        archive_path = temp_project / "doing_archive.taskpaper"
        assert result["archive_file"] == str(archive_path)
        assert result["count"] == 2

        archived = parse(archive_path.read_text(encoding="utf-8"))
        assert [e.entry_id for e in archived.section("Archive").entries] == [ID_B, ID_D]
        assert not sample_engine.load().ids() & {ID_B, ID_D}

    def test_rotate_appends_to_existing_archive(self, sample_engine, temp_project):
        sample_engine.rotate("@done")
        sample_engine.rotate("@planning")
        archived = parse((temp_project / "doing_archive.taskpaper").read_text(encoding="utf-8"))
        assert [e.entry_id for e in archived.section("Archive").entries] == [ID_C, ID_B, ID_D]

    def test_rotate_nothing_writes_nothing(self, sample_engine, temp_project):
        assert sample_engine.rotate("@nothing")["count"] == 0
        assert not (temp_project / "doing_archive.taskpaper").exists()


class TestEngineSections:
    """Tests for section management."""

    def test_sections(self, sample_engine):
        assert sample_engine.sections() == [
            {"name": "Currently", "count": 2},
            {"name": "Later", "count": 1},
            {"name": "Archive", "count": 1},
        ]

    def test_add_section(self, sample_engine):
        sample_engine.add_section("Someday")
        with pytest.raises(DuplicateSectionName):
            sample_engine.add_section("Someday")
        assert sample_engine.sections()[-1]["name"] == "Someday"

    def test_remove_section(self, sample_engine):
        sample_engine.remove_section("Later")
        assert ID_C not in sample_engine.load().ids()

    def test_remove_section_archive(self, sample_engine):
        sample_engine.remove_section("Later", archive_entries=True)
        assert sample_engine.entry(ID_C)["section"] == "Archive"

    def test_remove_default_refused(self, sample_engine):
        with pytest.raises(ProtectedSection):
            sample_engine.remove_section("Currently")

    def test_rename_section(self, sample_engine):
        assert sample_engine.rename_section("Later", "Backlog") == {"name": "Backlog", "count": 1}
        with pytest.raises(ProtectedSection):
            sample_engine.rename_section("Currently", "Now")


class TestEngineReading:
    """Tests for show, last, recent, on, since and reports."""

    def test_show_all(self, sample_engine):
        assert [e["entry_id"] for e in sample_engine.show()] == [ID_A, ID_B, ID_C, ID_D]

    def test_show_sections(self, sample_engine):
        assert [e["entry_id"] for e in sample_engine.show("@bug", sections=["Currently"])] == [ID_B]
        assert len(sample_engine.show(sections=["all"])) == 4
        with pytest.raises(UnknownSectionName):
            sample_engine.show(sections=["Nowhere"])

    def test_search_unknown_section(self, sample_engine):
        with pytest.raises(UnknownSectionName):
            sample_engine.search(FilterOptions(sections=["Nowhere"]))
        assert len(sample_engine.search(FilterOptions(sections=["all"]))) == 4

    def test_search_keeps_caller_options(self, sample_engine):
        sample_engine.config.search_case = "sensitive"
        options = FilterOptions(search="fix login")

        assert sample_engine.search(options) == []
        assert options.case == "smart"

    def test_show_includes_duration(self, sample_engine):
        entry = sample_engine.show("@priority")[0]
        assert entry["duration"] == "02:00:00"

    def test_show_bad_pattern(self, sample_engine):
        with pytest.raises(InvalidFilterExpression):
            sample_engine.show("(unclosed")

    def test_last(self, sample_engine):
        assert sample_engine.last()["entry_id"] == ID_A
        assert sample_engine.last(section="Later")["entry_id"] == ID_C

    def test_last_empty(self, engine):
        assert engine.last() is None

    def test_recent(self, sample_engine):
        assert [e["entry_id"] for e in sample_engine.recent(count=2)] == [ID_A, ID_B]

    def test_on_and_days(self, sample_engine):
        assert [e["entry_id"] for e in sample_engine.on("yesterday")] == [ID_B]
        assert [e["entry_id"] for e in sample_engine.today()] == [ID_A]
        assert [e["entry_id"] for e in sample_engine.yesterday()] == [ID_B]

    def test_on_range_with_filter(self, sample_engine):
        entries = sample_engine.on("2024-01-01 to 2024-01-15", expr="@bug")
        assert [e["entry_id"] for e in entries] == [ID_B, ID_D]

    def test_since(self, sample_engine):
        assert [e["entry_id"] for e in sample_engine.since("monday")] == [ID_A, ID_B]

    def test_tags_report(self, sample_engine):
        assert sample_engine.tags_report() == {
            "bug": 2, "docs": 1, "done": 2, "planning": 1, "priority": 1,
        }

    def test_totals(self, sample_engine):
        assert sample_engine.totals() == {
            "count": 4,
            "total": "03:30:00",
            "by_tag": {"bug": "03:30:00", "priority": "02:00:00"},
        }


class TestHooks:
    """Tests for Python config hooks."""

    def test_pre_add_can_modify_entry(self, config):
        def pre_add(entry):
            entry.set_tag("client", "acme")
            return entry

        config.hooks = {"pre_add": pre_add}
        engine = DoingEngine(config, clock=lambda: FIXED_NOW)
        assert engine.now("Task")["tags"] == {"client": "acme"}

    def test_post_save_receives_path(self, config):
        saved = []
        config.hooks = {"post_save": lambda path, document: saved.append((path, len(document.entries())))}
        engine = DoingEngine(config, clock=lambda: FIXED_NOW)
        engine.now("Task")
        assert saved == [(engine.path, 1)]
