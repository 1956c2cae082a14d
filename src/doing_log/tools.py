"""MCP tool definitions wrapping the doing engine."""

from __future__ import annotations

from typing import Any, Optional

import portalocker
from loguru import logger

from .engine import DoingEngine
from .errors import (
    DoingError,
    DuplicateId,
    DuplicateSectionName,
    InvalidFilterExpression,
    NoMatchingEntry,
    ProtectedSection,
    StructuralParseFailure,
    UnknownEntryId,
    UnknownSectionName,
    UnparseableTimeExpression,
)
from .models import format_timestamp
from .query import FilterOptions
from .timeparse import TimePoint, resolve_time_expression

TIME_HINT = "e.g. '2024-01-15 14:30', '3pm', 'yesterday at 3pm', '45m', 'last monday'"

ENTRY_ID_PROPERTY = {
    "type": "string",
    "description": "Entry ID (32 hex chars). Omit to target the most recent entry of the section.",
}

SECTION_PROPERTY = {
    "type": "string",
    "description": "Section name (default: Currently)",
}

FILTER_PROPERTIES = {
    "search": {
        "type": "string",
        "description": "Text to find in descriptions and notes. /regex/ for a regex, leading ' for exact match",
    },
    "tags": {
        "type": "array",
        "items": {"type": "string"},
        "description": "Tags to filter by. Wildcards * and ? allowed; +tag required, -tag excluded",
    },
    "bool": {
        "type": "string",
        "enum": ["and", "or", "not", "pattern"],
        "description": "How multiple tags combine (default: pattern)",
    },
    "sections": {
        "type": "array",
        "items": {"type": "string"},
        "description": "Sections to search (default: all)",
    },
    "after": {"type": "string", "description": f"Only entries started after this time ({TIME_HINT})"},
    "before": {"type": "string", "description": "Only entries started before this time"},
    "from": {"type": "string", "description": "Date range, e.g. 'monday to friday', 'last week'"},
    "case": {
        "type": "string",
        "enum": ["smart", "sensitive", "ignore"],
        "description": "Case sensitivity for search (smart: sensitive only with uppercase)",
    },
    "exact": {"type": "boolean", "description": "Exact match instead of substring"},
    "fuzzy": {"type": "boolean", "description": "Tolerate small typos in the search text"},
    "not": {"type": "boolean", "description": "Invert the filter"},
    "only_done": {"type": "boolean", "description": "Only finished entries"},
    "val": {
        "type": "array",
        "items": {"type": "string"},
        "description": "Tag value queries, e.g. 'priority>2', 'project=doing', 'done<yesterday'",
    },
    "pattern": {
        "type": "string",
        "description": "Boolean filter string, e.g. 'bug AND NOT section:Archive', '@priority>2 OR @urgent'",
    },
    "count": {"type": "integer", "description": "Maximum number of entries"},
}


def _schema(properties: dict, required: Optional[list[str]] = None) -> dict:
    schema = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def _tool(tools: dict, name: str, description: str, properties: dict, required: Optional[list[str]] = None) -> None:
    tools[name] = {
        "name": name,
        "description": description,
        "inputSchema": _schema(properties, required),
    }


def make_tools(engine: DoingEngine) -> dict[str, dict]:
    """Create MCP tool definitions for the doing engine.

    Returns:
        Dict mapping tool names to their definitions.
    """

    tools: dict[str, dict] = {}

    # ========== Adding ==========
    _tool(tools, "doing_now", "Start a new entry. Inline @tags and a (parenthetical note) are extracted.", {
        "text": {"type": "string", "description": "What you are doing, e.g. 'Write docs @docs (API section)'"},
        "section": SECTION_PROPERTY,
        "back": {"type": "string", "description": f"Backdate the start ({TIME_HINT})"},
        "note": {"type": "string", "description": "Note to attach"},
        "finish_last": {"type": "boolean", "description": "Mark the previous unfinished entry done first"},
    }, ["text"])

    _tool(tools, "doing_done", "Add an entry that is already finished.", {
        "text": {"type": "string", "description": "What you did"},
        "section": SECTION_PROPERTY,
        "at": {"type": "string", "description": "Completion time (default: now)"},
        "took": {"type": "string", "description": "How long it took, e.g. '45m', '1h30m', '01:30'"},
        "back": {"type": "string", "description": "Start time"},
        "note": {"type": "string", "description": "Note to attach"},
        "archive": {"type": "boolean", "description": "Move straight to the Archive section"},
    }, ["text"])

    _tool(tools, "doing_later", "Park something to do later in the Later section.", {
        "text": {"type": "string", "description": "What to do later"},
        "tags": {"type": "array", "items": {"type": "string"}, "description": "Extra tags, e.g. ['errand']"},
        "note": {"type": "string", "description": "Note to attach"},
    }, ["text"])

    _tool(tools, "doing_again", "Resume an entry: duplicate it as a new, unfinished entry.", {
        "entry_id": ENTRY_ID_PROPERTY,
        "section": {"type": "string", "description": "Section for the new entry (default: same as original)"},
        "back": {"type": "string", "description": "Start time for the new entry"},
        "note": {"type": "string", "description": "Note for the new entry"},
    })

    # ========== Completion ==========
    _tool(tools, "doing_finish", "Mark an entry, or the last N unfinished entries, @done.", {
        "entry_id": {"type": "string", "description": "Entry ID. Omit to finish the most recent unfinished entries"},
        "count": {"type": "integer", "description": "How many entries to finish (default: 1)"},
        "section": SECTION_PROPERTY,
        "at": {"type": "string", "description": "Completion time (default: now)"},
        "took": {"type": "string", "description": "Duration from the start, e.g. '2h'"},
        "pattern": FILTER_PROPERTIES["pattern"],
    })

    _tool(tools, "doing_reset", "Reset an entry's start time and resume it.", {
        "entry_id": ENTRY_ID_PROPERTY,
        "section": SECTION_PROPERTY,
        "at": {"type": "string", "description": f"New start time (default: now; {TIME_HINT})"},
        "took": {"type": "string", "description": "Close the entry this long after the new start"},
        "resume": {"type": "boolean", "description": "Remove @done (default: true)"},
    })

    _tool(tools, "doing_cancel", "Close an entry with @done and no completion time.", {
        "entry_id": ENTRY_ID_PROPERTY,
        "section": SECTION_PROPERTY,
    })

    _tool(tools, "doing_toggle", "Toggle @done on an entry.", {
        "entry_id": {"type": "string", "description": "Entry ID"},
        "at": {"type": "string", "description": "Completion time when marking done (default: now)"},
    }, ["entry_id"])

    _tool(tools, "doing_delete", "Delete an entry.", {
        "entry_id": {"type": "string", "description": "Entry ID"},
    }, ["entry_id"])

    # ========== Editing ==========
    _tool(tools, "doing_tag", "Add tags to an entry. Re-adding a tag replaces its value.", {
        "tags": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Tags, e.g. ['urgent', 'project(doing)']",
        },
        "entry_id": ENTRY_ID_PROPERTY,
        "section": SECTION_PROPERTY,
    }, ["tags"])

    _tool(tools, "doing_untag", "Remove tags from an entry.", {
        "tags": {"type": "array", "items": {"type": "string"}, "description": "Tag names or glob patterns"},
        "entry_id": ENTRY_ID_PROPERTY,
        "section": SECTION_PROPERTY,
        "regex": {"type": "boolean", "description": "Treat patterns as regular expressions"},
    }, ["tags"])

    _tool(tools, "doing_rename_tag", "Rename a tag across all entries (or one entry).", {
        "old": {"type": "string", "description": "Current tag name"},
        "new": {"type": "string", "description": "New tag name"},
        "entry_id": {"type": "string", "description": "Only rename on this entry"},
    }, ["old", "new"])

    _tool(tools, "doing_note", "Set or append to an entry's note.", {
        "text": {"type": "string", "description": "Note text (empty clears the note)"},
        "entry_id": ENTRY_ID_PROPERTY,
        "section": SECTION_PROPERTY,
        "append": {"type": "boolean", "description": "Append instead of replacing"},
    }, ["text"])

    _tool(tools, "doing_edit", "Replace an entry's description. @tags in the text are set.", {
        "entry_id": {"type": "string", "description": "Entry ID"},
        "text": {"type": "string", "description": "New description"},
    }, ["entry_id", "text"])

    _tool(tools, "doing_move", "Move an entry to another section.", {
        "entry_id": {"type": "string", "description": "Entry ID"},
        "section": {"type": "string", "description": "Destination section"},
    }, ["entry_id", "section"])

    # ========== Archiving ==========
    _tool(tools, "doing_archive", "Move matching entries to the Archive section (or another).", {
        **FILTER_PROPERTIES,
        "to": {"type": "string", "description": "Destination section (default: Archive)"},
        "keep": {"type": "integer", "description": "Leave this many newest entries per section in place"},
        "label": {"type": "boolean", "description": "Tag moved entries @from_<section>"},
    })

    _tool(tools, "doing_rotate", "Move matching entries into the separate archive file.", {
        **FILTER_PROPERTIES,
        "keep": {"type": "integer", "description": "Leave this many newest entries per section in place"},
        "label": {"type": "boolean", "description": "Tag moved entries @from_<section>"},
    })

    # ========== Reading ==========
    _tool(tools, "doing_show", "List entries matching a filter, most recent first.", dict(FILTER_PROPERTIES))

    _tool(tools, "doing_last", "Show the most recent entry.", {
        "section": {"type": "string", "description": "Section (default: all)"},
        "pattern": FILTER_PROPERTIES["pattern"],
    })

    _tool(tools, "doing_recent", "Show the most recent entries.", {
        "count": {"type": "integer", "description": "Number of entries (default: 10)"},
        "section": {"type": "string", "description": "Section (default: all)"},
    })

    _tool(tools, "doing_on", "Show entries from a day or date range.", {
        "date": {"type": "string", "description": "e.g. 'today', 'last friday', '2024-01-15', 'monday to wednesday'"},
        "pattern": FILTER_PROPERTIES["pattern"],
    }, ["date"])

    _tool(tools, "doing_since", "Show entries since a point in time.", {
        "date": {"type": "string", "description": "e.g. 'yesterday', '3 days ago', 'monday 9am'"},
        "pattern": FILTER_PROPERTIES["pattern"],
    }, ["date"])

    _tool(tools, "doing_entry", "Read a single entry by ID.", {
        "entry_id": {"type": "string", "description": "Entry ID"},
    }, ["entry_id"])

    _tool(tools, "doing_tags", "Count tag usage over matching entries.", {
        **FILTER_PROPERTIES,
        "sort": {"type": "string", "enum": ["name", "count"], "description": "Sort order (default: name)"},
    })

    _tool(tools, "doing_totals", "Total time spent on finished entries, overall and per tag.", dict(FILTER_PROPERTIES))

    # ========== Sections ==========
    _tool(tools, "doing_sections", "List sections with entry counts.", {})

    _tool(tools, "doing_section_add", "Add a new section.", {
        "name": {"type": "string", "description": "Section name"},
    }, ["name"])

    _tool(tools, "doing_section_remove", "Remove a section. The default section cannot be removed.", {
        "name": {"type": "string", "description": "Section name"},
        "archive": {"type": "boolean", "description": "Move its entries to Archive instead of deleting them"},
    }, ["name"])

    _tool(tools, "doing_section_rename", "Rename a section.", {
        "old": {"type": "string", "description": "Current name"},
        "new": {"type": "string", "description": "New name"},
    }, ["old", "new"])

    # ========== Time ==========
    _tool(tools, "doing_resolve_time", "Resolve a natural-language time expression against now.", {
        "expression": {"type": "string", "description": f"Time expression ({TIME_HINT}) or range"},
    }, ["expression"])

    return tools


def filter_options(arguments: dict[str, Any]) -> FilterOptions:
    """Build FilterOptions from tool arguments."""
    return FilterOptions(
        search=arguments.get("search"),
        tags=list(arguments.get("tags") or []),
        bool_op=arguments.get("bool", "pattern"),
        sections=list(arguments.get("sections") or []),
        after=arguments.get("after"),
        before=arguments.get("before"),
        date_range=arguments.get("from"),
        case=arguments.get("case", "smart"),
        exact=arguments.get("exact", False),
        fuzzy=arguments.get("fuzzy", False),
        not_=arguments.get("not", False),
        only_done=arguments.get("only_done", False),
        values=list(arguments.get("val") or []),
        pattern=arguments.get("pattern"),
        count=arguments.get("count"),
    )


def _resolution_dict(expression: str, result) -> dict:
    if isinstance(result, TimePoint):
        return {
            "expression": expression,
            "kind": "point",
            "at": format_timestamp(result.at),
            "day_only": result.day_only,
        }
    return {
        "expression": expression,
        "kind": "interval",
        "start": format_timestamp(result.start) if result.start else None,
        "end": format_timestamp(result.end) if result.end else None,
    }


async def execute_tool(engine: DoingEngine, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    """Execute a tool and return the result.

    Args:
        engine: Doing engine instance
        name: Tool name
        arguments: Tool arguments

    Returns:
        Tool result as dictionary
    """
    try:
        if name == "doing_now":
            entry = engine.now(
                text=arguments["text"],
                section=arguments.get("section"),
                back=arguments.get("back"),
                note=arguments.get("note"),
                finish_last=arguments.get("finish_last", False),
            )
            return {"success": True, "entry": entry}

        elif name == "doing_done":
            entry = engine.done(
                text=arguments["text"],
                section=arguments.get("section"),
                at=arguments.get("at"),
                took=arguments.get("took"),
                back=arguments.get("back"),
                note=arguments.get("note"),
                archive=arguments.get("archive", False),
            )
            return {"success": True, "entry": entry}

        elif name == "doing_later":
            entry = engine.later(
                text=arguments["text"],
                tags=arguments.get("tags") or [],
                note=arguments.get("note"),
            )
            return {"success": True, "entry": entry}

        elif name == "doing_again":
            entry = engine.again(
                entry_id=arguments.get("entry_id"),
                section=arguments.get("section"),
                back=arguments.get("back"),
                note=arguments.get("note"),
            )
            return {"success": True, "entry": entry}

        elif name == "doing_finish":
            entries = engine.finish(
                entry_id=arguments.get("entry_id"),
                count=arguments.get("count", 1),
                section=arguments.get("section"),
                at=arguments.get("at"),
                took=arguments.get("took"),
                expr=arguments.get("pattern"),
            )
            return {"success": True, "count": len(entries), "entries": entries}

        elif name == "doing_reset":
            entry = engine.reset(
                entry_id=arguments.get("entry_id"),
                section=arguments.get("section"),
                at=arguments.get("at"),
                took=arguments.get("took"),
                resume=arguments.get("resume", True),
            )
            return {"success": True, "entry": entry}

        elif name == "doing_cancel":
            entry = engine.cancel(entry_id=arguments.get("entry_id"), section=arguments.get("section"))
            return {"success": True, "entry": entry}

        elif name == "doing_toggle":
            entry = engine.toggle(arguments["entry_id"], at=arguments.get("at"))
            return {"success": True, "entry": entry}

        elif name == "doing_delete":
            entry = engine.delete(arguments["entry_id"])
            return {"success": True, "deleted": entry}

        elif name == "doing_tag":
            entry = engine.tag(
                arguments["tags"],
                entry_id=arguments.get("entry_id"),
                section=arguments.get("section"),
            )
            return {"success": True, "entry": entry}

        elif name == "doing_untag":
            entry = engine.untag(
                arguments["tags"],
                entry_id=arguments.get("entry_id"),
                section=arguments.get("section"),
                regex=arguments.get("regex", False),
            )
            return {"success": True, "removed": entry.pop("removed"), "entry": entry}

        elif name == "doing_rename_tag":
            changed = engine.rename_tag(arguments["old"], arguments["new"], entry_id=arguments.get("entry_id"))
            return {"success": True, "changed": changed}

        elif name == "doing_note":
            entry = engine.note(
                arguments["text"],
                entry_id=arguments.get("entry_id"),
                section=arguments.get("section"),
                append=arguments.get("append", False),
            )
            return {"success": True, "entry": entry}

        elif name == "doing_edit":
            entry = engine.edit(arguments["entry_id"], arguments["text"])
            return {"success": True, "entry": entry}

        elif name == "doing_move":
            entry = engine.move(arguments["entry_id"], arguments["section"])
            return {"success": True, "entry": entry}

        elif name == "doing_archive":
            options = filter_options(arguments)
            sections = options.sections or None
            options.sections = []
            moved = engine.archive(
                options,
                sections=sections,
                to=arguments.get("to"),
                keep=arguments.get("keep"),
                label=arguments.get("label", False),
            )
            return {"success": True, "count": len(moved), "entries": moved}

        elif name == "doing_rotate":
            options = filter_options(arguments)
            sections = options.sections or None
            options.sections = []
            result = engine.rotate(
                options,
                sections=sections,
                keep=arguments.get("keep"),
                label=arguments.get("label", False),
            )
            return {"success": True, **result}

        elif name == "doing_show":
            entries = engine.search(filter_options(arguments))
            return {"success": True, "count": len(entries), "entries": entries}

        elif name == "doing_last":
            entry = engine.last(section=arguments.get("section"), expr=arguments.get("pattern"))
            return {"success": True, "entry": entry}

        elif name == "doing_recent":
            entries = engine.recent(count=arguments.get("count", 10), section=arguments.get("section"))
            return {"success": True, "count": len(entries), "entries": entries}

        elif name == "doing_on":
            entries = engine.on(arguments["date"], expr=arguments.get("pattern"))
            return {"success": True, "count": len(entries), "entries": entries}

        elif name == "doing_since":
            entries = engine.since(arguments["date"], expr=arguments.get("pattern"))
            return {"success": True, "count": len(entries), "entries": entries}

        elif name == "doing_entry":
            return {"success": True, "entry": engine.entry(arguments["entry_id"])}

        elif name == "doing_tags":
            counts = engine.tags_report(filter_options(arguments), sort=arguments.get("sort", "name"))
            return {"success": True, "tags": counts}

        elif name == "doing_totals":
            return {"success": True, **engine.totals(filter_options(arguments))}

        elif name == "doing_sections":
            return {"success": True, "sections": engine.sections()}

        elif name == "doing_section_add":
            return {"success": True, "section": engine.add_section(arguments["name"])}

        elif name == "doing_section_remove":
            section = engine.remove_section(arguments["name"], archive_entries=arguments.get("archive", False))
            return {"success": True, "section": section}

        elif name == "doing_section_rename":
            return {"success": True, "section": engine.rename_section(arguments["old"], arguments["new"])}

        elif name == "doing_resolve_time":
            expression = arguments["expression"]
            result = resolve_time_expression(expression, engine.now_time())
            return {"success": True, **_resolution_dict(expression, result)}

        else:
            return {
                "success": False,
                "error": f"Unknown tool: {name}",
                "error_type": "unknown_tool",
            }

    except UnknownEntryId as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "unknown_entry_id",
            "suggestion": "Use doing_show or doing_recent to find entry IDs",
        }

    except UnknownSectionName as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "unknown_section",
            "suggestion": "Use doing_sections to list sections, or doing_section_add to create one",
        }

    except DuplicateSectionName as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "duplicate_section",
            "suggestion": "Section names must be unique",
        }

    except DuplicateId as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "duplicate_id",
        }

    except UnparseableTimeExpression as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "unparseable_time",
            "suggestion": f"Use a time expression like {TIME_HINT.removeprefix('e.g. ')}",
        }

    except InvalidFilterExpression as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "invalid_filter",
            "suggestion": "Check regex syntax, parentheses and tag operators (== != < <= > >= *= ^= $= =~)",
        }

    except NoMatchingEntry as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "no_matching_entry",
            "suggestion": "Use doing_now to start an entry",
        }

    except ProtectedSection as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "protected_section",
        }

    except StructuralParseFailure as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "parse_failure",
            "suggestion": f"{engine.path} is not a readable doing file; fix or restore it",
        }

    except portalocker.LockException as e:
        return {
            "success": False,
            "error": f"Could not lock {engine.path}: {e}",
            "error_type": "lock_timeout",
            "suggestion": "Another process is writing the doing file; retry shortly",
        }

    except DoingError as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "doing_error",
        }

    except KeyError as e:
        return {
            "success": False,
            "error": f"Missing required argument: {e.args[0]}",
            "error_type": "missing_argument",
        }

    except ValueError as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "invalid_argument",
        }

    except Exception as e:
        logger.exception(f"Tool {name} failed")
        return {
            "success": False,
            "error": str(e),
            "error_type": "unexpected_error",
        }
