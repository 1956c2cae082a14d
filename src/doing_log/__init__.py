"""doing-log: a plain-text TaskPaper time log with a query engine."""

from loguru import logger

from .engine import DoingEngine, create_entry, delete, toggle_done
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
from .models import Document, Entry, Section
from .query import (
    And,
    DateRange,
    FilterOptions,
    MatchAll,
    Not,
    Or,
    Search,
    SectionPredicate,
    TagPredicate,
    parse_pattern,
    query,
)
from .taskpaper import load, parse, parse_with_report, save, serialize
from .timeparse import TimeInterval, TimePoint, resolve_time_expression

__version__ = "0.1.0"

logger.disable("doing_log")

__all__ = [
    "And",
    "DateRange",
    "DoingEngine",
    "DoingError",
    "Document",
    "DuplicateId",
    "DuplicateSectionName",
    "Entry",
    "FilterOptions",
    "InvalidFilterExpression",
    "MatchAll",
    "NoMatchingEntry",
    "Not",
    "Or",
    "ProtectedSection",
    "Search",
    "Section",
    "SectionPredicate",
    "StructuralParseFailure",
    "TagPredicate",
    "TimeInterval",
    "TimePoint",
    "UnknownEntryId",
    "UnknownSectionName",
    "UnparseableTimeExpression",
    "create_entry",
    "delete",
    "load",
    "parse",
    "parse_pattern",
    "parse_with_report",
    "query",
    "resolve_time_expression",
    "save",
    "serialize",
    "toggle_done",
]
