"""Exceptions raised by the doing log core.

Every failure a caller can recover from is a subclass of DoingError, so the
tool layer can turn it into a result dict instead of crashing the host.
"""

from __future__ import annotations


class DoingError(Exception):
    """Base exception for doing log operations."""
    pass


class StructuralParseFailure(DoingError):
    """Raised when the input cannot be read as a doing file at all."""

    def __init__(self, message: str, lineno: int | None = None):
        self.lineno = lineno
        if lineno is not None:
            message = f"line {lineno}: {message}"
        super().__init__(message)


class DuplicateId(DoingError):
    """Raised when inserting an entry whose id is already in the document."""
    pass


class DuplicateSectionName(DoingError):
    """Raised when adding or renaming to a section name that already exists."""
    pass


class UnknownEntryId(DoingError):
    """Raised when a targeted mutation references a nonexistent entry."""
    pass


class UnknownSectionName(DoingError):
    """Raised when an operation references a nonexistent section."""
    pass


class UnparseableTimeExpression(DoingError):
    """Raised when a date/time expression cannot be resolved."""

    def __init__(self, expression: str, detail: str | None = None):
        self.expression = expression
        message = f"Cannot parse time expression: {expression!r}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class InvalidFilterExpression(DoingError):
    """Raised for a malformed filter pattern or search regex."""
    pass


class NoMatchingEntry(DoingError):
    """Raised when a command that targets "the last entry" finds none."""
    pass


class ProtectedSection(DoingError):
    """Raised when removing the default section or archiving into a source."""
    pass
