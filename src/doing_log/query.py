"""Filter/query engine: predicate trees evaluated over a Document.

Predicates compose with ``&``, ``|`` and ``~``::

    query(doc, TagPredicate("bug") & ~SectionPredicate("Archive"))
    query(doc, "bug AND NOT section:Archive")

Results are ordered most recent first; entries with the same start time
keep their file order.
"""

from __future__ import annotations

import difflib
import fnmatch
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Iterable, Iterator, Optional, Sequence, Union

from .errors import InvalidFilterExpression, UnparseableTimeExpression
from .models import DONE_TAG, Document, Entry, Section, TagValue, local_now, parse_timestamp
from .timeparse import (
    TimeInterval,
    compute_duration,
    resolve_interval,
    resolve_point,
)

CASE_SMART = "smart"
CASE_SENSITIVE = "sensitive"
CASE_IGNORE = "ignore"

MODE_SUBSTRING = "substring"
MODE_EXACT = "exact"
MODE_REGEX = "regex"
MODE_FUZZY = "fuzzy"

BOOL_AND = "and"
BOOL_OR = "or"
BOOL_NOT = "not"
BOOL_PATTERN = "pattern"

ALL_SECTIONS = "all"

TAG_OPERATORS = ("==", "!=", "<=", ">=", "*=", "^=", "$=", "=~", "=", "<", ">")


@dataclass
class QueryContext:
    """Evaluation settings shared by every predicate in one query."""
    now: datetime = field(default_factory=local_now)
    fuzzy_threshold: float = 0.8
    include_notes: bool = True


@lru_cache(maxsize=128)
def _compile(pattern: str, flags: int = 0) -> re.Pattern:
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise InvalidFilterExpression(f"Invalid regular expression {pattern!r}: {e}") from e


def is_case_sensitive(pattern: str, case: str) -> bool:
    """Smart case: sensitive only when the pattern has an uppercase letter."""
    if case == CASE_SENSITIVE:
        return True
    if case == CASE_IGNORE:
        return False
    return any(ch.isupper() for ch in pattern)


# ========== Predicates ==========

class Predicate:
    """Base class for filter expression nodes."""

    def matches(self, section: Section, entry: Entry, ctx: QueryContext) -> bool:
        raise NotImplementedError

    def __and__(self, other: Predicate) -> And:
        return And((self, other))

    def __or__(self, other: Predicate) -> Or:
        return Or((self, other))

    def __invert__(self) -> Not:
        return Not(self)


@dataclass(frozen=True)
class MatchAll(Predicate):
    def matches(self, section: Section, entry: Entry, ctx: QueryContext) -> bool:
        return True


@dataclass(frozen=True)
class Search(Predicate):
    """Text search over the description and (optionally) the note."""
    pattern: str
    mode: str = MODE_SUBSTRING
    case: str = CASE_SMART

    def __post_init__(self) -> None:
        if self.mode not in (MODE_SUBSTRING, MODE_EXACT, MODE_REGEX, MODE_FUZZY):
            raise InvalidFilterExpression(f"Unknown search mode: {self.mode}")
        if self.mode == MODE_REGEX:
            self._regex()

    @property
    def case_sensitive(self) -> bool:
        return is_case_sensitive(self.pattern, self.case)

    def _regex(self) -> re.Pattern:
        return _compile(self.pattern, 0 if self.case_sensitive else re.IGNORECASE)

    def matches(self, section: Section, entry: Entry, ctx: QueryContext) -> bool:
        texts = [entry.description]
        if entry.note and ctx.include_notes:
            texts.append(entry.note)
        return any(self._match_text(text, ctx) for text in texts)

    def _match_text(self, text: str, ctx: QueryContext) -> bool:
        if self.mode == MODE_REGEX:
            return self._regex().search(text) is not None

        needle = self.pattern
        if not self.case_sensitive:
            needle = needle.casefold()
            text = text.casefold()

        if self.mode == MODE_EXACT:
            return text == needle
        if needle in text:
            return True
        if self.mode == MODE_FUZZY:
            return _fuzzy_contains(text, needle, ctx.fuzzy_threshold)
        return False


def _fuzzy_contains(text: str, needle: str, threshold: float) -> bool:
    """True if some run of words in text is close to needle (difflib ratio)."""
    words = text.split()
    width = max(1, len(needle.split()))
    if not words:
        return False
    for i in range(max(1, len(words) - width + 1)):
        window = " ".join(words[i:i + width])
        if difflib.SequenceMatcher(None, needle, window).ratio() >= threshold:
            return True
    return False


def _as_number(value: str) -> Optional[float]:
    try:
        return float(value)
    except ValueError:
        return None


def _as_datetime(value: TagValue) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if value is None:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def _ordered(op: str, left, right) -> bool:
    if op in ("==", "="):
        return left == right
    if op == "!=":
        return left != right
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    if op == ">=":
        return left >= right
    raise InvalidFilterExpression(f"Operator {op} cannot order values")


@dataclass(frozen=True)
class TagPredicate(Predicate):
    """Tag presence, optionally with a value comparison.

    The name may use ``*`` and ``?`` wildcards. Values compare numerically
    when both sides are numbers, as dates when the tag holds a timestamp and
    the operand resolves as a time expression, and otherwise as
    case-insensitive strings.
    """
    name: str
    op: Optional[str] = None
    value: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise InvalidFilterExpression("Empty tag name")
        if self.op is not None and self.op not in TAG_OPERATORS:
            raise InvalidFilterExpression(f"Unknown tag operator: {self.op}")
        if self.op is not None and self.value is None:
            raise InvalidFilterExpression(f"Tag operator {self.op} needs a value")
        if self.op == "=~":
            _compile(self.value, re.IGNORECASE)

    def matching_names(self, entry: Entry) -> list[str]:
        if "*" in self.name or "?" in self.name:
            return [t for t in entry.tags if fnmatch.fnmatchcase(t, self.name)]
        return [self.name] if self.name in entry.tags else []

    def matches(self, section: Section, entry: Entry, ctx: QueryContext) -> bool:
        names = self.matching_names(entry)
        if self.op is None:
            return bool(names)
        return any(self._compare(entry.tags[name], ctx) for name in names)

    def _compare(self, actual: TagValue, ctx: QueryContext) -> bool:
        op, expected = self.op, self.value
        if actual is None:
            return op == "!=" and expected != ""
        if op == "=~":
            return _compile(expected, re.IGNORECASE).search(_format_value(actual)) is not None

        actual_text = actual if isinstance(actual, str) else ""
        if op in ("*=", "^=", "$="):
            text = (actual_text or _format_value(actual)).casefold()
            needle = expected.casefold()
            if op == "*=":
                return needle in text
            if op == "^=":
                return text.startswith(needle)
            return text.endswith(needle)

        left, right = _as_number(actual_text), _as_number(expected)
        if left is not None and right is not None:
            return _ordered(op, left, right)

        actual_dt = _as_datetime(actual)
        if actual_dt is not None:
            try:
                return _ordered(op, actual_dt, resolve_point(expected, ctx.now))
            except UnparseableTimeExpression:
                pass

        return _ordered(op, _format_value(actual).casefold(), expected.casefold())


def _format_value(value: TagValue) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    return value or ""


@dataclass(frozen=True)
class SectionPredicate(Predicate):
    """Entries in the named section; "all" matches every section."""
    name: str

    def matches(self, section: Section, entry: Entry, ctx: QueryContext) -> bool:
        if self.name.lower() == ALL_SECTIONS:
            return True
        return section.name == self.name


@dataclass(frozen=True)
class DateRange(Predicate):
    """Entries whose start time falls in [start, end)."""
    interval: TimeInterval

    def matches(self, section: Section, entry: Entry, ctx: QueryContext) -> bool:
        return self.interval.contains(entry.started_at)


@dataclass(frozen=True)
class IsDone(Predicate):
    def matches(self, section: Section, entry: Entry, ctx: QueryContext) -> bool:
        return entry.is_done


@dataclass(frozen=True)
class And(Predicate):
    parts: tuple[Predicate, ...]

    def matches(self, section: Section, entry: Entry, ctx: QueryContext) -> bool:
        return all(p.matches(section, entry, ctx) for p in self.parts)


@dataclass(frozen=True)
class Or(Predicate):
    parts: tuple[Predicate, ...]

    def matches(self, section: Section, entry: Entry, ctx: QueryContext) -> bool:
        return any(p.matches(section, entry, ctx) for p in self.parts)


@dataclass(frozen=True)
class Not(Predicate):
    part: Predicate

    def matches(self, section: Section, entry: Entry, ctx: QueryContext) -> bool:
        return not self.part.matches(section, entry, ctx)


def all_of(parts: Sequence[Predicate]) -> Predicate:
    parts = tuple(parts)
    if not parts:
        return MatchAll()
    if len(parts) == 1:
        return parts[0]
    return And(parts)


def any_of(parts: Sequence[Predicate]) -> Predicate:
    parts = tuple(parts)
    if not parts:
        return MatchAll()
    if len(parts) == 1:
        return parts[0]
    return Or(parts)


# ========== Pattern Parsing ==========

_TAG_TERM_RE = re.compile(
    r"^@?(?P<name>[\w.*?\-]+?)\s*(?:(?P<op>==|!=|<=|>=|\*=|\^=|\$=|=~|=|<|>)\s*(?P<value>.+))?$"
)

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<lparen>\()
      | (?P<rparen>\))
      | (?P<regex>[+\-]?/(?:\\.|[^/\\])+/)
      | (?P<quoted>[+\-]?"[^"]*")
      | (?P<word>(?:[^\s()"]|"[^"]*")+)
    )""",
    re.VERBOSE,
)

_KEYWORDS = {"AND": "and", "&&": "and", "OR": "or", "||": "or", "NOT": "not", "!": "not"}


def parse_tag_term(text: str) -> TagPredicate:
    """Parse ``name``, ``@name``, ``@na*e`` or ``@name<op>value``.

    Raises:
        InvalidFilterExpression: If the text is not a tag term.
    """
    match = _TAG_TERM_RE.match(text.strip())
    if not match:
        raise InvalidFilterExpression(f"Invalid tag expression: {text!r}")
    value = match.group("value")
    if value is not None:
        value = value.strip().strip('"')
    return TagPredicate(match.group("name"), match.group("op"), value)


def search_predicate(text: str, case: str = CASE_SMART, exact: bool = False, fuzzy: bool = False) -> Search:
    """Build a Search from user input: /re/ is a regex, a leading ' is exact."""
    if len(text) > 2 and text.startswith("/") and text.endswith("/"):
        return Search(text[1:-1], MODE_REGEX, case)
    if text.startswith("'"):
        return Search(text[1:], MODE_EXACT, case)
    if exact:
        return Search(text, MODE_EXACT, case)
    if fuzzy:
        return Search(text, MODE_FUZZY, case)
    return Search(text, MODE_SUBSTRING, case)


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise InvalidFilterExpression(f"Cannot parse filter near: {text[pos:]!r}")
        kind = match.lastgroup
        value = match.group(kind)
        if kind == "word" and value in _KEYWORDS:
            kind, value = "op", _KEYWORDS[value]
        tokens.append((kind, value))
        pos = match.end()
    return tokens


class _PatternParser:
    """Recursive descent over filter tokens.

    or   := and ("OR" and)*
    and  := not (["AND"] not)*
    not  := "NOT" not | term | "(" or ")"
    """

    def __init__(self, tokens: list[tuple[str, str]], case: str, now: datetime):
        self.tokens = tokens
        self.pos = 0
        self.case = case
        self.now = now

    def peek(self) -> Optional[tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> tuple[str, str]:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def parse(self) -> Predicate:
        if not self.tokens:
            return MatchAll()
        node = self.parse_or()
        if self.peek() is not None:
            raise InvalidFilterExpression(f"Unexpected {self.peek()[1]!r} in filter")
        return node

    def parse_or(self) -> Predicate:
        parts = [self.parse_and()]
        while self.peek() == ("op", "or"):
            self.take()
            parts.append(self.parse_and())
        return any_of(parts)

    def parse_and(self) -> Predicate:
        parts = [self.parse_not()]
        while True:
            token = self.peek()
            if token is None or token == ("op", "or") or token[0] == "rparen":
                break
            if token == ("op", "and"):
                self.take()
            parts.append(self.parse_not())
        return all_of(parts)

    def parse_not(self) -> Predicate:
        token = self.peek()
        if token is None:
            raise InvalidFilterExpression("Filter ends unexpectedly")
        if token == ("op", "not"):
            self.take()
            return Not(self.parse_not())
        if token[0] == "lparen":
            self.take()
            node = self.parse_or()
            closing = self.peek()
            if closing is None or closing[0] != "rparen":
                raise InvalidFilterExpression("Missing closing parenthesis")
            self.take()
            return node
        if token[0] in ("rparen", "op"):
            raise InvalidFilterExpression(f"Unexpected {token[1]!r} in filter")
        kind, value = self.take()
        return self.term(kind, value)

    def term(self, kind: str, value: str) -> Predicate:
        sign = ""
        if value[:1] in "+-" and len(value) > 1:
            sign, value = value[0], value[1:]
        node = self.atom(kind, value)
        return Not(node) if sign == "-" else node

    def atom(self, kind: str, value: str) -> Predicate:
        if kind == "quoted":
            return Search(value.strip('"'), MODE_SUBSTRING, self.case)
        if kind == "regex":
            return Search(value[1:-1], MODE_REGEX, self.case)
        if value.startswith("@"):
            return parse_tag_term(value)

        prefix, sep, rest = value.partition(":")
        if sep and rest:
            rest = rest.strip('"')
            key = prefix.lower()
            if key == "tag":
                return parse_tag_term(rest)
            if key == "section":
                return SectionPredicate(rest)
            if key in ("date", "on"):
                return DateRange(_interval(rest, self.now))
            if key in ("since", "after"):
                return DateRange(TimeInterval(_interval(rest, self.now).start, None))
            if key in ("before", "until"):
                return DateRange(TimeInterval(None, _interval(rest, self.now).start))
            if key == "done" and rest.lower() in ("yes", "true"):
                return IsDone()
            if key == "done" and rest.lower() in ("no", "false"):
                return Not(IsDone())
        return search_predicate(value, self.case)


def _interval(text: str, now: datetime) -> TimeInterval:
    try:
        return resolve_interval(text, now)
    except UnparseableTimeExpression as e:
        raise InvalidFilterExpression(str(e)) from e


def parse_pattern(text: str, case: str = CASE_SMART, now: Optional[datetime] = None) -> Predicate:
    """Parse a raw boolean filter string into a predicate tree.

    Terms next to each other are ANDed. ``+term`` requires, ``-term``
    excludes. Bare words and "quoted phrases" search text; ``@tag`` and
    ``tag:name`` test tags (``@priority>2``); ``section:Name``,
    ``date:``/``on:``, ``since:`` and ``before:`` scope by section and time.

    Raises:
        InvalidFilterExpression: If the string is malformed.
    """
    parser = _PatternParser(_tokenize(text), case, now or local_now())
    return parser.parse()


def tags_predicate(tags: Iterable[str], bool_op: str = BOOL_PATTERN) -> Predicate:
    """Tag list semantics of the ``--tag`` option.

    pattern: ``+t`` required, ``-t`` excluded, bare tags any-of.
    and / or / not: all of, any of, none of.
    """
    tags = [t.strip() for t in tags if t.strip()]
    if not tags:
        return MatchAll()
    op = bool_op.lower()
    if op == BOOL_AND:
        return all_of([parse_tag_term(t) for t in tags])
    if op == BOOL_OR:
        return any_of([parse_tag_term(t) for t in tags])
    if op == BOOL_NOT:
        return Not(any_of([parse_tag_term(t) for t in tags]))
    if op != BOOL_PATTERN:
        raise InvalidFilterExpression(f"Unknown boolean operator: {bool_op}")

    required, excluded, normal = [], [], []
    for tag in tags:
        if tag.startswith("+"):
            required.append(parse_tag_term(tag[1:]))
        elif tag.startswith("-"):
            excluded.append(parse_tag_term(tag[1:]))
        else:
            normal.append(parse_tag_term(tag))
    parts: list[Predicate] = list(required)
    if excluded:
        parts.append(Not(any_of(excluded)))
    if normal:
        parts.append(any_of(normal))
    return all_of(parts)


@dataclass
class FilterOptions:
    """Filter settings shared by show/search/archive style commands."""
    search: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    bool_op: str = BOOL_PATTERN
    sections: list[str] = field(default_factory=list)
    after: Optional[str] = None
    before: Optional[str] = None
    date_range: Optional[str] = None
    case: str = CASE_SMART
    exact: bool = False
    fuzzy: bool = False
    not_: bool = False
    only_done: bool = False
    values: list[str] = field(default_factory=list)
    pattern: Optional[str] = None
    count: Optional[int] = None


def build_filter(options: FilterOptions, now: Optional[datetime] = None) -> Predicate:
    """Convert FilterOptions to a predicate tree.

    Section scoping is applied outside the NOT, so ``not_`` inverts the
    match within the chosen sections only.

    Raises:
        InvalidFilterExpression: For bad regexes, tags or time expressions.
    """
    now = now or local_now()
    parts: list[Predicate] = []

    if options.after:
        parts.append(DateRange(TimeInterval(_point(options.after, now), None)))
    if options.before:
        parts.append(DateRange(TimeInterval(None, _point(options.before, now))))
    if options.date_range:
        parts.append(DateRange(_interval(options.date_range, now)))
    if options.search:
        parts.append(search_predicate(options.search, options.case, options.exact, options.fuzzy))
    if options.tags:
        parts.append(tags_predicate(options.tags, options.bool_op))
    if options.only_done:
        parts.append(IsDone())
    if options.values:
        value_preds = [parse_tag_term(v) for v in options.values]
        parts.append(any_of(value_preds) if options.bool_op.lower() == BOOL_OR else all_of(value_preds))
    if options.pattern:
        parts.append(parse_pattern(options.pattern, options.case, now))

    node = all_of(parts)
    if options.not_:
        node = Not(node)
    if options.sections:
        node = all_of([any_of([SectionPredicate(s) for s in options.sections]), node])
    return node


def _point(text: str, now: datetime) -> datetime:
    try:
        return resolve_point(text, now)
    except UnparseableTimeExpression as e:
        raise InvalidFilterExpression(str(e)) from e


# ========== Evaluation ==========

FilterExpression = Union[Predicate, str, FilterOptions, None]


def to_predicate(expr: FilterExpression, now: Optional[datetime] = None) -> Predicate:
    if expr is None:
        return MatchAll()
    if isinstance(expr, Predicate):
        return expr
    if isinstance(expr, FilterOptions):
        return build_filter(expr, now)
    return parse_pattern(expr, now=now)


class QueryResult:
    """Lazy, restartable result of a query.

    Nothing is evaluated until iteration, and each iteration re-evaluates
    against the document, so an unchanged document yields the same sequence.
    """

    def __init__(
        self,
        document: Document,
        predicate: Predicate,
        sections: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        context: Optional[QueryContext] = None,
    ):
        self.document = document
        self.predicate = predicate
        self.sections = list(sections) if sections else None
        self.limit = limit
        self.context = context or QueryContext()

    def pairs(self) -> Iterator[tuple[Section, Entry]]:
        """Yield matching (section, entry) pairs, most recent first."""
        candidates = (
            (section, entry)
            for section, entry in self.document.iter_entries()
            if self.sections is None or section.name in self.sections
        )
        matched = [
            (section, entry)
            for section, entry in candidates
            if self.predicate.matches(section, entry, self.context)
        ]
        # sorted() is stable with reverse=True: equal start times keep file order
        matched = sorted(matched, key=lambda pair: pair[1].started_at, reverse=True)
        if self.limit is not None:
            matched = matched[:self.limit]
        yield from matched

    def __iter__(self) -> Iterator[Entry]:
        for _, entry in self.pairs():
            yield entry

    def count(self) -> int:
        return sum(1 for _ in self.pairs())

    def entries(self) -> list[Entry]:
        return list(self)

    def first(self) -> Optional[Entry]:
        return next(iter(self), None)

    def to_dicts(self) -> list[dict]:
        return [entry.to_dict(section.name) for section, entry in self.pairs()]

    def total_duration(self) -> timedelta:
        return total_duration(self, self.context.now)

    def tag_counts(self) -> dict[str, int]:
        return tag_counts(self)


def query(
    document: Document,
    expr: FilterExpression = None,
    *,
    sections: Optional[Sequence[str]] = None,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
    context: Optional[QueryContext] = None,
) -> QueryResult:
    """Select entries matching a filter expression.

    Args:
        document: Document to search
        expr: Predicate, raw pattern string, FilterOptions or None for all
        sections: Restrict candidates to these section names
        limit: Maximum number of results
        now: Reference time for relative dates
        context: Evaluation settings (overrides now)

    Raises:
        InvalidFilterExpression: If a string or options expression is malformed.
    """
    if context is None:
        context = QueryContext(now=now or local_now())
    if isinstance(expr, FilterOptions) and limit is None:
        limit = expr.count
    predicate = to_predicate(expr, context.now)
    return QueryResult(document, predicate, sections, limit, context)


# ========== Aggregates ==========

def entry_duration(entry: Entry) -> Optional[timedelta]:
    """Elapsed time of a finished entry, None while unfinished."""
    if entry.done_at is None:
        return None
    return compute_duration(entry.started_at, entry.done_at).duration


def total_duration(entries: Iterable[Entry], now: Optional[datetime] = None, include_open: bool = False) -> timedelta:
    """Sum the durations of finished entries.

    With include_open, unfinished entries count up to now.
    """
    total = timedelta()
    for entry in entries:
        duration = entry_duration(entry)
        if duration is None and include_open and not entry.is_done:
            duration = compute_duration(entry.started_at, now or local_now()).duration
        if duration is not None:
            total += duration
    return total


def durations_by_tag(entries: Iterable[Entry]) -> dict[str, timedelta]:
    """Total finished time per tag (excluding @done), sorted by tag name."""
    totals: dict[str, timedelta] = {}
    for entry in entries:
        duration = entry_duration(entry)
        if duration is None:
            continue
        for name in entry.tags:
            if name == DONE_TAG:
                continue
            totals[name] = totals.get(name, timedelta()) + duration
    return dict(sorted(totals.items()))


def tag_counts(entries: Iterable[Entry], sort: str = "name") -> dict[str, int]:
    """Count entries carrying each tag. sort is "name" or "count"."""
    counts = Counter(name for entry in entries for name in entry.tags)
    if sort == "count":
        items = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    else:
        items = sorted(counts.items())
    return dict(items)
