"""Resolve absolute and natural-language time expressions.

Every resolution is a pure function of (expression, reference now). An
expression resolves to a TimePoint or a half-open TimeInterval, or raises
UnparseableTimeExpression; callers decide whether to fall back to now.

Supported forms::

    2024-01-15 14:30     1/15/2024     jan 15     15:30     3pm     noon
    now  today  yesterday  tomorrow  monday  last friday  next tue
    3 days ago  an hour ago  in 2 hours  2 weeks from now  45m  1h30m
    yesterday at 3pm     monday 10:30
    from 9am to 11am     monday through friday     2024-01-01 - 2024-01-31
    between jan 1 and jan 15     since yesterday     before 2024-02-01
    this week  last week  this month  last month
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional, Union

from dateutil import parser as dtparser
from dateutil.relativedelta import relativedelta
from loguru import logger

from .errors import UnparseableTimeExpression
from .models import local_now, truncate_to_minute

ONE_DAY = timedelta(days=1)
ONE_MINUTE = timedelta(minutes=1)


@dataclass(frozen=True)
class TimePoint:
    """A resolved instant. day_only marks a date given without a clock time."""
    at: datetime
    day_only: bool = False


@dataclass(frozen=True)
class TimeInterval:
    """Half-open interval [start, end). A None bound is unbounded."""
    start: Optional[datetime]
    end: Optional[datetime]

    def contains(self, dt: datetime) -> bool:
        if self.start is not None and dt < self.start:
            return False
        if self.end is not None and dt >= self.end:
            return False
        return True


Resolution = Union[TimePoint, TimeInterval]


@dataclass(frozen=True)
class NegativeDuration:
    """Advisory: a completion point precedes its start point."""
    start: datetime
    end: datetime

    @property
    def message(self) -> str:
        return f"End time {self.end:%Y-%m-%d %H:%M} is before start time {self.start:%Y-%m-%d %H:%M}"


@dataclass(frozen=True)
class DurationResult:
    duration: timedelta
    advisory: Optional[NegativeDuration] = None

    @property
    def negative(self) -> bool:
        return self.advisory is not None


# ========== Vocabulary ==========

WEEKDAYS = {
    "monday": 0, "mon": 0,
    "tuesday": 1, "tue": 1, "tues": 1,
    "wednesday": 2, "wed": 2,
    "thursday": 3, "thu": 3, "thur": 3, "thurs": 3,
    "friday": 4, "fri": 4,
    "saturday": 5, "sat": 5,
    "sunday": 6, "sun": 6,
}

NUMBER_WORDS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11,
    "twelve": 12, "a couple of": 2, "couple of": 2, "a few": 3, "few": 3,
}

_UNIT_PATTERN = (
    r"(?P<unit>seconds?|secs?|s|minutes?|mins?|m|hours?|hrs?|h"
    r"|days?|d|weeks?|wks?|w|months?|mos?|years?|yrs?|y)"
)
_COUNT_PATTERN = r"(?P<n>\d+(?:\.\d+)?|" + "|".join(
    re.escape(w) for w in sorted(NUMBER_WORDS, key=len, reverse=True)
) + r")"

_AGO_RE = re.compile(rf"^{_COUNT_PATTERN}\s*{_UNIT_PATTERN} (?:ago|back|before now|earlier)$")
_IN_RE = re.compile(rf"^in {_COUNT_PATTERN}\s*{_UNIT_PATTERN}$")
_FROM_NOW_RE = re.compile(rf"^{_COUNT_PATTERN}\s*{_UNIT_PATTERN} (?:from now|later)$")
_COMPACT_RE = re.compile(r"^(?:\d+\s*[dhms]\s*)+$")
_COMPACT_PART_RE = re.compile(r"(\d+)\s*([dhms])")
_HHMM_RE = re.compile(r"^(\d+):(\d{2})$")
_LONG_DURATION_PART_RE = re.compile(rf"(?P<n>\d+(?:\.\d+)?)\s*{_UNIT_PATTERN}\b")

_CLOCK_RE = re.compile(r"^(?P<h>\d{1,2})(?::(?P<m>\d{2}))?\s*(?P<ampm>am|pm|a|p)?$")
_TRAILING_CLOCK_RE = re.compile(
    r"^(?P<date>.+?)\s+(?P<at>at\s+)?(?P<clock>\d{1,2}(?::\d{2})?\s*(?:am|pm|a|p)?|noon|midnight)$"
)
_HAS_CLOCK_RE = re.compile(r"\d:\d|\d\s*(?:am|pm)\b|\bnoon\b|\bmidnight\b")
_ISO_DATE_RE = re.compile(r"^(?P<y>\d{4})[-/](?P<m>\d{1,2})[-/](?P<d>\d{1,2})$")
_ANCHORED_WEEKDAY_RE = re.compile(r"^(?P<rel>last|this|next|past|coming) (?P<day>[a-z]+)$")
_PERIOD_RE = re.compile(r"^(?P<rel>last|this|next|past) (?P<period>week|month|year)$")

_BETWEEN_RE = re.compile(r"^between (?P<a>.+?) and (?P<b>.+)$")
_RANGE_RE = re.compile(r"^(?:from )?(?P<a>.+?) (?:to|through|thru|until|till) (?P<b>.+)$")
_DASH_RANGE_RE = re.compile(r"^(?:from )?(?P<a>.+?) - (?P<b>.+)$")
_SINCE_RE = re.compile(r"^(?:since|after|from) (?P<a>.+)$")
_BEFORE_RE = re.compile(r"^(?:before|until|till) (?P<a>.+)$")


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text.strip().lower()).rstrip(".")


def _count(raw: str) -> float:
    if raw in NUMBER_WORDS:
        return NUMBER_WORDS[raw]
    return float(raw)


def _offset(n: float, unit: str) -> Union[timedelta, relativedelta]:
    u = unit.rstrip("s") or unit
    if u in ("sec", "second", "s"):
        return timedelta(seconds=n)
    if u in ("min", "minute", "m"):
        return timedelta(minutes=n)
    if u in ("hour", "hr", "h"):
        return timedelta(hours=n)
    if u in ("day", "d"):
        return timedelta(days=n)
    if u in ("week", "wk", "w"):
        return timedelta(weeks=n)
    if u in ("month", "mo"):
        return relativedelta(months=int(n))
    if u in ("year", "yr", "y"):
        return relativedelta(years=int(n))
    raise ValueError(f"Unknown unit: {unit}")


def _midnight(d: Union[date, datetime]) -> datetime:
    return datetime(d.year, d.month, d.day)


def _parse_clock(text: str, allow_bare: bool = False) -> Optional[time]:
    """Parse 3pm, 3:30 pm, 15:30, noon, midnight (and bare 15 if allowed)."""
    if text == "noon":
        return time(12, 0)
    if text == "midnight":
        return time(0, 0)
    match = _CLOCK_RE.match(text)
    if not match:
        return None
    hour = int(match.group("h"))
    minute = int(match.group("m") or 0)
    ampm = match.group("ampm")
    if ampm is None and match.group("m") is None and not allow_bare:
        return None
    if minute > 59:
        return None
    if ampm:
        if not 1 <= hour <= 12:
            return None
        if ampm.startswith("p") and hour != 12:
            hour += 12
        elif ampm.startswith("a") and hour == 12:
            hour = 0
    elif hour > 23:
        return None
    return time(hour, minute)


def _weekday_date(day: int, rel: Optional[str], today: date) -> date:
    delta = (today.weekday() - day) % 7
    if rel in (None, "last", "past"):
        return today - timedelta(days=delta or 7)
    if rel == "this":
        return today - timedelta(days=today.weekday()) + timedelta(days=day)
    # next / coming
    ahead = (day - today.weekday()) % 7
    return today + timedelta(days=ahead or 7)


def _resolve_period(rel: str, period: str, now: datetime) -> TimeInterval:
    today = now.date()
    if period == "week":
        start = _midnight(today - timedelta(days=today.weekday()))
        step: Union[timedelta, relativedelta] = timedelta(weeks=1)
    elif period == "month":
        start = _midnight(today.replace(day=1))
        step = relativedelta(months=1)
    else:
        start = _midnight(today.replace(month=1, day=1))
        step = relativedelta(years=1)
    if rel in ("last", "past"):
        start = start - step
    elif rel == "next":
        start = start + step
    return TimeInterval(start, start + step)


# ========== Points ==========

def _resolve_simple(expr: str, now: datetime) -> Optional[tuple[TimePoint, str]]:
    """Resolve a non-composite expression. Returns (point, kind) or None.

    kind is one of "moment", "day", "weekday", "clock".
    """
    if expr in ("now", "right now", "just now"):
        return TimePoint(now), "moment"
    if expr == "today":
        return TimePoint(_midnight(now), day_only=True), "day"
    if expr == "yesterday":
        return TimePoint(_midnight(now - ONE_DAY), day_only=True), "day"
    if expr == "tomorrow":
        return TimePoint(_midnight(now + ONE_DAY), day_only=True), "day"

    if expr in WEEKDAYS:
        return TimePoint(_midnight(_weekday_date(WEEKDAYS[expr], None, now.date())), True), "weekday"
    match = _ANCHORED_WEEKDAY_RE.match(expr)
    if match and match.group("day") in WEEKDAYS:
        d = _weekday_date(WEEKDAYS[match.group("day")], match.group("rel"), now.date())
        return TimePoint(_midnight(d), day_only=True), "weekday"

    if _COMPACT_RE.match(expr):
        try:
            return TimePoint(truncate_to_minute(now - parse_duration(expr))), "moment"
        except (UnparseableTimeExpression, OverflowError):
            return None

    for regex, sign in ((_AGO_RE, -1), (_IN_RE, 1), (_FROM_NOW_RE, 1)):
        match = regex.match(expr)
        if match:
            # offsets that leave the datetime range are unparseable
            try:
                offset = _offset(_count(match.group("n")), match.group("unit"))
                moved = now - offset if sign < 0 else now + offset
            except (ValueError, OverflowError):
                return None
            return TimePoint(truncate_to_minute(moved)), "moment"

    clock = _parse_clock(expr)
    if clock is not None:
        return TimePoint(datetime.combine(now.date(), clock)), "clock"

    match = _ISO_DATE_RE.match(expr)
    if match:
        try:
            d = date(int(match.group("y")), int(match.group("m")), int(match.group("d")))
        except ValueError:
            return None
        return TimePoint(_midnight(d), day_only=True), "day"

    try:
        parsed = dtparser.parse(expr, default=_midnight(now))
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    if _HAS_CLOCK_RE.search(expr):
        return TimePoint(truncate_to_minute(parsed)), "moment"
    return TimePoint(_midnight(parsed), day_only=True), "day"


def _resolve_point(expr: str, now: datetime) -> Optional[tuple[TimePoint, str]]:
    match = _TRAILING_CLOCK_RE.match(expr)
    if match:
        clock = _parse_clock(match.group("clock"), allow_bare=bool(match.group("at")))
        if clock is not None:
            base = _resolve_simple(match.group("date"), now)
            if base is not None:
                point, _ = base
                return TimePoint(datetime.combine(point.at.date(), clock)), "moment"
    return _resolve_simple(expr, now)


def _interval_end(point: TimePoint) -> datetime:
    return point.at + ONE_DAY if point.day_only else point.at


def _resolve_range(expr: str, now: datetime) -> Optional[TimeInterval]:
    match = _PERIOD_RE.match(expr)
    if match:
        try:
            return _resolve_period(match.group("rel"), match.group("period"), now)
        except (ValueError, OverflowError):
            return None

    for regex in (_BETWEEN_RE, _RANGE_RE, _DASH_RANGE_RE):
        match = regex.match(expr)
        if not match:
            continue
        first = _resolve_point(match.group("a"), now)
        if first is None:
            continue
        start, _ = first
        second = _resolve_point(match.group("b"), now)
        if second is None:
            continue
        end, kind = second
        if kind == "clock":
            # a bare clock end belongs to the start's day
            end = TimePoint(datetime.combine(start.at.date(), end.at.time()))
        end_at = _interval_end(end)
        if end_at <= start.at:
            if kind == "clock":
                end_at += ONE_DAY
            elif kind == "weekday":
                end_at += timedelta(weeks=1)
        return TimeInterval(start.at, end_at)

    match = _SINCE_RE.match(expr)
    if match:
        point = _resolve_point(match.group("a"), now)
        if point is not None:
            return TimeInterval(point[0].at, None)

    match = _BEFORE_RE.match(expr)
    if match:
        point = _resolve_point(match.group("a"), now)
        if point is not None:
            return TimeInterval(None, point[0].at)
    return None


def resolve_time_expression(text: str, now: Optional[datetime] = None) -> Resolution:
    """Resolve a time expression against a reference time.

    Args:
        text: Expression such as "yesterday at 3pm" or "from 9am to noon"
        now: Reference time (default: current local time)

    Returns:
        TimePoint or TimeInterval

    Raises:
        UnparseableTimeExpression: If the expression is not understood.
    """
    now = truncate_to_minute(now) if now is not None else local_now()
    expr = _normalize(text)
    if not expr:
        raise UnparseableTimeExpression(text, "empty expression")

    interval = _resolve_range(expr, now)
    if interval is not None:
        return interval
    point = _resolve_point(expr, now)
    if point is not None:
        return point[0]
    raise UnparseableTimeExpression(text)


def resolve_point(text: str, now: Optional[datetime] = None) -> datetime:
    """Resolve an expression to a single datetime (an interval's start).

    Raises:
        UnparseableTimeExpression: If unparseable or an open-start interval.
    """
    result = resolve_time_expression(text, now)
    if isinstance(result, TimePoint):
        return result.at
    if result.start is None:
        raise UnparseableTimeExpression(text, "expression has no start point")
    return result.start


def resolve_interval(text: str, now: Optional[datetime] = None) -> TimeInterval:
    """Resolve an expression to an interval, widening points (see to_interval)."""
    return to_interval(resolve_time_expression(text, now))


def to_interval(result: Resolution) -> TimeInterval:
    """A day-only point covers its whole day, any other point one minute."""
    if isinstance(result, TimeInterval):
        return result
    if result.day_only:
        return TimeInterval(result.at, result.at + ONE_DAY)
    return TimeInterval(result.at, result.at + ONE_MINUTE)


def resolve_or_now(text: Optional[str], now: Optional[datetime] = None) -> datetime:
    """Resolve to a point, falling back to now when unparseable or empty."""
    now = truncate_to_minute(now) if now is not None else local_now()
    if not text:
        return now
    try:
        return resolve_point(text, now)
    except UnparseableTimeExpression as e:
        logger.debug(f"{e}; using now")
        return now


# ========== Durations ==========

def parse_duration(text: str) -> timedelta:
    """Parse a bare duration: 45m, 2h, 1h30m, 1d 2h, 01:30, 90 minutes.

    Raises:
        UnparseableTimeExpression: If the text is not a duration.
    """
    expr = _normalize(text)
    try:
        return _sum_duration(text, expr)
    except OverflowError:
        raise UnparseableTimeExpression(text, "duration is out of range")


def _sum_duration(text: str, expr: str) -> timedelta:
    match = _HHMM_RE.match(expr)
    if match:
        return timedelta(hours=int(match.group(1)), minutes=int(match.group(2)))

    if _COMPACT_RE.match(expr):
        total = timedelta()
        for value, unit in _COMPACT_PART_RE.findall(expr):
            total += _offset(int(value), unit)
        return total

    parts = list(_LONG_DURATION_PART_RE.finditer(expr))
    leftover = _LONG_DURATION_PART_RE.sub("", expr).replace(" and ", " ").replace(",", " ")
    if parts and not leftover.strip():
        total = timedelta()
        for part in parts:
            offset = _offset(float(part.group("n")), part.group("unit"))
            if isinstance(offset, relativedelta):
                raise UnparseableTimeExpression(text, "months and years are not fixed durations")
            total += offset
        return total

    raise UnparseableTimeExpression(text, "expected a duration like 45m, 1h30m or 01:30")


def compute_duration(start: datetime, end: datetime) -> DurationResult:
    """Elapsed time from start to end, clamped to zero when negative.

    A negative span is reported as a NegativeDuration advisory and logged,
    since it usually means a data-entry mistake.
    """
    delta = end - start
    if delta < timedelta(0):
        advisory = NegativeDuration(start=start, end=end)
        logger.warning(advisory.message)
        return DurationResult(timedelta(0), advisory)
    return DurationResult(delta)


def format_duration(delta: timedelta) -> str:
    """Format as HH:MM:SS; hours keep counting past 24."""
    total = int(delta.total_seconds())
    sign = "-" if total < 0 else ""
    total = abs(total)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{sign}{hours:02d}:{minutes:02d}:{seconds:02d}"
