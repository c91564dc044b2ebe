from __future__ import annotations

import enum
import itertools
import json
import logging
import math
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta
from dateutil.rrule import FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, rrule

from cadence.logging_config import log_with_fields

logger = logging.getLogger("cadence.recurrence")

OCCURRENCE_CEILING = 52
WEEKS_PER_MONTH = 4.33

# Weekday numbers follow the persisted convention: Sunday=0 .. Saturday=6.
_DAY_LABELS = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")
_DAY_FULL_LABELS = (
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
)
_RELATIVE_WEEKDAYS = (SU, MO, TU, WE, TH, FR, SA)

_ORDINAL_LABELS: dict[int, str] = {
    1: "1st",
    2: "2nd",
    3: "3rd",
    4: "4th",
    5: "5th",
}


class PatternKind(enum.StrEnum):
    weekly = "weekly"
    biweekly = "biweekly"
    monthly_by_date = "monthly_by_date"
    monthly_by_weekday = "monthly_by_weekday"
    custom = "custom"


@dataclass(frozen=True, slots=True)
class RecurrencePattern:
    kind: PatternKind
    # Only meaningful for `custom` (every N weeks).
    interval_weeks: int = 1
    # Only meaningful for `weekly`; empty means "the start's weekday".
    weekdays: frozenset[int] = frozenset()
    # Only meaningful for `monthly_by_weekday`; None derives it from the start date.
    week_of_month: int | None = None
    end_date: date | None = None
    max_occurrences: int | None = None


_LEGACY_TOKENS: dict[str, RecurrencePattern] = {
    "weekly": RecurrencePattern(kind=PatternKind.weekly),
    "biweekly": RecurrencePattern(kind=PatternKind.biweekly),
    "monthly": RecurrencePattern(kind=PatternKind.monthly_by_date),
    "custom": RecurrencePattern(kind=PatternKind.custom),
}


def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def resolve_timezone(name: str | None) -> tzinfo:
    tz_name = (name or "UTC").strip() or "UTC"
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def sunday_weekday(dt: datetime | date) -> int:
    # Python: Monday=0 .. Sunday=6
    return (dt.weekday() + 1) % 7


def months_between(start: datetime, end: datetime) -> int:
    """Whole months from `start` to `end`, rounded up; 0 if `end` is not later."""

    if end <= start:
        return 0
    delta = relativedelta(as_utc(end), as_utc(start))
    months = delta.years * 12 + delta.months
    if delta.days or delta.hours or delta.minutes or delta.seconds or delta.microseconds:
        months += 1
    return max(months, 0)


# -- serialization ---------------------------------------------------------


def format_pattern(pattern: RecurrencePattern) -> str:
    payload: dict[str, object] = {"kind": pattern.kind.value}
    if pattern.interval_weeks != 1:
        payload["interval_weeks"] = pattern.interval_weeks
    if pattern.weekdays:
        payload["weekdays"] = sorted(pattern.weekdays)
    if pattern.week_of_month is not None:
        payload["week_of_month"] = pattern.week_of_month
    if pattern.end_date is not None:
        payload["end_date"] = pattern.end_date.isoformat()
    if pattern.max_occurrences is not None:
        payload["max_occurrences"] = pattern.max_occurrences
    return json.dumps(payload, separators=(",", ":"))


def _optional_int(payload: Mapping[str, object], key: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return value


def _weekday_set(value: object) -> frozenset[int]:
    if value is None:
        return frozenset()
    if not isinstance(value, list):
        raise ValueError("weekdays must be a list")
    days: set[int] = set()
    for item in value:
        if isinstance(item, bool) or not isinstance(item, int):
            raise ValueError("weekdays must be integers")
        days.add(item)
    return frozenset(days)


def _parse_end_date(value: object) -> date | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError("end_date must be a string")
    try:
        return date.fromisoformat(value)
    except ValueError:
        # Older rows stored a full ISO timestamp.
        return datetime.fromisoformat(value).date()


def _pattern_from_payload(payload: Mapping[str, object]) -> RecurrencePattern:
    kind = PatternKind(str(payload["kind"]))
    interval = _optional_int(payload, "interval_weeks")
    return RecurrencePattern(
        kind=kind,
        interval_weeks=1 if interval is None else interval,
        weekdays=_weekday_set(payload.get("weekdays")),
        week_of_month=_optional_int(payload, "week_of_month"),
        end_date=_parse_end_date(payload.get("end_date")),
        max_occurrences=_optional_int(payload, "max_occurrences"),
    )


def _pattern_from_legacy_payload(payload: Mapping[str, object]) -> RecurrencePattern:
    legacy_type = str(payload["type"]).strip().lower()
    if legacy_type == "monthly":
        monthly_type = str(payload.get("monthlyType") or "date").strip().lower()
        if monthly_type == "weekday":
            kind = PatternKind.monthly_by_weekday
        else:
            kind = PatternKind.monthly_by_date
    else:
        kind = PatternKind(legacy_type)

    interval = _optional_int(payload, "interval")
    return RecurrencePattern(
        kind=kind,
        interval_weeks=1 if interval is None else interval,
        weekdays=_weekday_set(payload.get("weekdays")),
        week_of_month=_optional_int(payload, "weekOfMonth"),
        end_date=_parse_end_date(payload.get("endDate")),
        max_occurrences=_optional_int(payload, "maxOccurrences"),
    )


def parse_pattern(raw: str | None) -> RecurrencePattern | None:
    """Decode a persisted recurrence pattern.

    Accepts the JSON form written by `format_pattern`, the older camelCase JSON
    form and bare legacy tokens such as ``"weekly"``. Anything unrecognized
    returns None; persisted values are untrusted, so this never raises.
    """

    if raw is None:
        return None
    text = raw.strip()
    if not text:
        return None

    legacy = _LEGACY_TOKENS.get(text.lower())
    if legacy is not None:
        return legacy

    try:
        payload = json.loads(text)
    except ValueError:
        log_with_fields(logger, logging.WARNING, "unrecognized recurrence pattern", raw=text[:80])
        return None

    if isinstance(payload, str):
        return _LEGACY_TOKENS.get(payload.strip().lower())
    if not isinstance(payload, dict):
        log_with_fields(logger, logging.WARNING, "unrecognized recurrence pattern", raw=text[:80])
        return None

    try:
        if "kind" in payload:
            return _pattern_from_payload(payload)
        if "type" in payload:
            return _pattern_from_legacy_payload(payload)
    except (TypeError, ValueError) as exc:
        log_with_fields(
            logger,
            logging.WARNING,
            "invalid recurrence pattern",
            raw=text[:80],
            error=str(exc),
        )
        return None

    log_with_fields(logger, logging.WARNING, "unrecognized recurrence pattern", raw=text[:80])
    return None


# -- validation and labels ---------------------------------------------------


def pattern_problems(pattern: RecurrencePattern) -> list[str]:
    problems: list[str] = []
    if pattern.kind == PatternKind.custom and pattern.interval_weeks < 1:
        problems.append("Interval must be at least 1 week")
    if pattern.kind == PatternKind.weekly and any(d < 0 or d > 6 for d in pattern.weekdays):
        problems.append("Invalid weekday")
    if pattern.kind == PatternKind.monthly_by_weekday and pattern.week_of_month is not None:
        if pattern.week_of_month < 1 or pattern.week_of_month > 5:
            problems.append("Invalid week of month")
    if pattern.max_occurrences is not None and pattern.max_occurrences < 1:
        problems.append("Max occurrences must be at least 1")
    return problems


def build_pattern(
    *,
    kind: str,
    interval_weeks: int = 1,
    weekdays: Iterable[int] | None = None,
    week_of_month: int | None = None,
    end_date: date | None = None,
    max_occurrences: int | None = None,
) -> RecurrencePattern:
    """Build a pattern from user input, raising ValueError on bad parameters."""

    try:
        kind_norm = PatternKind(kind.strip().lower())
    except ValueError as exc:
        raise ValueError("Unsupported recurrence kind") from exc

    pattern = RecurrencePattern(
        kind=kind_norm,
        interval_weeks=interval_weeks,
        weekdays=frozenset(weekdays or ()),
        week_of_month=week_of_month,
        end_date=end_date,
        max_occurrences=max_occurrences,
    )
    problems = pattern_problems(pattern)
    if problems:
        raise ValueError(problems[0])
    return pattern


def describe_pattern(pattern: RecurrencePattern, start: datetime | None = None) -> str:
    """Return a short, human-readable description of a pattern."""

    if pattern.kind == PatternKind.weekly:
        if len(pattern.weekdays) > 1:
            days = ", ".join(_DAY_LABELS[d] for d in sorted(pattern.weekdays) if 0 <= d <= 6)
            return f"Weekly on {days}"
        if start is not None:
            return f"Weekly on {_DAY_LABELS[sunday_weekday(start)]}"
        return "Weekly"

    if pattern.kind == PatternKind.biweekly:
        return "Every 2 weeks"

    if pattern.kind == PatternKind.monthly_by_date:
        if start is not None:
            return f"Monthly on day {start.day}"
        return "Monthly"

    if pattern.kind == PatternKind.monthly_by_weekday:
        if start is None:
            return "Monthly"
        ordinal = pattern.week_of_month or math.ceil(start.day / 7)
        ordinal_text = _ORDINAL_LABELS.get(ordinal, str(ordinal))
        return f"Monthly on the {ordinal_text} {_DAY_FULL_LABELS[sunday_weekday(start)]}"

    if pattern.kind == PatternKind.custom:
        interval = pattern.interval_weeks
        return f"Every {interval} week{'s' if interval != 1 else ''}"

    return "Custom recurrence"


# -- expansion ----------------------------------------------------------------


def _to_calendar(dt: datetime, tz: tzinfo | None) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    if tz is not None:
        return dt.astimezone(tz)
    return dt


def _weekly_rule(
    seed: datetime, interval: int, weekdays: Iterable[int] = ()
) -> Iterator[datetime]:
    # rrule keeps the seed's tzinfo on each wall-clock result, so 10:00 stays 10:00 across DST.
    days = [_RELATIVE_WEEKDAYS[d] for d in sorted(weekdays)] or None
    rule = rrule(WEEKLY, dtstart=seed, interval=interval, byweekday=days)
    return (candidate for candidate in rule if candidate > seed)


def _month_steps(seed: datetime) -> Iterator[datetime]:
    # Always offset from the seed so a clamped month (Feb 28) does not drift later months.
    for k in itertools.count(1):
        yield seed + relativedelta(months=k)


def _nth_weekday_of_month(seed: datetime, ordinal: int) -> Iterator[datetime]:
    # Start with the month after the seed; months without that ordinal are skipped.
    weekday = _RELATIVE_WEEKDAYS[sunday_weekday(seed)]
    first = seed + relativedelta(months=1, day=1)
    return iter(rrule(MONTHLY, dtstart=first, byweekday=weekday(+ordinal)))


def _candidates(seed: datetime, pattern: RecurrencePattern) -> Iterator[datetime]:
    match pattern.kind:
        case PatternKind.weekly:
            return _weekly_rule(seed, 1, pattern.weekdays)
        case PatternKind.biweekly:
            return _weekly_rule(seed, 2)
        case PatternKind.custom:
            return _weekly_rule(seed, pattern.interval_weeks)
        case PatternKind.monthly_by_date:
            return _month_steps(seed)
        case PatternKind.monthly_by_weekday:
            ordinal = pattern.week_of_month or math.ceil(seed.day / 7)
            return _nth_weekday_of_month(seed, ordinal)
        case _:
            return iter(())


def occurrence_limit(
    pattern: RecurrencePattern,
    horizon_months: int,
    *,
    ceiling: int = OCCURRENCE_CEILING,
) -> int:
    limit = min(ceiling, math.ceil(horizon_months * WEEKS_PER_MONTH))
    if pattern.max_occurrences is not None:
        limit = min(limit, pattern.max_occurrences)
    return max(limit, 0)


def expand(
    start: datetime,
    pattern: RecurrencePattern,
    horizon_months: int = 6,
    *,
    after: datetime | None = None,
    until: datetime | None = None,
    tz: tzinfo | None = None,
    ceiling: int = OCCURRENCE_CEILING,
) -> list[datetime]:
    """Expand a pattern into the occurrence instants that follow `start`.

    `start` itself is never emitted. Stepping happens in the wall-clock calendar
    of `tz` (or of `start` when no zone is given), so a weekly 10:00 service
    stays at 10:00 local across DST changes. Expansion stops at the first of:
    the pattern's end date, its max occurrence count, the safety ceiling, or
    `horizon_months` after `start` when the pattern has no end date. `until`
    adds an extra hard stop, and candidates at or before `after` are skipped
    without counting toward any limit.

    Invalid patterns yield an empty list rather than raising.
    """

    problems = pattern_problems(pattern)
    if problems:
        log_with_fields(
            logger,
            logging.WARNING,
            "recurrence pattern rejected",
            kind=pattern.kind,
            problems="; ".join(problems),
        )
        return []

    limit = occurrence_limit(pattern, horizon_months, ceiling=ceiling)
    if limit == 0:
        return []

    seed = _to_calendar(start, tz)
    if pattern.end_date is not None:
        bound = datetime.combine(pattern.end_date, time.max, tzinfo=seed.tzinfo)
    else:
        bound = seed + relativedelta(months=horizon_months)
    if until is not None:
        bound = min(bound, _to_calendar(until, tz))
    floor = _to_calendar(after, tz) if after is not None else None

    out: list[datetime] = []
    for candidate in _candidates(seed, pattern):
        if candidate > bound:
            break
        if floor is not None and candidate <= floor:
            continue
        if out and candidate <= out[-1]:
            continue
        out.append(candidate)
        if len(out) >= limit:
            break
    return out
