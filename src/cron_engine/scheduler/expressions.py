"""Cron expression parsing and next-run calculation.

Expressions use the standard five fields ``minute hour day-of-month month
day-of-week``. Each field parses into the sorted set of integers it admits;
the calculator then searches forward field by field (month, day, hour,
minute) instead of testing every minute.
"""

from __future__ import annotations

import bisect
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone as dt_timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..core.logger import get_logger

logger = get_logger("scheduler.expressions")

UTC = dt_timezone.utc

# Upper bound of the forward search, in candidate minutes (one leap year)
MAX_SEARCH_MINUTES = 366 * 24 * 60


class InvalidCronError(ValueError):
    """Raised when a cron expression cannot be parsed."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NoRunFoundError(RuntimeError):
    """Raised when an expression has no occurrence within the search window."""


@dataclass(frozen=True)
class FieldSpec:
    name: str
    min_value: int
    max_value: int
    aliases: dict[str, int] = field(default_factory=dict)

    @property
    def domain(self) -> range:
        return range(self.min_value, self.max_value + 1)


MONTH_NAMES = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

DAY_NAMES = {"sun": 0, "mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6}

CRON_FIELDS = [
    FieldSpec("minute", 0, 59),
    FieldSpec("hour", 0, 23),
    FieldSpec("day-of-month", 1, 31),
    FieldSpec("month", 1, 12, MONTH_NAMES),
    FieldSpec("day-of-week", 0, 6, DAY_NAMES),
]

CRON_PRESETS = {
    "every_minute": "* * * * *",
    "every_5_minutes": "*/5 * * * *",
    "every_15_minutes": "*/15 * * * *",
    "every_30_minutes": "*/30 * * * *",
    "every_hour": "0 * * * *",
    "every_2_hours": "0 */2 * * *",
    "every_6_hours": "0 */6 * * *",
    "every_12_hours": "0 */12 * * *",
    "every_day_at_midnight": "0 0 * * *",
    "every_day_at_noon": "0 12 * * *",
    "every_weekday_at_midnight": "0 0 * * 1-5",
    "every_sunday_at_midnight": "0 0 * * 0",
    "first_day_of_month": "0 0 1 * *",
}

PRESET_DESCRIPTIONS = {
    "* * * * *": "Every minute",
    "*/5 * * * *": "Every 5 minutes",
    "*/15 * * * *": "Every 15 minutes",
    "*/30 * * * *": "Every 30 minutes",
    "0 * * * *": "Every hour",
    "0 */2 * * *": "Every 2 hours",
    "0 */6 * * *": "Every 6 hours",
    "0 */12 * * *": "Every 12 hours",
    "0 0 * * *": "Every day at midnight",
    "0 12 * * *": "Every day at noon",
    "0 0 * * 1-5": "Every weekday at midnight",
    "0 0 * * 0": "Every Sunday at midnight",
    "0 0 * * 1": "Every Monday at midnight",
    "0 0 1 * *": "First day of every month",
}

_MONTH_LABELS = [
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
]
_DAY_LABELS = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

_NAME_RE = re.compile(r"[a-z]+")


@dataclass(frozen=True)
class CronField:
    """The admissible values of one cron field, sorted ascending."""

    values: tuple[int, ...]
    is_wildcard: bool = False

    def __contains__(self, value: object) -> bool:
        if not isinstance(value, int):
            return False
        index = bisect.bisect_left(self.values, value)
        return index < len(self.values) and self.values[index] == value

    def next_value(self, current: int) -> tuple[int, bool]:
        """Return the smallest admissible value >= ``current``.

        When no such value exists the first value is returned together with
        ``True`` to signal that the caller has to carry into the next unit.
        """
        index = bisect.bisect_left(self.values, current)
        if index < len(self.values):
            return self.values[index], False
        return self.values[0], True


@dataclass(frozen=True)
class CronExpression:
    """A parsed five-field cron expression."""

    minute: CronField
    hour: CronField
    day_of_month: CronField
    month: CronField
    day_of_week: CronField
    source: str = ""

    def day_matches(self, moment: datetime) -> bool:
        """Evaluate the day-of-month / day-of-week rule for ``moment``'s date.

        A restricted field decides alone when the other is a wildcard. When
        both are restricted a day qualifies if either of them matches.
        """
        dom_restricted = not self.day_of_month.is_wildcard
        dow_restricted = not self.day_of_week.is_wildcard
        dom_match = moment.day in self.day_of_month
        dow_match = cron_weekday(moment) in self.day_of_week

        if dom_restricted and dow_restricted:
            return dom_match or dow_match
        if dom_restricted:
            return dom_match
        if dow_restricted:
            return dow_match
        return True

    def matches(self, moment: datetime) -> bool:
        return matches(self, moment)

    def next_run(self, after: datetime) -> datetime:
        return next_run(self, after)

    def __str__(self) -> str:
        return self.source


def cron_weekday(moment: datetime) -> int:
    """Day of week in cron numbering (Sunday=0 ... Saturday=6)."""
    return moment.isoweekday() % 7


def _parse_value(text: str, spec: FieldSpec, element: str) -> int:
    if not (text.isascii() and text.isdigit()):
        raise InvalidCronError(f"invalid value in {spec.name}: {element}", spec.name)
    value = int(text)
    if value < spec.min_value or value > spec.max_value:
        raise InvalidCronError(
            f"value out of range in {spec.name}: {value} "
            f"(allowed {spec.min_value}-{spec.max_value})",
            spec.name,
        )
    return value


def _parse_range(text: str, spec: FieldSpec, element: str) -> tuple[int, int]:
    start_text, _, end_text = text.partition("-")
    start = _parse_value(start_text, spec, element)
    end = _parse_value(end_text, spec, element)
    if start > end:
        raise InvalidCronError(
            f"invalid range in {spec.name}: {element} (start > end)", spec.name
        )
    return start, end


def _parse_step(text: str, spec: FieldSpec) -> int:
    if not (text.isascii() and text.isdigit()):
        raise InvalidCronError(f"invalid step value in {spec.name}: {text}", spec.name)
    step = int(text)
    if step < 1:
        raise InvalidCronError(f"invalid step value in {spec.name}: {text}", spec.name)
    return step


def _parse_element(element: str, spec: FieldSpec) -> range:
    if not element:
        raise InvalidCronError(f"invalid value in {spec.name}: empty list element", spec.name)

    if "/" in element:
        base, _, step_text = element.partition("/")
        step = _parse_step(step_text, spec)
        if base == "*":
            start, end = spec.min_value, spec.max_value
        elif "-" in base:
            start, end = _parse_range(base, spec, element)
        else:
            start, end = _parse_value(base, spec, element), spec.max_value
        return range(start, end + 1, step)

    if element == "*":
        return spec.domain

    if "-" in element:
        start, end = _parse_range(element, spec, element)
        return range(start, end + 1)

    value = _parse_value(element, spec, element)
    return range(value, value + 1)


def _substitute_names(text: str, spec: FieldSpec) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group(0)
        if name not in spec.aliases:
            raise InvalidCronError(f"invalid value in {spec.name}: {name}", spec.name)
        return str(spec.aliases[name])

    return _NAME_RE.sub(replace, text)


def _parse_field(raw: str, spec: FieldSpec) -> CronField:
    text = raw.lower()
    if text == "*":
        return CronField(tuple(spec.domain), is_wildcard=True)

    if spec.aliases:
        text = _substitute_names(text, spec)

    values: set[int] = set()
    for element in text.split(","):
        values.update(_parse_element(element, spec))

    if not values:
        raise InvalidCronError(f"no admissible values in {spec.name}: {raw}", spec.name)
    return CronField(tuple(sorted(values)))


def parse_cron_expression(expression: str) -> CronExpression:
    """Parse a five-field cron expression.

    Args:
        expression: Cron expression, e.g. ``"*/15 9-17 * * mon-fri"``

    Returns:
        The parsed expression.

    Raises:
        InvalidCronError: On a wrong field count, an out-of-range value, an
            inverted range, a non-positive step or an unparseable token.
    """
    if not isinstance(expression, str):
        raise InvalidCronError("cron expression must be a string")

    parts = expression.split()
    if len(parts) != 5:
        raise InvalidCronError(
            "invalid cron expression: expected 5 fields "
            f"(minute hour day-of-month month day-of-week), got {len(parts)}"
        )

    minute, hour, day_of_month, month, day_of_week = (
        _parse_field(part, spec) for part, spec in zip(parts, CRON_FIELDS, strict=True)
    )
    return CronExpression(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month=month,
        day_of_week=day_of_week,
        source=" ".join(parts),
    )


def matches(expr: CronExpression, moment: datetime) -> bool:
    """Return True when ``moment`` (wall clock, seconds ignored) is an occurrence."""
    return (
        moment.minute in expr.minute
        and moment.hour in expr.hour
        and moment.month in expr.month
        and expr.day_matches(moment)
    )


def next_run(expr: CronExpression, after: datetime) -> datetime:
    """Return the first occurrence strictly after ``after``, truncated to the minute.

    The search runs on ``after``'s wall clock; an attached tzinfo is kept
    but not used for DST arithmetic (see :func:`compute_next_run`).

    Raises:
        NoRunFoundError: If nothing matches within one year of ``after``.
    """
    candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    limit = candidate + timedelta(minutes=MAX_SEARCH_MINUTES)

    for _ in range(MAX_SEARCH_MINUTES):
        if candidate > limit:
            break

        if candidate.month not in expr.month:
            month, wrapped = expr.month.next_value(candidate.month)
            candidate = candidate.replace(
                year=candidate.year + 1 if wrapped else candidate.year,
                month=month,
                day=1,
                hour=0,
                minute=0,
            )
            continue

        if not expr.day_matches(candidate):
            candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
            continue

        if candidate.hour not in expr.hour:
            hour, wrapped = expr.hour.next_value(candidate.hour)
            if wrapped:
                candidate = (candidate + timedelta(days=1)).replace(hour=hour, minute=0)
            else:
                candidate = candidate.replace(hour=hour, minute=0)
            continue

        if candidate.minute not in expr.minute:
            minute, wrapped = expr.minute.next_value(candidate.minute)
            if wrapped:
                # Carry into the next hour and re-check it from the top
                candidate = candidate.replace(minute=0) + timedelta(hours=1)
                continue
            return candidate.replace(minute=minute)

        return candidate

    raise NoRunFoundError(
        f"no occurrence of '{expr.source}' within one year after {after.isoformat()}"
    )


def get_zone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name.

    Raises:
        ValueError: If the zone is unknown.
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        raise ValueError(f"unknown timezone: {name}") from None


def compute_next_run(
    schedule: str | CronExpression,
    timezone: str = "UTC",
    after: datetime | None = None,
) -> datetime:
    """Compute the next occurrence of ``schedule`` in ``timezone``.

    The calculator runs on the zone's wall clock; the result is converted
    back to an aware UTC instant. Naive ``after`` values are taken as UTC.

    Raises:
        InvalidCronError: If ``schedule`` does not parse.
        NoRunFoundError: If no occurrence exists within a year.
        ValueError: If ``timezone`` is unknown.
    """
    zone = get_zone(timezone)
    expr = schedule if isinstance(schedule, CronExpression) else parse_cron_expression(schedule)

    reference = after or datetime.now(UTC)
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=UTC)

    start = reference.astimezone(zone).replace(tzinfo=None)
    limit = start + timedelta(minutes=MAX_SEARCH_MINUTES + 1)
    local = start
    while True:
        local = next_run(expr, local)
        if local > limit:
            raise NoRunFoundError(
                f"no occurrence of '{expr.source}' in {timezone} after {reference.isoformat()}"
            )
        # Ambiguous wall times take their first offset (fold=0), which is not
        # after a reference inside the repeated hour
        candidate = local.replace(tzinfo=zone, fold=0).astimezone(UTC)
        if candidate > reference:
            return candidate


def _join_labels(field_text: str, labels: list[str], offset: int) -> str:
    items = field_text.split(",")
    if all(item.isdigit() for item in items):
        names = [
            labels[int(item) - offset] for item in items if 0 <= int(item) - offset < len(labels)
        ]
        if len(names) == len(items):
            return ", ".join(names)
    return field_text


class CronExpressionParser:
    """Facade over the parser, the calculator and the describer."""

    @classmethod
    def parse(cls, expression: str) -> CronExpression:
        return parse_cron_expression(expression)

    @classmethod
    def validate(cls, expression: str) -> tuple[bool, str | None]:
        try:
            parse_cron_expression(expression)
        except InvalidCronError as exc:
            return False, str(exc)
        return True, None

    @classmethod
    def describe(cls, expression: str) -> str:
        """Best-effort human-readable rendering of a schedule.

        Never used for dispatch decisions.
        """
        valid, _ = cls.validate(expression)
        if not valid:
            return "Invalid schedule"

        normalized = " ".join(expression.split()).lower()
        if normalized in PRESET_DESCRIPTIONS:
            return PRESET_DESCRIPTIONS[normalized]

        minute, hour, day, month, dow = normalized.split()
        desc = []
        if minute == "*" and hour == "*":
            desc.append("Every minute")
        elif minute.startswith("*/") and hour == "*":
            desc.append(f"Every {minute[2:]} minutes")
        elif minute.isdigit() and hour == "*":
            desc.append(f"At minute {minute} past every hour")
        elif minute.isdigit() and hour.isdigit():
            desc.append(f"At {hour.zfill(2)}:{minute.zfill(2)}")
        elif minute.isdigit() and hour.startswith("*/"):
            desc.append(f"At minute {minute} past every {hour[2:]} hours")
        else:
            desc.append(f"At minute {minute} past hour {hour}")

        if day != "*" and dow != "*":
            desc.append(f"on day-of-month {day} or on {_join_labels(dow, _DAY_LABELS, 0)}")
        elif day != "*":
            desc.append(f"on day-of-month {day}")
        elif dow != "*":
            desc.append(f"on {_join_labels(dow, _DAY_LABELS, 0)}")
        if month != "*":
            desc.append(f"in {_join_labels(month, _MONTH_LABELS, 1)}")
        return " ".join(desc)

    @classmethod
    def get_next_n_runs(
        cls,
        expression: str,
        n: int = 5,
        timezone: str = "UTC",
        after: datetime | None = None,
    ) -> list[datetime]:
        try:
            expr = parse_cron_expression(expression)
            run_times: list[datetime] = []
            current = after
            for _ in range(n):
                current = compute_next_run(expr, timezone, after=current)
                run_times.append(current)
            return run_times
        except (InvalidCronError, NoRunFoundError, ValueError) as e:
            logger.error(f"Failed to calculate next runs: {e}")
            return []


__all__ = [
    "CRON_FIELDS",
    "CRON_PRESETS",
    "MAX_SEARCH_MINUTES",
    "CronExpression",
    "CronExpressionParser",
    "CronField",
    "FieldSpec",
    "InvalidCronError",
    "NoRunFoundError",
    "compute_next_run",
    "cron_weekday",
    "get_zone",
    "matches",
    "next_run",
    "parse_cron_expression",
]
