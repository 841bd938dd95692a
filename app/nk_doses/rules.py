"""Recurrence rules: how often a scheduled medication is due.

A rule is one of three frozen dataclasses. Each validates itself on
construction, so a rule object that exists is always well formed:

    EveryXHours(hours=8, active_from=...)
    TimesPerDay(count=2, times=(time(8), time(20)), active_from=...)
    SpecificTimes(times=(time(9), time(21)), active_from=...)

Rows in medication_schedules keep the three shapes in nullable sibling
columns (rule_type, every_x_hours, times_per_day, specific_times);
`rule_from_row` / `rule_to_row` convert between the two.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, time
from typing import Iterable, List, Optional, Tuple, Union

from .errors import ScheduleValidationError
from .models import parse_ts

MAX_EVERY_X_HOURS = 24
MAX_TIMES_PER_DAY = 5

_AMPM_RE = re.compile(r"^(\d{1,2}):?(\d{0,2})\s*(AM|PM)$", re.IGNORECASE)
_24H_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
_HOUR_RE = re.compile(r"^(\d{1,2})$")


def parse_time_of_day(value: Union[str, time]) -> time:
    """Accepts '14:30', '08:00', '8:00 AM', '2:30pm', '8' and returns a time."""
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    s = str(value).strip()

    m = _AMPM_RE.match(s)
    if m:
        hour = int(m.group(1))
        minute = int(m.group(2) or 0)
        if not (1 <= hour <= 12) or not (0 <= minute <= 59):
            raise ScheduleValidationError(f"invalid time {value!r}")
        ampm = m.group(3).upper()
        if ampm == "PM" and hour != 12:
            hour += 12
        elif ampm == "AM" and hour == 12:
            hour = 0
        return time(hour, minute)

    m = _24H_RE.match(s)
    if m:
        hour, minute = int(m.group(1)), int(m.group(2))
        if not (0 <= hour <= 23) or not (0 <= minute <= 59):
            raise ScheduleValidationError(f"invalid time {value!r}")
        return time(hour, minute)

    m = _HOUR_RE.match(s)
    if m and 0 <= int(m.group(1)) <= 23:
        return time(int(m.group(1)), 0)

    raise ScheduleValidationError(
        f"invalid time format {value!r}; use formats like '8:00 AM', '14:30' or '8'"
    )


def parse_times(values: Iterable[Union[str, time]]) -> Tuple[time, ...]:
    """Parse, reject duplicates, and sort a list of times of day."""
    if isinstance(values, str):
        values = [v for v in values.split(",") if v.strip()]
    parsed = [parse_time_of_day(v) for v in values]
    if not parsed:
        raise ScheduleValidationError("at least one time of day is required")
    if len(set(parsed)) != len(parsed):
        raise ScheduleValidationError("duplicate times of day")
    return tuple(sorted(parsed))


def format_time(t: time) -> str:
    return f"{t.hour:02d}:{t.minute:02d}"


def _check_active_from(active_from) -> datetime:
    if active_from is None:
        raise ScheduleValidationError("active_from is required")
    try:
        return parse_ts(active_from)
    except (TypeError, ValueError):
        raise ScheduleValidationError(f"invalid active_from {active_from!r}")


@dataclass(frozen=True)
class EveryXHours:
    hours: int
    active_from: datetime

    rule_type = "every_x_hours"

    def __post_init__(self):
        if isinstance(self.hours, bool) or not isinstance(self.hours, int):
            raise ScheduleValidationError(f"hours must be an integer, got {self.hours!r}")
        if not (1 <= self.hours <= MAX_EVERY_X_HOURS):
            raise ScheduleValidationError(
                f"hours must be between 1 and {MAX_EVERY_X_HOURS}, got {self.hours}"
            )
        object.__setattr__(self, "active_from", _check_active_from(self.active_from))


@dataclass(frozen=True)
class TimesPerDay:
    count: int
    times: Tuple[time, ...]
    active_from: datetime

    rule_type = "times_per_day"

    def __post_init__(self):
        if isinstance(self.count, bool) or not isinstance(self.count, int):
            raise ScheduleValidationError(f"count must be an integer, got {self.count!r}")
        if not (1 <= self.count <= MAX_TIMES_PER_DAY):
            raise ScheduleValidationError(
                f"times per day must be between 1 and {MAX_TIMES_PER_DAY}, got {self.count}"
            )
        times = parse_times(self.times)
        if len(times) != self.count:
            raise ScheduleValidationError(
                f"times per day is {self.count} but {len(times)} times were given"
            )
        object.__setattr__(self, "times", times)
        object.__setattr__(self, "active_from", _check_active_from(self.active_from))


@dataclass(frozen=True)
class SpecificTimes:
    times: Tuple[time, ...]
    active_from: datetime

    rule_type = "specific_times"

    def __post_init__(self):
        object.__setattr__(self, "times", parse_times(self.times))
        object.__setattr__(self, "active_from", _check_active_from(self.active_from))


RecurrenceRule = Union[EveryXHours, TimesPerDay, SpecificTimes]

RULE_TYPES = (EveryXHours.rule_type, TimesPerDay.rule_type, SpecificTimes.rule_type)


@dataclass(frozen=True)
class Schedule:
    """The single active schedule row of a medication."""

    id: str
    medication_id: str
    rule: RecurrenceRule


def build_rule(
    rule_type: str,
    active_from,
    every_x_hours: Optional[int] = None,
    times_per_day: Optional[int] = None,
    specific_times=None,
) -> RecurrenceRule:
    if rule_type == EveryXHours.rule_type:
        if every_x_hours is None:
            raise ScheduleValidationError("every_x_hours is required")
        return EveryXHours(hours=every_x_hours, active_from=active_from)
    if rule_type == TimesPerDay.rule_type:
        if times_per_day is None:
            raise ScheduleValidationError("times_per_day is required")
        return TimesPerDay(
            count=times_per_day, times=specific_times or (), active_from=active_from
        )
    if rule_type == SpecificTimes.rule_type:
        return SpecificTimes(times=specific_times or (), active_from=active_from)
    raise ScheduleValidationError(f"unknown rule_type {rule_type!r}")


def rule_from_row(row: dict) -> RecurrenceRule:
    times = row.get("specific_times")
    # stored as jsonb; older rows hold a JSON-encoded string
    if isinstance(times, str):
        try:
            times = json.loads(times)
        except ValueError:
            raise ScheduleValidationError(f"unreadable specific_times {times!r}")
    return build_rule(
        row["rule_type"],
        row["active_from"],
        every_x_hours=row.get("every_x_hours"),
        times_per_day=row.get("times_per_day"),
        specific_times=times,
    )


def rule_to_row(rule: RecurrenceRule) -> dict:
    row = {
        "rule_type": rule.rule_type,
        "every_x_hours": None,
        "times_per_day": None,
        "specific_times": None,
        "active_from": rule.active_from,
    }
    if isinstance(rule, EveryXHours):
        row["every_x_hours"] = rule.hours
    else:
        row["specific_times"] = [format_time(t) for t in rule.times]
        if isinstance(rule, TimesPerDay):
            row["times_per_day"] = rule.count
    return row


def describe(rule: RecurrenceRule) -> str:
    if isinstance(rule, EveryXHours):
        return f"every {rule.hours}h"
    times: List[str] = [format_time(t) for t in rule.times]
    return f"{rule.rule_type} {','.join(times)}"
