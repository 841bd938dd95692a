from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Iterator, List, Optional

from .errors import DoseValidationError
from .models import DoseInstanceDraft, Medication
from .rules import EveryXHours, Schedule, SpecificTimes, TimesPerDay

WINDOW = timedelta(minutes=30)


def _draft(
    medication: Medication, schedule: Schedule, due: datetime, window: timedelta
) -> DoseInstanceDraft:
    return DoseInstanceDraft(
        medication_id=medication.id,
        schedule_id=schedule.id,
        child_id=medication.child_id,
        due_datetime=due,
        window_start=due - window,
        window_end=due + window,
        dose_amount=medication.dose_amount,
        dose_unit=medication.dose_unit,
    )


def _days(first: date, last: date) -> Iterator[date]:
    d = first
    while d <= last:
        yield d
        d += timedelta(days=1)


def _wall_clock_dues(
    rule, now: datetime, horizon_end: datetime, tz: tzinfo
) -> Iterator[datetime]:
    first_day = max(rule.active_from, now).astimezone(tz).date()
    last_day = horizon_end.astimezone(tz).date()
    for day in _days(first_day, last_day):
        for t in rule.times:
            due = datetime.combine(day, t, tzinfo=tz).astimezone(timezone.utc)
            # no backfill: slots already past today are dropped, later days kept
            if due <= now or due < rule.active_from or due > horizon_end:
                continue
            yield due


def _interval_dues(
    rule: EveryXHours, now: datetime, horizon_end: datetime
) -> Iterator[datetime]:
    step = timedelta(hours=rule.hours)
    current = max(rule.active_from, now)
    while current <= horizon_end:
        yield current
        current += step


def generate(
    medication: Medication,
    schedule: Optional[Schedule],
    horizon_end: datetime,
    now: datetime,
    tz: tzinfo = timezone.utc,
    window: timedelta = WINDOW,
) -> List[DoseInstanceDraft]:
    """Expand a medication's active schedule into dose-instance drafts.

    Pure: the result depends only on the arguments. Wall-clock rules
    (times_per_day, specific_times) are read in `tz`. Nothing is emitted
    before `now`, before the rule's active_from, after `horizon_end`, or after
    the medication's end_datetime. A missing schedule yields no drafts.
    """
    if schedule is None:
        return []
    if medication.is_prn:
        raise DoseValidationError(
            f"medication {medication.id} is PRN and cannot have scheduled doses"
        )
    if schedule.medication_id != medication.id:
        raise DoseValidationError(
            f"schedule {schedule.id} belongs to medication {schedule.medication_id}, "
            f"not {medication.id}"
        )
    if now.tzinfo is None or horizon_end.tzinfo is None:
        raise DoseValidationError("now and horizon_end must be timezone-aware")

    if medication.end_datetime is not None:
        horizon_end = min(horizon_end, medication.end_datetime)

    rule = schedule.rule
    if isinstance(rule, (TimesPerDay, SpecificTimes)):
        dues = _wall_clock_dues(rule, now, horizon_end, tz)
    elif isinstance(rule, EveryXHours):
        dues = _interval_dues(rule, now, horizon_end)
    else:
        raise DoseValidationError(f"unsupported recurrence rule {rule!r}")

    return [_draft(medication, schedule, due, window) for due in dues]
