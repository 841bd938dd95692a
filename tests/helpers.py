from datetime import datetime, timedelta, timezone
from decimal import Decimal

from app.nk_doses.models import DoseInstanceDraft, Medication
from app.nk_doses.rules import EveryXHours, SpecificTimes, TimesPerDay

NOW = datetime(2025, 3, 10, 6, 0, tzinfo=timezone.utc)
CAREGIVER = "cg-1"
OTHER_CAREGIVER = "cg-2"


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now = self.now + timedelta(**kw)


def make_med(med_id="med-1", child_id="child-1", **kw) -> Medication:
    fields = dict(
        id=med_id,
        child_id=child_id,
        name="Amoxicillin",
        dose_amount=Decimal("5"),
        dose_unit="mL",
        route="Oral",
        is_prn=False,
        start_datetime=NOW - timedelta(days=1),
        created_by=CAREGIVER,
    )
    fields.update(kw)
    return Medication(**fields)


def draft_at(due: datetime, med_id="med-1", schedule_id="sched-x", child_id="child-1"):
    return DoseInstanceDraft(
        medication_id=med_id,
        schedule_id=schedule_id,
        child_id=child_id,
        due_datetime=due,
        window_start=due - timedelta(minutes=30),
        window_end=due + timedelta(minutes=30),
        dose_amount=Decimal("5"),
        dose_unit="mL",
    )


def every(hours, active_from=None):
    return EveryXHours(hours=hours, active_from=active_from or NOW - timedelta(hours=1))


def times_per_day(*times, active_from=None):
    return TimesPerDay(
        count=len(times), times=times, active_from=active_from or NOW - timedelta(days=1)
    )


def specific(*times, active_from=None):
    return SpecificTimes(times=times, active_from=active_from or NOW - timedelta(days=1))
