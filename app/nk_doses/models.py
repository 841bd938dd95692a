from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from dateutil import parser as dtparser

DOSE_UNITS = (
    "mg",
    "g",
    "ml",
    "mL",
    "tsp",
    "tbsp",
    "drops",
    "puffs",
    "units",
    "tablets",
    "capsules",
    "ND",
    "application",
)

ROUTES = (
    "Oral",
    "Via nasogastic tube",
    "Via nasojejeunal tube",
    "Via gastric tube",
    "Sublingual",
    "Subcutaneous",
    "Intravenous",
    "Transdermal",
)


class DoseStatus(str, Enum):
    PENDING = "pending"
    GIVEN = "given"
    SKIPPED = "skipped"


class Urgency(str, Enum):
    OVERDUE = "overdue"
    DUE = "due"
    UPCOMING = "upcoming"


def parse_ts(value: Union[str, datetime]) -> datetime:
    """Parse an ISO timestamp (or pass a datetime through) as an aware UTC datetime.
    Naive values are taken to be UTC, matching how the tables store timestamptz.
    """
    dt = value if isinstance(value, datetime) else dtparser.isoparse(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformatz(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Medication:
    id: str
    child_id: str
    name: str
    dose_amount: Decimal
    dose_unit: str
    route: str = "Oral"
    is_prn: bool = False
    start_datetime: Optional[datetime] = None
    end_datetime: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    stopped_reason: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.archived_at is None


@dataclass(frozen=True)
class DoseInstanceDraft:
    """A due-time produced by the generator, not yet persisted.
    dose_amount/dose_unit are copied from the medication and never change after."""

    medication_id: str
    schedule_id: str
    child_id: str
    due_datetime: datetime
    window_start: datetime
    window_end: datetime
    dose_amount: Decimal
    dose_unit: str


@dataclass
class DoseInstance:
    id: str
    medication_id: str
    schedule_id: str
    child_id: str
    due_datetime: datetime
    window_start: datetime
    window_end: datetime
    dose_amount: Decimal
    dose_unit: str
    status: DoseStatus = DoseStatus.PENDING

    @classmethod
    def from_draft(cls, id: str, draft: DoseInstanceDraft) -> "DoseInstance":
        return cls(
            id=id,
            medication_id=draft.medication_id,
            schedule_id=draft.schedule_id,
            child_id=draft.child_id,
            due_datetime=draft.due_datetime,
            window_start=draft.window_start,
            window_end=draft.window_end,
            dose_amount=draft.dose_amount,
            dose_unit=draft.dose_unit,
        )

    def with_status(self, status: DoseStatus) -> "DoseInstance":
        return replace(self, status=status)


@dataclass(frozen=True)
class DoseLog:
    medication_id: str
    child_id: str
    amount_given: Decimal
    unit: str
    given_datetime: datetime
    recorded_by: str
    was_given: bool
    is_prn: bool = False
    dose_instance_id: Optional[str] = None
    reason_given: Optional[str] = None
    reason_not_given: Optional[str] = None
    notes: Optional[str] = None
    id: Optional[str] = None


@dataclass
class DueMedication:
    """One row of the caregiver's due list."""

    dose_instance_id: str
    medication_id: str
    name: str
    child_id: str
    child_name: str
    due_datetime: datetime
    dose_amount: Decimal
    dose_unit: str
    urgency: Urgency = Urgency.UPCOMING
    minutes_until_due: int = 0

    def to_dict(self) -> dict:
        return {
            "dose_instance_id": self.dose_instance_id,
            "medication_id": self.medication_id,
            "name": self.name,
            "child_id": self.child_id,
            "child_name": self.child_name,
            "due_datetime": isoformatz(self.due_datetime),
            "dose_amount": float(self.dose_amount),
            "dose_unit": self.dose_unit,
            "urgency": self.urgency.value,
            "minutes_until_due": self.minutes_until_due,
        }
