from datetime import datetime
from typing import Iterable, List

from .errors import DoseValidationError
from .models import DueMedication, Urgency

OVERDUE_AFTER_MIN = 15
DUE_WITHIN_MIN = 15

_RANK = {Urgency.OVERDUE: 0, Urgency.DUE: 1, Urgency.UPCOMING: 2}


def minutes_until(now: datetime, due: datetime) -> int:
    """Whole minutes from now until due, rounded down (negative when past)."""
    if now.tzinfo is None or due.tzinfo is None:
        raise DoseValidationError("now and due must be timezone-aware")
    return int((due - now).total_seconds() // 60)


def classify(now: datetime, due: datetime) -> Urgency:
    delta = minutes_until(now, due)
    if delta <= -OVERDUE_AFTER_MIN:
        return Urgency.OVERDUE
    if delta <= DUE_WITHIN_MIN:
        return Urgency.DUE
    return Urgency.UPCOMING


def sort_due(items: Iterable[DueMedication]) -> List[DueMedication]:
    # by urgency tier, earliest due first within a tier
    return sorted(items, key=lambda m: (_RANK[m.urgency], m.due_datetime))
