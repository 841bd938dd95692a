from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.nk_doses.models import DOSE_UNITS, ROUTES
from app.nk_doses.reconciler import ReconcileResult
from app.nk_doses.rules import RULE_TYPES, build_rule, rule_to_row
from app.nk_doses.service import DoseService

from ..auth import current_caregiver, require_api_key
from ..deps import get_service
from ..errors import engine_errors
from .doses import log_out

router = APIRouter(tags=["medications"], dependencies=[Depends(require_api_key)])


class ScheduleBody(BaseModel):
    rule_type: Literal["every_x_hours", "times_per_day", "specific_times"]
    every_x_hours: Optional[int] = None
    times_per_day: Optional[int] = None
    specific_times: Optional[List[str]] = Field(
        None, description="Times of day, e.g. ['08:00', '8:00 PM']"
    )
    active_from: Optional[datetime] = Field(
        None, description="ISO timestamp; defaults to now"
    )


class StopBody(BaseModel):
    reason: str = "Stopped by user"


class PrnBody(BaseModel):
    amount: Decimal
    reason: str
    given_at: Optional[datetime] = None


def reconcile_out(r: ReconcileResult) -> Dict[str, Any]:
    return {
        "medication_id": r.medication_id,
        "deleted": r.deleted,
        "created": r.created,
        "regenerated": r.regenerated,
        "ok": r.ok,
        "error": r.error,
    }


@router.get("/medications/options")
def medication_options() -> Dict[str, List[str]]:
    """Choices offered by the medication form."""
    return {
        "dose_units": list(DOSE_UNITS),
        "routes": list(ROUTES),
        "rule_types": list(RULE_TYPES),
    }


@router.put("/medications/{medication_id}/schedule")
def save_schedule(
    medication_id: str,
    body: ScheduleBody,
    svc: DoseService = Depends(get_service),
) -> Dict[str, Any]:
    with engine_errors("save_schedule"):
        rule = build_rule(
            body.rule_type,
            body.active_from or svc.now(),
            every_x_hours=body.every_x_hours,
            times_per_day=body.times_per_day,
            specific_times=body.specific_times,
        )
        schedule, result = svc.save_schedule(medication_id, rule)
    row = rule_to_row(schedule.rule)
    row["active_from"] = row["active_from"].isoformat()
    return {"schedule_id": schedule.id, "rule": row, "reconcile": reconcile_out(result)}


@router.post("/medications/{medication_id}/stop")
def stop_medication(
    medication_id: str,
    body: Optional[StopBody] = None,
    svc: DoseService = Depends(get_service),
) -> Dict[str, Any]:
    reason = (body.reason if body else None) or "Stopped by user"
    with engine_errors("stop_medication"):
        result = svc.stop_medication(medication_id, reason=reason)
    return reconcile_out(result)


@router.post("/medications/{medication_id}/prn-doses", status_code=201)
def record_prn_dose(
    medication_id: str,
    body: PrnBody,
    caregiver: str = Depends(current_caregiver),
    svc: DoseService = Depends(get_service),
) -> Dict[str, Any]:
    with engine_errors("record_prn_dose"):
        log = svc.record_prn_dose(
            medication_id, body.amount, body.reason, caregiver, given_at=body.given_at
        )
    return log_out(log)
