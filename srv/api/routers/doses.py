from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.nk_doses.models import DoseLog, isoformatz
from app.nk_doses.service import DoseService

from ..auth import current_caregiver, require_api_key
from ..deps import get_service
from ..errors import engine_errors

router = APIRouter(tags=["doses"], dependencies=[Depends(require_api_key)])


class ResolveBody(BaseModel):
    was_given: bool
    reason: Optional[str] = Field(
        None, description="Required when was_given is false; optional note otherwise"
    )


def log_out(log: DoseLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "dose_instance_id": log.dose_instance_id,
        "medication_id": log.medication_id,
        "child_id": log.child_id,
        "is_prn": log.is_prn,
        "amount_given": float(log.amount_given),
        "unit": log.unit,
        "given_datetime": isoformatz(log.given_datetime),
        "recorded_by": log.recorded_by,
        "was_given": log.was_given,
        "reason_given": log.reason_given,
        "reason_not_given": log.reason_not_given,
        "notes": log.notes,
    }


@router.get("/doses/due")
def due_doses(
    caregiver: str = Depends(current_caregiver),
    svc: DoseService = Depends(get_service),
) -> List[Dict[str, Any]]:
    return [m.to_dict() for m in svc.get_due_medications(caregiver)]


@router.post("/doses/{dose_instance_id}/resolve")
def resolve_dose(
    dose_instance_id: str,
    body: ResolveBody,
    caregiver: str = Depends(current_caregiver),
    svc: DoseService = Depends(get_service),
) -> Dict[str, Any]:
    with engine_errors("resolve_dose"):
        log = svc.resolve_dose(
            dose_instance_id, body.was_given, body.reason, recorded_by=caregiver
        )
    return {"status": "given" if log.was_given else "skipped", "log": log_out(log)}


@router.post("/doses/{dose_instance_id}/repair")
def repair_dose(
    dose_instance_id: str,
    svc: DoseService = Depends(get_service),
) -> Dict[str, Any]:
    with engine_errors("repair_dose"):
        status = svc.repair_instance_status(dose_instance_id)
    return {"repaired": status is not None, "status": status.value if status else None}
