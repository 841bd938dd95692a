import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .maintainer import HorizonMaintainer
from .store import DoseStore

logger = logging.getLogger("nk.doses.reconciler")


@dataclass
class ReconcileResult:
    medication_id: str
    deleted: int = 0
    created: int = 0
    regenerated: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RescheduleReconciler:
    """Drops pending future instances of one medication after its schedule
    changed (then regenerates) or after it was stopped (no regeneration).
    Instances due before now, and anything already given or skipped, stay.
    """

    def __init__(self, store: DoseStore, maintainer: HorizonMaintainer):
        self.store = store
        self.maintainer = maintainer

    def _delete_future(self, result: ReconcileResult, now: datetime) -> bool:
        try:
            result.deleted = self.store.delete_pending_from(result.medication_id, now)
            return True
        except Exception as e:
            result.error = f"delete failed: {e}"
            logger.exception(
                "reconcile_delete_failed medication=%s", result.medication_id
            )
            return False

    def on_schedule_saved(self, medication_id: str, now: datetime) -> ReconcileResult:
        result = ReconcileResult(medication_id=medication_id)
        if not self._delete_future(result, now):
            return result
        try:
            sm = self.store.get_scheduled_medication(medication_id)
            if sm is None:
                # PRN, archived or unscheduled: nothing to generate
                logger.info("reconcile_no_schedule medication=%s", medication_id)
            else:
                result.created = self.maintainer.top_up(sm, now)
                result.regenerated = True
        except Exception as e:
            result.error = f"regeneration failed: {e}"
            logger.exception("reconcile_generation_failed medication=%s", medication_id)
            return result
        logger.info(
            "reconcile_schedule medication=%s deleted=%d created=%d",
            medication_id,
            result.deleted,
            result.created,
        )
        return result

    def on_medication_stopped(self, medication_id: str, now: datetime) -> ReconcileResult:
        result = ReconcileResult(medication_id=medication_id)
        if self._delete_future(result, now):
            logger.info(
                "reconcile_stopped medication=%s deleted=%d",
                medication_id,
                result.deleted,
            )
        return result
