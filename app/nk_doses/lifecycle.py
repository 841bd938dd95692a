"""Dose instance lifecycle: pending -> given | skipped.

The dose log is the record of what happened; the instance status is a
projection of it. So the log is written first, and the status is only
moved once the log exists. On a store that cannot wrap both in one
transaction (`store.atomic` is False) a failed status update leaves a log
next to a pending instance; that is raised as DoseInconsistencyError and
fixed by `repair_status`, which never writes a log.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from .errors import (
    DoseInconsistencyError,
    DoseNotFoundError,
    DoseValidationError,
    InvalidTransitionError,
)
from .models import DoseInstance, DoseLog, DoseStatus
from .store import DoseStore

logger = logging.getLogger("nk.doses.lifecycle")


def _clean(reason: Optional[str]) -> Optional[str]:
    if reason is None:
        return None
    reason = reason.strip()
    return reason or None


def status_for(log: DoseLog) -> DoseStatus:
    return DoseStatus.GIVEN if log.was_given else DoseStatus.SKIPPED


def build_log(
    instance: DoseInstance,
    was_given: bool,
    reason: Optional[str],
    recorded_by: str,
    now: datetime,
) -> DoseLog:
    return DoseLog(
        dose_instance_id=instance.id,
        medication_id=instance.medication_id,
        child_id=instance.child_id,
        is_prn=False,
        amount_given=instance.dose_amount if was_given else Decimal("0"),
        unit=instance.dose_unit,
        given_datetime=now,
        recorded_by=recorded_by,
        was_given=was_given,
        reason_not_given=None if was_given else reason,
        notes=reason if was_given else None,
    )


def resolve(
    store: DoseStore,
    instance_id: str,
    was_given: bool,
    reason: Optional[str],
    recorded_by: str,
    now: datetime,
) -> DoseLog:
    reason = _clean(reason)
    if not was_given and not reason:
        raise DoseValidationError("a reason is required when a dose was not given")
    if not recorded_by:
        raise DoseValidationError("recorded_by is required")

    instance = store.get_instance(instance_id)
    if instance is None:
        raise DoseNotFoundError(f"dose instance {instance_id} not found")
    if instance.status != DoseStatus.PENDING:
        raise InvalidTransitionError(
            f"dose instance {instance_id} is already {instance.status.value}"
        )
    existing = store.find_log_for_instance(instance_id)
    if existing is not None:
        # an earlier attempt logged but never moved the status
        raise DoseInconsistencyError(instance_id, existing.id)

    target = DoseStatus.GIVEN if was_given else DoseStatus.SKIPPED
    log = build_log(instance, was_given, reason, recorded_by, now)

    with store.transaction():
        saved = store.insert_log(log)
        try:
            updated = store.update_instance_status(instance_id, target)
        except Exception as e:
            if store.atomic:
                raise
            logger.error(
                "dose_status_inconsistent instance=%s log=%s error=%s",
                instance_id,
                saved.id,
                e,
            )
            raise DoseInconsistencyError(instance_id, saved.id) from e
        if not updated:
            if store.atomic:
                # rolls the log back with the transaction
                raise InvalidTransitionError(
                    f"dose instance {instance_id} was resolved concurrently"
                )
            logger.error(
                "dose_status_inconsistent instance=%s log=%s error=not_pending",
                instance_id,
                saved.id,
            )
            raise DoseInconsistencyError(instance_id, saved.id)

    logger.info(
        "dose_resolved instance=%s status=%s log=%s by=%s",
        instance_id,
        target.value,
        saved.id,
        recorded_by,
    )
    return saved


def repair_status(store: DoseStore, instance_id: str) -> Optional[DoseStatus]:
    """Bring a pending instance's status in line with its existing log.

    Returns the status written, or None when there was nothing to do
    (no log yet, or the instance is already resolved).
    """
    instance = store.get_instance(instance_id)
    if instance is None:
        raise DoseNotFoundError(f"dose instance {instance_id} not found")
    if instance.status != DoseStatus.PENDING:
        return None
    log = store.find_log_for_instance(instance_id)
    if log is None:
        return None
    target = status_for(log)
    if not store.update_instance_status(instance_id, target):
        return None
    logger.info(
        "dose_status_repaired instance=%s status=%s log=%s",
        instance_id,
        target.value,
        log.id,
    )
    return target


def record_prn(
    store: DoseStore,
    medication_id: str,
    amount,
    reason: Optional[str],
    recorded_by: str,
    given_at: datetime,
) -> DoseLog:
    """Log an as-needed dose. There is no instance behind it."""
    try:
        amount = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise DoseValidationError(f"invalid dose amount {amount!r}")
    if not amount.is_finite() or amount <= 0:
        raise DoseValidationError("dose amount must be greater than 0")
    reason = _clean(reason)
    if not reason:
        raise DoseValidationError("a reason is required for a PRN dose")
    if not recorded_by:
        raise DoseValidationError("recorded_by is required")

    med = store.get_medication(medication_id)
    if med is None:
        raise DoseNotFoundError(f"medication {medication_id} not found")
    if not med.is_prn:
        raise DoseValidationError(f"medication {medication_id} is not a PRN medication")
    if not med.active:
        raise DoseValidationError(f"medication {medication_id} has been stopped")

    saved = store.insert_log(
        DoseLog(
            medication_id=med.id,
            child_id=med.child_id,
            is_prn=True,
            amount_given=amount,
            unit=med.dose_unit,
            given_datetime=given_at,
            recorded_by=recorded_by,
            was_given=True,
            reason_given=reason,
        )
    )
    logger.info(
        "prn_dose_recorded medication=%s log=%s amount=%s%s by=%s",
        medication_id,
        saved.id,
        amount,
        med.dose_unit,
        recorded_by,
    )
    return saved
