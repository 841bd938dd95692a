"""Entry points the API layer calls.

    svc = DoseService.from_settings(Settings.from_env())
    svc.get_due_medications(caregiver_id)
    svc.resolve_dose(instance_id, was_given=True, reason=None, recorded_by=caregiver_id)
    svc.save_schedule(medication_id, rule)      # edit -> reconcile + regenerate
    svc.stop_medication(medication_id)          # archive -> reconcile
    svc.record_prn_dose(medication_id, 2.5, "fever", caregiver_id)

`clock` is injectable so tests pin "now".
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from . import lifecycle
from .cooldown import MemoryCooldown, RedisCooldown
from .errors import ConfigError, DoseNotFoundError, DoseValidationError
from .maintainer import HorizonMaintainer, SweepReport
from .models import DoseLog, DoseStatus, DueMedication, parse_ts, utcnow
from .reconciler import ReconcileResult, RescheduleReconciler
from .rules import RecurrenceRule, Schedule, describe
from .settings import Settings, load_zone
from .store import DoseStore, MemoryDoseStore, PgDoseStore, ScheduledMedication
from .urgency import classify, minutes_until, sort_due

logger = logging.getLogger("nk.doses.service")


class DoseService:
    def __init__(
        self,
        store: DoseStore,
        cooldown=None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings or Settings(dsn="")
        self.cooldown = cooldown or MemoryCooldown(self.settings.sweep_cooldown)
        self.clock = clock
        self.default_zone = load_zone(self.settings.default_tz)
        self.maintainer = HorizonMaintainer(
            store,
            self.cooldown,
            self.zone_for,
            horizon=self.settings.horizon,
            coverage=self.settings.coverage,
            window=self.settings.window,
        )
        self.reconciler = RescheduleReconciler(store, self.maintainer)

    @classmethod
    def from_settings(cls, settings: Settings) -> "DoseService":
        if settings.store == "memory":
            store = MemoryDoseStore()
        else:
            store = PgDoseStore(settings.dsn)
        if settings.redis_url:
            cooldown = RedisCooldown.from_url(settings.redis_url, settings.sweep_cooldown)
        else:
            cooldown = MemoryCooldown(settings.sweep_cooldown)
        return cls(store, cooldown=cooldown, settings=settings)

    def now(self) -> datetime:
        return parse_ts(self.clock())

    def zone_for(self, sm: ScheduledMedication) -> ZoneInfo:
        if not sm.timezone:
            return self.default_zone
        try:
            return load_zone(sm.timezone)
        except ConfigError:
            logger.warning(
                "unknown_timezone medication=%s tz=%r fallback=%s",
                sm.medication.id,
                sm.timezone,
                self.settings.default_tz,
            )
            return self.default_zone

    # horizon

    def ensure_coverage(self, caregiver_id: str) -> SweepReport:
        return self.maintainer.ensure_coverage(caregiver_id, self.now())

    def get_due_medications(self, caregiver_id: str) -> List[DueMedication]:
        now = self.now()
        try:
            self.maintainer.ensure_coverage(caregiver_id, now)
        except Exception:
            # existing instances are still listed when the sweep itself fails
            logger.exception("sweep_failed caregiver=%s", caregiver_id)
        rows = self.store.list_due(caregiver_id, now + self.settings.due_lookahead)
        for row in rows:
            row.urgency = classify(now, row.due_datetime)
            row.minutes_until_due = minutes_until(now, row.due_datetime)
        return sort_due(rows)

    # lifecycle

    def resolve_dose(
        self,
        dose_instance_id: str,
        was_given: bool,
        reason: Optional[str] = None,
        recorded_by: str = "",
    ) -> DoseLog:
        return lifecycle.resolve(
            self.store, dose_instance_id, was_given, reason, recorded_by, self.now()
        )

    def repair_instance_status(self, dose_instance_id: str) -> Optional[DoseStatus]:
        return lifecycle.repair_status(self.store, dose_instance_id)

    def repair_all(self) -> int:
        n = 0
        for inst, _log in self.store.list_stuck_instances():
            try:
                if lifecycle.repair_status(self.store, inst.id) is not None:
                    n += 1
            except Exception:
                logger.exception("repair_failed instance=%s", inst.id)
        return n

    def record_prn_dose(
        self,
        medication_id: str,
        amount,
        reason: Optional[str],
        recorded_by: str,
        given_at: Optional[datetime] = None,
    ) -> DoseLog:
        now = self.now()
        given_at = parse_ts(given_at) if given_at is not None else now
        if given_at > now + timedelta(minutes=5):
            raise DoseValidationError("a PRN dose cannot be recorded in the future")
        return lifecycle.record_prn(
            self.store, medication_id, amount, reason, recorded_by, given_at
        )

    # reconciliation

    def on_schedule_saved(self, medication_id: str) -> ReconcileResult:
        return self.reconciler.on_schedule_saved(medication_id, self.now())

    def on_medication_stopped(self, medication_id: str) -> ReconcileResult:
        return self.reconciler.on_medication_stopped(medication_id, self.now())

    def save_schedule(
        self, medication_id: str, rule: RecurrenceRule
    ) -> tuple[Schedule, ReconcileResult]:
        med = self.store.get_medication(medication_id)
        if med is None:
            raise DoseNotFoundError(f"medication {medication_id} not found")
        if med.is_prn:
            raise DoseValidationError(
                f"medication {medication_id} is PRN and cannot have a schedule"
            )
        if not med.active:
            raise DoseValidationError(f"medication {medication_id} has been stopped")
        schedule = self.store.save_schedule(medication_id, rule)
        logger.info(
            "schedule_saved medication=%s schedule=%s rule=%s",
            medication_id,
            schedule.id,
            describe(rule),
        )
        return schedule, self.on_schedule_saved(medication_id)

    def stop_medication(
        self, medication_id: str, reason: str = "Stopped by user"
    ) -> ReconcileResult:
        med = self.store.get_medication(medication_id)
        if med is None:
            raise DoseNotFoundError(f"medication {medication_id} not found")
        now = self.now()
        if self.store.archive_medication(medication_id, now, reason):
            logger.info("medication_stopped medication=%s reason=%s", medication_id, reason)
        return self.reconciler.on_medication_stopped(medication_id, now)
