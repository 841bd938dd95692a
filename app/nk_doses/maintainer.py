import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List
from zoneinfo import ZoneInfo

from .generator import generate
from .store import DoseStore, ScheduledMedication

logger = logging.getLogger("nk.doses.maintainer")


@dataclass
class SweepReport:
    caregiver_id: str
    skipped: bool = False
    checked: int = 0
    topped_up: List[str] = field(default_factory=list)
    created: int = 0
    failed: List[str] = field(default_factory=list)


class HorizonMaintainer:
    """Keeps every active scheduled medication of a caregiver covered with
    pending instances.

    A medication is topped up (generated out to `horizon`) only when it has
    no pending instance due within `coverage` of now. The check and the
    insert are separate statements with no lock between them; overlapping
    sweeps rely on the store ignoring a second instance for the same
    (medication, due time).
    """

    def __init__(
        self,
        store: DoseStore,
        cooldown,
        zone_for: Callable[[ScheduledMedication], ZoneInfo],
        horizon: timedelta = timedelta(days=14),
        coverage: timedelta = timedelta(hours=48),
        window: timedelta = timedelta(minutes=30),
    ):
        self.store = store
        self.cooldown = cooldown
        self.zone_for = zone_for
        self.horizon = horizon
        self.coverage = coverage
        self.window = window

    def top_up(self, sm: ScheduledMedication, now: datetime) -> int:
        """Generate and persist for one medication; returns rows inserted."""
        drafts = generate(
            sm.medication,
            sm.schedule,
            now + self.horizon,
            now,
            tz=self.zone_for(sm),
            window=self.window,
        )
        if not drafts:
            return 0
        return self.store.insert_instances(drafts)

    def ensure_coverage(self, caregiver_id: str, now: datetime) -> SweepReport:
        report = SweepReport(caregiver_id=caregiver_id)
        if not self.cooldown.should_run(caregiver_id, now):
            logger.debug("sweep_skipped caregiver=%s reason=cooldown", caregiver_id)
            report.skipped = True
            return report

        meds = self.store.list_scheduled_medications(caregiver_id)
        check_until = now + self.coverage
        for sm in meds:
            med_id = sm.medication.id
            report.checked += 1
            try:
                if self.store.has_pending_between(med_id, now, check_until):
                    continue
                n = self.top_up(sm, now)
                report.topped_up.append(med_id)
                report.created += n
                logger.info(
                    "sweep_topped_up caregiver=%s medication=%s created=%d",
                    caregiver_id,
                    med_id,
                    n,
                )
            except Exception:
                report.failed.append(med_id)
                logger.exception(
                    "sweep_generation_failed caregiver=%s medication=%s",
                    caregiver_id,
                    med_id,
                )

        self.cooldown.mark(caregiver_id, now)
        logger.info(
            "sweep_done caregiver=%s checked=%d topped_up=%d created=%d failed=%d",
            caregiver_id,
            report.checked,
            len(report.topped_up),
            report.created,
            len(report.failed),
        )
        return report
