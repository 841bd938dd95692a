"""Persistence for dose instances, dose logs and the medication rows they hang off.

Two implementations of the same logical operations:

- PgDoseStore: PostgreSQL through psycopg (schema in db/schema.sql). Log
  insert + status update share one transaction, so `atomic` is True.
- MemoryDoseStore: process-local, for local development (NK_STORE=memory)
  and tests. Each operation stands alone, so `atomic` is False.

Both refuse a second instance for the same (medication_id, due_datetime) and
a second dose log for the same instance.
"""

import json
import logging
import threading
import uuid
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row

from . import db
from .errors import DoseNotFoundError, InvalidTransitionError, ScheduleValidationError
from .models import (
    DoseInstance,
    DoseInstanceDraft,
    DoseLog,
    DoseStatus,
    DueMedication,
    Medication,
    parse_ts,
)
from .rules import RecurrenceRule, Schedule, rule_from_row, rule_to_row

logger = logging.getLogger("nk.doses.store")


@dataclass
class ScheduledMedication:
    """An active, non-PRN medication together with its schedule and the
    IANA zone its wall-clock times are read in (None = service default)."""

    medication: Medication
    schedule: Schedule
    timezone: Optional[str] = None


class DoseStore(Protocol):
    atomic: bool

    def transaction(self): ...

    def ping(self) -> bool: ...

    def list_scheduled_medications(self, caregiver_id: str) -> List[ScheduledMedication]: ...

    def get_scheduled_medication(self, medication_id: str) -> Optional[ScheduledMedication]: ...

    def get_medication(self, medication_id: str) -> Optional[Medication]: ...

    def save_schedule(self, medication_id: str, rule: RecurrenceRule) -> Schedule: ...

    def archive_medication(self, medication_id: str, at: datetime, reason: str) -> bool: ...

    def insert_instances(self, drafts: Sequence[DoseInstanceDraft]) -> int: ...

    def has_pending_between(self, medication_id: str, start: datetime, end: datetime) -> bool: ...

    def delete_pending_from(self, medication_id: str, since: datetime) -> int: ...

    def get_instance(self, instance_id: str) -> Optional[DoseInstance]: ...

    def update_instance_status(self, instance_id: str, status: DoseStatus) -> bool: ...

    def insert_log(self, log: DoseLog) -> DoseLog: ...

    def find_log_for_instance(self, instance_id: str) -> Optional[DoseLog]: ...

    def list_due(self, caregiver_id: str, until: datetime) -> List[DueMedication]: ...

    def list_stuck_instances(self) -> List[Tuple[DoseInstance, DoseLog]]: ...


# ---------------------------------------------------------------------------
# PostgreSQL


SQL_SCHEDULED_MEDS = """
SELECT m.id, m.child_id, m.name, m.dose_amount, m.dose_unit, m.route, m.is_prn,
       m.start_datetime, m.end_datetime, m.archived_at, m.stopped_reason, m.notes,
       m.created_by,
       s.id AS schedule_id, s.rule_type, s.every_x_hours, s.times_per_day,
       s.specific_times, s.active_from,
       p.timezone
FROM medications m
JOIN medication_schedules s ON s.medication_id = m.id
LEFT JOIN profiles p ON p.id = m.created_by
WHERE m.is_prn = false AND m.archived_at IS NULL
"""

SQL_INSERT_INSTANCE = """
INSERT INTO dose_instances
  (medication_id, schedule_id, child_id, due_datetime, window_start, window_end,
   dose_amount, dose_unit, status)
VALUES (%s,%s,%s,%s,%s,%s,%s,%s,'pending')
ON CONFLICT (medication_id, due_datetime) DO NOTHING
"""

SQL_INSERT_LOG = """
INSERT INTO dose_logs
  (dose_instance_id, medication_id, child_id, is_prn, amount_given, unit,
   given_datetime, recorded_by, was_given, reason_given, reason_not_given, notes)
VALUES (%(dose_instance_id)s, %(medication_id)s, %(child_id)s, %(is_prn)s,
        %(amount_given)s, %(unit)s, %(given_datetime)s, %(recorded_by)s,
        %(was_given)s, %(reason_given)s, %(reason_not_given)s, %(notes)s)
RETURNING id
"""

SQL_DUE = """
SELECT di.id, di.medication_id, di.due_datetime, di.dose_amount, di.dose_unit,
       m.name, m.child_id, c.first_name AS child_name
FROM dose_instances di
JOIN medications m ON m.id = di.medication_id
JOIN children c ON c.id = m.child_id
JOIN child_profiles cp ON cp.child_id = m.child_id
WHERE cp.profile_id = %s
  AND di.status = 'pending'
  AND di.due_datetime <= %s
  AND m.archived_at IS NULL
ORDER BY di.due_datetime
"""

SQL_STUCK = """
SELECT di.id, di.medication_id, di.schedule_id, di.child_id, di.due_datetime,
       di.window_start, di.window_end, di.dose_amount, di.dose_unit, di.status,
       dl.id AS log_id, dl.amount_given, dl.unit, dl.given_datetime, dl.recorded_by,
       dl.was_given, dl.is_prn, dl.reason_given, dl.reason_not_given, dl.notes
FROM dose_instances di
JOIN dose_logs dl ON dl.dose_instance_id = di.id
WHERE di.status = 'pending'
ORDER BY di.due_datetime
"""

_LOG_COLUMNS = (
    "id, dose_instance_id, medication_id, child_id, is_prn, amount_given, unit, "
    "given_datetime, recorded_by, was_given, reason_given, reason_not_given, notes"
)


def _medication_from_row(r: dict) -> Medication:
    return Medication(
        id=str(r["id"]),
        child_id=str(r["child_id"]),
        name=r["name"],
        dose_amount=Decimal(str(r["dose_amount"])),
        dose_unit=r["dose_unit"],
        route=r.get("route") or "Oral",
        is_prn=bool(r.get("is_prn")),
        start_datetime=parse_ts(r["start_datetime"]) if r.get("start_datetime") else None,
        end_datetime=parse_ts(r["end_datetime"]) if r.get("end_datetime") else None,
        archived_at=parse_ts(r["archived_at"]) if r.get("archived_at") else None,
        stopped_reason=r.get("stopped_reason"),
        notes=r.get("notes"),
        created_by=str(r["created_by"]) if r.get("created_by") else None,
    )


def _instance_from_row(r: dict) -> DoseInstance:
    return DoseInstance(
        id=str(r["id"]),
        medication_id=str(r["medication_id"]),
        schedule_id=str(r["schedule_id"]),
        child_id=str(r["child_id"]),
        due_datetime=parse_ts(r["due_datetime"]),
        window_start=parse_ts(r["window_start"]),
        window_end=parse_ts(r["window_end"]),
        dose_amount=Decimal(str(r["dose_amount"])),
        dose_unit=r["dose_unit"],
        status=DoseStatus(r["status"]),
    )


def _log_from_row(r: dict, id_key: str = "id") -> DoseLog:
    return DoseLog(
        id=str(r[id_key]),
        dose_instance_id=str(r["dose_instance_id"]) if r.get("dose_instance_id") else None,
        medication_id=str(r["medication_id"]),
        child_id=str(r["child_id"]),
        is_prn=bool(r["is_prn"]),
        amount_given=Decimal(str(r["amount_given"])),
        unit=r["unit"],
        given_datetime=parse_ts(r["given_datetime"]),
        recorded_by=str(r["recorded_by"]),
        was_given=bool(r["was_given"]),
        reason_given=r.get("reason_given"),
        reason_not_given=r.get("reason_not_given"),
        notes=r.get("notes"),
    )


def _scheduled_from_row(r: dict) -> Optional[ScheduledMedication]:
    try:
        rule = rule_from_row(r)
    except ScheduleValidationError as e:
        logger.warning(
            "schedule_unreadable medication=%s schedule=%s error=%s",
            r.get("id"),
            r.get("schedule_id"),
            e,
        )
        return None
    med = _medication_from_row(r)
    return ScheduledMedication(
        medication=med,
        schedule=Schedule(id=str(r["schedule_id"]), medication_id=med.id, rule=rule),
        timezone=r.get("timezone"),
    )


class PgDoseStore:
    atomic = True

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn
        self._local = threading.local()

    def ping(self) -> bool:
        return db.ping(self.dsn)

    @contextmanager
    def transaction(self):
        if getattr(self._local, "conn", None) is not None:
            # already inside one; join it
            yield
            return
        with db.pg(self.dsn) as conn, conn.transaction():
            self._local.conn = conn
            try:
                yield
            finally:
                self._local.conn = None

    @contextmanager
    def _conn(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
        else:
            with db.pg(self.dsn) as conn:
                yield conn

    def _fetchall(self, sql: str, params=None) -> List[dict]:
        with self._conn() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, params)
            return cur.fetchall()

    def _fetchone(self, sql: str, params=None) -> Optional[dict]:
        with self._conn() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    def _execute(self, sql: str, params=None) -> int:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount

    def list_scheduled_medications(self, caregiver_id: str) -> List[ScheduledMedication]:
        rows = self._fetchall(
            SQL_SCHEDULED_MEDS
            + " AND m.child_id IN (SELECT child_id FROM child_profiles WHERE profile_id = %s)"
            + " ORDER BY m.created_at",
            (caregiver_id,),
        )
        out = []
        for r in rows:
            sm = _scheduled_from_row(r)
            if sm is not None:
                out.append(sm)
        return out

    def get_scheduled_medication(self, medication_id: str) -> Optional[ScheduledMedication]:
        r = self._fetchone(SQL_SCHEDULED_MEDS + " AND m.id = %s", (medication_id,))
        return _scheduled_from_row(r) if r else None

    def get_medication(self, medication_id: str) -> Optional[Medication]:
        r = self._fetchone("SELECT * FROM medications WHERE id = %s", (medication_id,))
        return _medication_from_row(r) if r else None

    def save_schedule(self, medication_id: str, rule: RecurrenceRule) -> Schedule:
        row = rule_to_row(rule)
        row["medication_id"] = medication_id
        row["specific_times"] = (
            json.dumps(row["specific_times"]) if row["specific_times"] is not None else None
        )
        r = self._fetchone(
            """
            INSERT INTO medication_schedules
              (medication_id, rule_type, every_x_hours, times_per_day, specific_times, active_from)
            VALUES (%(medication_id)s, %(rule_type)s, %(every_x_hours)s, %(times_per_day)s,
                    %(specific_times)s::jsonb, %(active_from)s)
            ON CONFLICT (medication_id) DO UPDATE SET
              rule_type      = EXCLUDED.rule_type,
              every_x_hours  = EXCLUDED.every_x_hours,
              times_per_day  = EXCLUDED.times_per_day,
              specific_times = EXCLUDED.specific_times,
              active_from    = EXCLUDED.active_from,
              updated_at     = now()
            RETURNING id
            """,
            row,
        )
        return Schedule(id=str(r["id"]), medication_id=medication_id, rule=rule)

    def archive_medication(self, medication_id: str, at: datetime, reason: str) -> bool:
        n = self._execute(
            """
            UPDATE medications SET archived_at = %s, stopped_reason = %s, updated_at = now()
            WHERE id = %s AND archived_at IS NULL
            """,
            (at, reason, medication_id),
        )
        return n == 1

    def insert_instances(self, drafts: Sequence[DoseInstanceDraft]) -> int:
        if not drafts:
            return 0
        params = [
            (
                d.medication_id,
                d.schedule_id,
                d.child_id,
                d.due_datetime,
                d.window_start,
                d.window_end,
                d.dose_amount,
                d.dose_unit,
            )
            for d in drafts
        ]
        with self._conn() as conn, conn.cursor() as cur:
            cur.executemany(SQL_INSERT_INSTANCE, params)
            return cur.rowcount

    def has_pending_between(self, medication_id: str, start: datetime, end: datetime) -> bool:
        r = self._fetchone(
            """
            SELECT id FROM dose_instances
            WHERE medication_id = %s AND status = 'pending'
              AND due_datetime >= %s AND due_datetime <= %s
            LIMIT 1
            """,
            (medication_id, start, end),
        )
        return r is not None

    def delete_pending_from(self, medication_id: str, since: datetime) -> int:
        return self._execute(
            """
            DELETE FROM dose_instances
            WHERE medication_id = %s AND status = 'pending' AND due_datetime >= %s
              AND NOT EXISTS (
                SELECT 1 FROM dose_logs dl WHERE dl.dose_instance_id = dose_instances.id
              )
            """,
            (medication_id, since),
        )

    def get_instance(self, instance_id: str) -> Optional[DoseInstance]:
        r = self._fetchone("SELECT * FROM dose_instances WHERE id = %s", (instance_id,))
        return _instance_from_row(r) if r else None

    def update_instance_status(self, instance_id: str, status: DoseStatus) -> bool:
        n = self._execute(
            """
            UPDATE dose_instances SET status = %s, updated_at = now()
            WHERE id = %s AND status = 'pending'
            """,
            (status.value, instance_id),
        )
        return n == 1

    def insert_log(self, log: DoseLog) -> DoseLog:
        params = {
            "dose_instance_id": log.dose_instance_id,
            "medication_id": log.medication_id,
            "child_id": log.child_id,
            "is_prn": log.is_prn,
            "amount_given": log.amount_given,
            "unit": log.unit,
            "given_datetime": log.given_datetime,
            "recorded_by": log.recorded_by,
            "was_given": log.was_given,
            "reason_given": log.reason_given,
            "reason_not_given": log.reason_not_given,
            "notes": log.notes,
        }
        try:
            r = self._fetchone(SQL_INSERT_LOG, params)
        except UniqueViolation:
            if log.dose_instance_id is None:
                raise
            # uq_dose_logs_instance: a concurrent resolve committed first
            raise InvalidTransitionError(
                f"dose instance {log.dose_instance_id} already has a dose log"
            )
        return replace(log, id=str(r["id"]))

    def find_log_for_instance(self, instance_id: str) -> Optional[DoseLog]:
        r = self._fetchone(
            f"SELECT {_LOG_COLUMNS} FROM dose_logs WHERE dose_instance_id = %s "
            "ORDER BY created_at LIMIT 1",
            (instance_id,),
        )
        return _log_from_row(r) if r else None

    def list_due(self, caregiver_id: str, until: datetime) -> List[DueMedication]:
        rows = self._fetchall(SQL_DUE, (caregiver_id, until))
        return [
            DueMedication(
                dose_instance_id=str(r["id"]),
                medication_id=str(r["medication_id"]),
                name=r["name"],
                child_id=str(r["child_id"]),
                child_name=r["child_name"],
                due_datetime=parse_ts(r["due_datetime"]),
                dose_amount=Decimal(str(r["dose_amount"])),
                dose_unit=r["dose_unit"],
            )
            for r in rows
        ]

    def list_stuck_instances(self) -> List[Tuple[DoseInstance, DoseLog]]:
        out = []
        for r in self._fetchall(SQL_STUCK):
            inst = _instance_from_row(r)
            log = _log_from_row({**r, "dose_instance_id": r["id"]}, id_key="log_id")
            out.append((inst, log))
        return out


# ---------------------------------------------------------------------------
# In-memory


class MemoryDoseStore:
    atomic = False

    def __init__(self):
        self._lock = threading.RLock()
        self.children: Dict[str, dict] = {}
        self.timezones: Dict[str, Optional[str]] = {}
        self.medications: Dict[str, Medication] = {}
        self.schedules: Dict[str, Schedule] = {}  # keyed by medication id
        self.instances: Dict[str, DoseInstance] = {}
        self.logs: List[DoseLog] = []

    @staticmethod
    def _new_id() -> str:
        return str(uuid.uuid4())

    def transaction(self):
        return nullcontext()

    def ping(self) -> bool:
        return True

    # seeding helpers used by local dev and tests

    def add_child(self, child_id: str, first_name: str, caregivers: Sequence[str] = ()):
        with self._lock:
            self.children[child_id] = {"first_name": first_name, "caregivers": set(caregivers)}

    def add_caregiver(self, caregiver_id: str, timezone: Optional[str] = None):
        with self._lock:
            self.timezones[caregiver_id] = timezone

    def add_medication(self, medication: Medication, rule: Optional[RecurrenceRule] = None):
        with self._lock:
            self.medications[medication.id] = medication
        if rule is not None:
            return self.save_schedule(medication.id, rule)
        return None

    def instances_for(self, medication_id: str) -> List[DoseInstance]:
        with self._lock:
            rows = [i for i in self.instances.values() if i.medication_id == medication_id]
        return sorted(rows, key=lambda i: i.due_datetime)

    # DoseStore

    def _scheduled(self, med: Medication) -> Optional[ScheduledMedication]:
        if med.is_prn or not med.active:
            return None
        sched = self.schedules.get(med.id)
        if sched is None:
            return None
        return ScheduledMedication(
            medication=med, schedule=sched, timezone=self.timezones.get(med.created_by)
        )

    def list_scheduled_medications(self, caregiver_id: str) -> List[ScheduledMedication]:
        with self._lock:
            out = []
            for med in self.medications.values():
                child = self.children.get(med.child_id)
                if not child or caregiver_id not in child["caregivers"]:
                    continue
                sm = self._scheduled(med)
                if sm is not None:
                    out.append(sm)
            return out

    def get_scheduled_medication(self, medication_id: str) -> Optional[ScheduledMedication]:
        with self._lock:
            med = self.medications.get(medication_id)
            return self._scheduled(med) if med else None

    def get_medication(self, medication_id: str) -> Optional[Medication]:
        with self._lock:
            return self.medications.get(medication_id)

    def save_schedule(self, medication_id: str, rule: RecurrenceRule) -> Schedule:
        with self._lock:
            if medication_id not in self.medications:
                raise DoseNotFoundError(f"medication {medication_id} not found")
            existing = self.schedules.get(medication_id)
            sched = Schedule(
                id=existing.id if existing else self._new_id(),
                medication_id=medication_id,
                rule=rule,
            )
            self.schedules[medication_id] = sched
            return sched

    def archive_medication(self, medication_id: str, at: datetime, reason: str) -> bool:
        with self._lock:
            med = self.medications.get(medication_id)
            if med is None or med.archived_at is not None:
                return False
            self.medications[medication_id] = replace(med, archived_at=at, stopped_reason=reason)
            return True

    def insert_instances(self, drafts: Sequence[DoseInstanceDraft]) -> int:
        with self._lock:
            taken = {(i.medication_id, i.due_datetime) for i in self.instances.values()}
            n = 0
            for d in drafts:
                key = (d.medication_id, d.due_datetime)
                if key in taken:
                    continue
                taken.add(key)
                inst = DoseInstance.from_draft(self._new_id(), d)
                self.instances[inst.id] = inst
                n += 1
            return n

    def has_pending_between(self, medication_id: str, start: datetime, end: datetime) -> bool:
        with self._lock:
            return any(
                i.medication_id == medication_id
                and i.status == DoseStatus.PENDING
                and start <= i.due_datetime <= end
                for i in self.instances.values()
            )

    def delete_pending_from(self, medication_id: str, since: datetime) -> int:
        with self._lock:
            doomed = [
                i.id
                for i in self.instances.values()
                if i.medication_id == medication_id
                and i.status == DoseStatus.PENDING
                and i.due_datetime >= since
                and self.find_log_for_instance(i.id) is None
            ]
            for iid in doomed:
                del self.instances[iid]
            return len(doomed)

    def get_instance(self, instance_id: str) -> Optional[DoseInstance]:
        with self._lock:
            return self.instances.get(instance_id)

    def update_instance_status(self, instance_id: str, status: DoseStatus) -> bool:
        with self._lock:
            inst = self.instances.get(instance_id)
            if inst is None or inst.status != DoseStatus.PENDING:
                return False
            self.instances[instance_id] = inst.with_status(status)
            return True

    def insert_log(self, log: DoseLog) -> DoseLog:
        with self._lock:
            if log.dose_instance_id is not None and any(
                x.dose_instance_id == log.dose_instance_id for x in self.logs
            ):
                raise InvalidTransitionError(
                    f"dose instance {log.dose_instance_id} already has a dose log"
                )
            saved = replace(log, id=self._new_id())
            self.logs.append(saved)
            return saved

    def find_log_for_instance(self, instance_id: str) -> Optional[DoseLog]:
        with self._lock:
            for log in self.logs:
                if log.dose_instance_id == instance_id:
                    return log
            return None

    def list_due(self, caregiver_id: str, until: datetime) -> List[DueMedication]:
        with self._lock:
            out = []
            for inst in self.instances.values():
                if inst.status != DoseStatus.PENDING or inst.due_datetime > until:
                    continue
                med = self.medications.get(inst.medication_id)
                child = self.children.get(inst.child_id)
                if med is None or not med.active or not child:
                    continue
                if caregiver_id not in child["caregivers"]:
                    continue
                out.append(
                    DueMedication(
                        dose_instance_id=inst.id,
                        medication_id=med.id,
                        name=med.name,
                        child_id=inst.child_id,
                        child_name=child["first_name"],
                        due_datetime=inst.due_datetime,
                        dose_amount=inst.dose_amount,
                        dose_unit=inst.dose_unit,
                    )
                )
            return sorted(out, key=lambda m: m.due_datetime)

    def list_stuck_instances(self) -> List[Tuple[DoseInstance, DoseLog]]:
        with self._lock:
            out = []
            for inst in self.instances.values():
                if inst.status != DoseStatus.PENDING:
                    continue
                log = self.find_log_for_instance(inst.id)
                if log is not None:
                    out.append((inst, log))
            return sorted(out, key=lambda p: p[0].due_datetime)
