from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal

import pytest
from psycopg.errors import UniqueViolation

from app.nk_doses.errors import InvalidTransitionError
from app.nk_doses.lifecycle import resolve
from app.nk_doses.models import DoseLog, DoseStatus
from app.nk_doses.store import PgDoseStore

from tests.helpers import NOW, draft_at, specific


class Cur:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = 0
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, a, b, c):
        pass

    def execute(self, sql, params=None):
        self.conn.executed.append((" ".join(sql.split()), params))
        self._rows, self.rowcount = self.conn.respond(sql, params)

    def executemany(self, sql, seq):
        seq = list(seq)
        self.conn.executed.append((" ".join(sql.split()), seq))
        self.rowcount = len(seq)

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return self._rows


class Conn:
    def __init__(self, responder=None):
        self.executed = []
        self.respond = responder or (lambda sql, params: ([], 0))
        self.transactions = 0

    def cursor(self, row_factory=None):
        return Cur(self)

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


@pytest.fixture
def fake_pg(monkeypatch):
    conns = []

    def install(responder=None):
        @contextmanager
        def pg(dsn=None):
            conn = Conn(responder)
            conns.append(conn)
            yield conn

        monkeypatch.setattr("app.nk_doses.db.pg", pg)
        return conns

    return install


def test_insert_instances_ignores_conflicting_slots(fake_pg):
    conns = fake_pg()
    store = PgDoseStore("postgresql://x")
    n = store.insert_instances([draft_at(NOW), draft_at(NOW + timedelta(hours=8))])
    assert n == 2
    sql, params = conns[0].executed[0]
    assert "ON CONFLICT (medication_id, due_datetime) DO NOTHING" in sql
    assert params[0] == (
        "med-1",
        "sched-x",
        "child-1",
        NOW,
        NOW - timedelta(minutes=30),
        NOW + timedelta(minutes=30),
        Decimal("5"),
        "mL",
    )


def test_insert_nothing_opens_no_connection(fake_pg):
    conns = fake_pg()
    assert PgDoseStore().insert_instances([]) == 0
    assert conns == []


def test_status_update_only_moves_pending(fake_pg):
    conns = fake_pg(lambda sql, params: ([], 0))
    assert PgDoseStore().update_instance_status("i-1", DoseStatus.GIVEN) is False
    sql, params = conns[0].executed[0]
    assert "status = 'pending'" in sql
    assert params == ("given", "i-1")

    fake_pg(lambda sql, params: ([], 1))
    assert PgDoseStore().update_instance_status("i-1", DoseStatus.SKIPPED) is True


def test_delete_spares_instances_with_a_log(fake_pg):
    conns = fake_pg(lambda sql, params: ([], 3))
    assert PgDoseStore().delete_pending_from("med-1", NOW) == 3
    sql, params = conns[0].executed[0]
    assert "NOT EXISTS" in sql and "dose_logs" in sql
    assert params == ("med-1", NOW)


def test_transaction_shares_one_connection(fake_pg):
    def respond(sql, params):
        if "INSERT INTO dose_logs" in sql:
            return [{"id": "log-1"}], 1
        return [], 1

    conns = fake_pg(respond)
    store = PgDoseStore()
    log = DoseLog(
        medication_id="med-1",
        child_id="child-1",
        amount_given=Decimal("5"),
        unit="mL",
        given_datetime=NOW,
        recorded_by="cg-1",
        was_given=True,
        dose_instance_id="i-1",
    )
    with store.transaction():
        saved = store.insert_log(log)
        store.update_instance_status("i-1", DoseStatus.GIVEN)
    assert saved.id == "log-1"
    assert len(conns) == 1
    assert conns[0].transactions == 1
    assert len(conns[0].executed) == 2
    # outside the block each call gets its own connection again
    store.update_instance_status("i-2", DoseStatus.GIVEN)
    assert len(conns) == 2


def test_list_due_maps_rows(fake_pg):
    row = {
        "id": 7,
        "medication_id": 3,
        "due_datetime": "2025-03-10T06:10:00+00:00",
        "dose_amount": Decimal("2.50"),
        "dose_unit": "mg",
        "name": "Ibuprofen",
        "child_id": 1,
        "child_name": "Mia",
    }
    conns = fake_pg(lambda sql, params: ([row], 1))
    rows = PgDoseStore().list_due("cg-1", NOW + timedelta(hours=1))
    assert conns[0].executed[0][1] == ("cg-1", NOW + timedelta(hours=1))
    assert len(rows) == 1
    due = rows[0]
    assert due.dose_instance_id == "7"
    assert due.due_datetime == NOW + timedelta(minutes=10)
    assert due.dose_amount == Decimal("2.50")
    assert due.child_name == "Mia"


def test_scheduled_medications_skip_unreadable_schedules(fake_pg):
    base = {
        "id": 1,
        "child_id": 1,
        "name": "Amoxicillin",
        "dose_amount": Decimal("5"),
        "dose_unit": "mL",
        "route": "Oral",
        "is_prn": False,
        "start_datetime": NOW - timedelta(days=1),
        "end_datetime": None,
        "archived_at": None,
        "stopped_reason": None,
        "notes": None,
        "created_by": "cg-1",
        "schedule_id": 9,
        "every_x_hours": None,
        "times_per_day": None,
        "active_from": NOW - timedelta(days=1),
        "timezone": "Europe/London",
    }
    good = dict(base, rule_type="specific_times", specific_times=["09:00", "21:00"])
    bad = dict(base, id=2, rule_type="specific_times", specific_times=[])
    fake_pg(lambda sql, params: ([good, bad], 2))
    meds = PgDoseStore().list_scheduled_medications("cg-1")
    assert len(meds) == 1
    sm = meds[0]
    assert sm.medication.id == "1"
    assert sm.schedule.id == "9"
    assert sm.schedule.rule == specific("09:00", "21:00")
    assert sm.timezone == "Europe/London"


def test_save_schedule_upserts_json_times(fake_pg):
    conns = fake_pg(lambda sql, params: ([{"id": 4}], 1))
    sched = PgDoseStore().save_schedule("med-1", specific("21:00", "09:00"))
    assert sched.id == "4"
    sql, params = conns[0].executed[0]
    assert "ON CONFLICT (medication_id) DO UPDATE" in sql
    assert params["specific_times"] == '["09:00", "21:00"]'
    assert params["medication_id"] == "med-1"


def test_ping(fake_pg):
    conns = fake_pg(lambda sql, params: ([(1,)], 1))
    assert PgDoseStore().ping() is True
    assert conns[0].executed[0][0] == "SELECT 1"


def _log(instance_id="i-1"):
    return DoseLog(
        medication_id="med-1",
        child_id="child-1",
        amount_given=Decimal("5"),
        unit="mL",
        given_datetime=NOW,
        recorded_by="cg-1",
        was_given=True,
        dose_instance_id=instance_id,
    )


def _log_insert_conflicts(sql, params):
    if "INSERT INTO dose_logs" in sql:
        raise UniqueViolation("duplicate key value violates unique constraint")
    return [], 1


def test_second_log_for_an_instance_is_a_conflict(fake_pg):
    fake_pg(_log_insert_conflicts)
    with pytest.raises(InvalidTransitionError):
        PgDoseStore().insert_log(_log())


def test_unique_violation_without_instance_is_not_masked(fake_pg):
    fake_pg(_log_insert_conflicts)
    with pytest.raises(UniqueViolation):
        PgDoseStore().insert_log(_log(instance_id=None))


def test_concurrent_resolve_losing_the_insert_gets_conflict(fake_pg):
    instance = {
        "id": "i-1",
        "medication_id": "med-1",
        "schedule_id": "s-1",
        "child_id": "child-1",
        "due_datetime": NOW,
        "window_start": NOW - timedelta(minutes=30),
        "window_end": NOW + timedelta(minutes=30),
        "dose_amount": Decimal("5"),
        "dose_unit": "mL",
        "status": "pending",
    }

    def respond(sql, params):
        s = " ".join(sql.split())
        if s.startswith("SELECT * FROM dose_instances"):
            return [instance], 1
        if "FROM dose_logs" in s and s.startswith("SELECT"):
            return [], 0
        return _log_insert_conflicts(sql, params)

    conns = fake_pg(respond)
    with pytest.raises(InvalidTransitionError):
        resolve(PgDoseStore(), "i-1", True, None, "cg-1", NOW)
    executed = [sql for c in conns for sql, _ in c.executed]
    assert not any(sql.startswith("UPDATE dose_instances") for sql in executed)
