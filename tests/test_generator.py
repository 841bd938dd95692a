from collections import Counter
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from app.nk_doses.errors import DoseValidationError
from app.nk_doses.generator import generate
from app.nk_doses.rules import Schedule

from tests.helpers import NOW, every, make_med, specific, times_per_day


def sched(rule, med_id="med-1"):
    return Schedule(id="sched-1", medication_id=med_id, rule=rule)


def dues(drafts):
    return [d.due_datetime for d in drafts]


def test_specific_times_two_days_scenario():
    # now 06:00, active from 07:00 today, horizon two days out
    today_7 = NOW.replace(hour=7)
    rule = specific("09:00", "21:00", active_from=today_7)
    drafts = generate(make_med(), sched(rule), NOW + timedelta(days=2), NOW)
    day = NOW.replace(hour=0)
    assert dues(drafts) == [
        day.replace(hour=9),
        day.replace(hour=21),
        day + timedelta(days=1, hours=9),
        day + timedelta(days=1, hours=21),
    ]


def test_times_per_day_counts_per_day_and_skips_past_slots_today():
    now = NOW.replace(hour=10)
    rule = times_per_day("08:00", "14:00", "20:00", active_from=NOW - timedelta(days=3))
    drafts = generate(make_med(), sched(rule), now + timedelta(days=5), now)
    per_day = Counter(d.due_datetime.date() for d in drafts)
    today = now.date()
    assert per_day[today] == 2  # 08:00 already passed
    for i in range(1, 5):
        assert per_day[today + timedelta(days=i)] == 3
    # horizon ends at 10:00 on day 5, so only the 08:00 slot fits
    assert per_day[today + timedelta(days=5)] == 1
    assert len(drafts) <= 3 * 6


def test_wall_clock_rule_never_backfills_and_respects_active_from():
    active_from = NOW + timedelta(days=1, hours=10)  # tomorrow 16:00
    rule = specific("08:00", "20:00", active_from=active_from)
    drafts = generate(make_med(), sched(rule), NOW + timedelta(days=3), NOW)
    assert all(d >= active_from for d in dues(drafts))
    assert dues(drafts)[0] == NOW.replace(hour=20) + timedelta(days=1)


def test_every_x_hours_steps_exactly_from_now():
    drafts = generate(make_med(), sched(every(8)), NOW + timedelta(days=2), NOW)
    ds = dues(drafts)
    assert ds[0] == NOW
    assert ds[-1] == NOW + timedelta(hours=48)
    assert len(ds) == 7
    assert all(b - a == timedelta(hours=8) for a, b in zip(ds, ds[1:]))


def test_every_x_hours_starts_at_future_active_from():
    start = NOW + timedelta(hours=5)
    drafts = generate(
        make_med(), sched(every(6, active_from=start)), NOW + timedelta(days=1), NOW
    )
    assert dues(drafts)[0] == start
    assert all(b - a == timedelta(hours=6) for a, b in zip(dues(drafts), dues(drafts)[1:]))


@pytest.mark.parametrize(
    "rule",
    [every(3), times_per_day("00:30", "06:00", "12:00"), specific("05:59", "06:01")],
)
def test_nothing_is_generated_before_now(rule):
    drafts = generate(make_med(), sched(rule), NOW + timedelta(days=4), NOW)
    assert drafts
    assert all(d.due_datetime >= NOW for d in drafts)


def test_drafts_carry_window_and_dose_snapshot():
    med = make_med(dose_amount=Decimal("2.5"), dose_unit="mg")
    drafts = generate(med, sched(every(12)), NOW + timedelta(days=1), NOW)
    for d in drafts:
        assert d.window_start == d.due_datetime - timedelta(minutes=30)
        assert d.window_end == d.due_datetime + timedelta(minutes=30)
        assert d.dose_amount == Decimal("2.5")
        assert d.dose_unit == "mg"
        assert d.medication_id == "med-1"
        assert d.schedule_id == "sched-1"
        assert d.child_id == "child-1"


def test_same_inputs_give_same_due_times():
    rule = specific("09:00", "21:00")
    a = generate(make_med(), sched(rule), NOW + timedelta(days=14), NOW)
    b = generate(make_med(), sched(rule), NOW + timedelta(days=14), NOW)
    assert a == b
    assert len(set(dues(a))) == len(a)


def test_no_schedule_yields_nothing():
    assert generate(make_med(), None, NOW + timedelta(days=14), NOW) == []


def test_prn_medication_is_rejected():
    with pytest.raises(DoseValidationError):
        generate(make_med(is_prn=True), sched(every(4)), NOW + timedelta(days=1), NOW)


def test_schedule_of_another_medication_is_rejected():
    with pytest.raises(DoseValidationError):
        generate(make_med(), sched(every(4), med_id="med-9"), NOW + timedelta(days=1), NOW)


def test_naive_now_is_rejected():
    with pytest.raises(DoseValidationError):
        generate(make_med(), sched(every(4)), NOW + timedelta(days=1), NOW.replace(tzinfo=None))


def test_medication_end_caps_the_horizon():
    med = make_med(end_datetime=NOW + timedelta(hours=20))
    drafts = generate(med, sched(every(8)), NOW + timedelta(days=14), NOW)
    assert dues(drafts) == [NOW, NOW + timedelta(hours=8), NOW + timedelta(hours=16)]


def test_wall_clock_times_follow_local_zone_across_dst():
    # US DST starts 2025-03-09 02:00 local
    now = datetime(2025, 3, 8, 0, 0, tzinfo=timezone.utc)
    rule = specific("08:00", active_from=now)
    drafts = generate(
        make_med(), sched(rule), now + timedelta(days=3), now, tz=ZoneInfo("America/New_York")
    )
    assert dues(drafts) == [
        datetime(2025, 3, 8, 13, 0, tzinfo=timezone.utc),
        datetime(2025, 3, 9, 12, 0, tzinfo=timezone.utc),
        datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc),
    ]


def test_long_running_wall_clock_rule_starts_walking_days_at_now(monkeypatch):
    from app.nk_doses import generator

    rule = specific("09:00", "21:00", active_from=NOW - timedelta(days=365))
    expected = dues(generate(make_med(), sched(rule), NOW + timedelta(days=2), NOW))

    firsts = []
    real_days = generator._days

    def spy(first, last):
        firsts.append(first)
        return real_days(first, last)

    monkeypatch.setattr(generator, "_days", spy)
    drafts = generate(make_med(), sched(rule), NOW + timedelta(days=2), NOW)
    assert firsts == [NOW.date()]
    assert dues(drafts) == expected
    assert dues(drafts)[0] == NOW.replace(hour=9)
