"""Tests for carecal.data.models: dataclass helpers."""

from datetime import date, time

from carecal.data.models import CalendarDate, DaySchedules, Resident, Schedule


def test_resident_age_before_birthday():
    r = Resident(id=1, name="Hanako", birth_date=date(1940, 5, 1))
    assert r.age(date(2025, 4, 30)) == 84


def test_resident_age_on_birthday():
    r = Resident(id=1, name="Hanako", birth_date=date(1940, 5, 1))
    assert r.age(date(2025, 5, 1)) == 85


def test_resident_age_unknown():
    assert Resident(id=1, name="Hanako").age(date(2025, 5, 1)) is None


def test_leap_day_birthday():
    r = Resident(id=1, name="Taro", birth_date=date(1944, 2, 29))
    assert r.age(date(2025, 2, 28)) == 80
    assert r.age(date(2025, 3, 1)) == 81


def test_schedule_has_interval():
    timed = Schedule(id=1, date_id=1, title="Bath", schedule_type_id=1,
                     start_time=time(10, 0), end_time=time(11, 0))
    open_ended = Schedule(id=2, date_id=1, title="Walk", schedule_type_id=1,
                          start_time=time(10, 0))
    all_day = Schedule(id=3, date_id=1, title="Outing", schedule_type_id=1, all_day=True)
    assert timed.has_interval is True
    assert open_ended.has_interval is False
    assert all_day.has_interval is False


def test_day_schedules_defaults_to_empty():
    cd = CalendarDate(id=1, calendar_date=date(2025, 7, 24), day_of_week=4)
    day = DaySchedules(calendar_date=cd)
    assert day.schedules == []
    assert DaySchedules(calendar_date=cd).schedules is not day.schedules
