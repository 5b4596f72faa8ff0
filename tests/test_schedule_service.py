"""Tests for carecal.core.schedule_service: the validated schedule write path."""

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import date, time

import pytest

from carecal.core.errors import (
    InvalidDate,
    InvalidField,
    InvalidInterval,
    MissingStartTime,
    NotFound,
    ReferentialConflict,
    TimeConflict,
    UnknownReference,
)
from carecal.core.schedule_service import ScheduleService

DAY = "2025-07-24"


def _book(service, resident, schedule_type, start, end, day=DAY, title="Care"):
    return service.create_schedule(
        day, schedule_type.id, title,
        resident_id=resident.id if resident else None,
        start_time=start, end_time=end,
    )


class TestCreateSchedule:
    def test_create_returns_resolved_schedule(self, service, resident, schedule_type):
        s = _book(service, resident, schedule_type, "10:00", "11:00", title="Morning bath")
        assert s.id is not None
        assert s.title == "Morning bath"
        assert s.start_time == time(10, 0)
        assert s.end_time == time(11, 0)
        assert s.calendar_date.calendar_date == date(2025, 7, 24)
        assert s.calendar_date.day_of_week == 4  # Thursday
        assert s.schedule_type.type_name == "Bathing"
        assert s.schedule_type.color_code == "#FF5733"
        assert s.resident.name == "Hanako Sato"

    def test_create_registers_day_once(self, db, service, resident, schedule_type):
        _book(service, resident, schedule_type, "09:00", "10:00")
        _book(service, resident, schedule_type, "10:00", "11:00")
        assert db.count_calendar_dates(date(2025, 7, 24)) == 1

    def test_overlap_rejected(self, service, resident, schedule_type):
        _book(service, resident, schedule_type, "10:00", "11:00")
        with pytest.raises(TimeConflict):
            _book(service, resident, schedule_type, "10:30", "11:30")

    def test_back_to_back_allowed(self, service, resident, schedule_type):
        _book(service, resident, schedule_type, "10:00", "10:30")
        s = _book(service, resident, schedule_type, "10:30", "11:00")
        assert s.start_time == time(10, 30)

    def test_containment_rejected_both_directions(self, service, resident, schedule_type):
        _book(service, resident, schedule_type, "10:00", "11:00")
        with pytest.raises(TimeConflict):
            _book(service, resident, schedule_type, "09:00", "12:00")
        with pytest.raises(TimeConflict):
            _book(service, resident, schedule_type, "10:15", "10:45")

    def test_conflict_error_carries_details(self, service, resident, schedule_type):
        first = _book(service, resident, schedule_type, "10:00", "11:00")
        with pytest.raises(TimeConflict) as excinfo:
            _book(service, resident, schedule_type, "10:30", "11:30")
        assert [s.id for s in excinfo.value.conflicting_schedules] == [first.id]
        assert excinfo.value.suggested_time == "11:00"

    def test_rejected_write_changes_nothing(self, service, resident, schedule_type):
        _book(service, resident, schedule_type, "10:00", "11:00")
        with pytest.raises(TimeConflict):
            _book(service, resident, schedule_type, "10:30", "11:30")
        assert len(service.list_schedules(date=DAY)) == 1

    def test_different_residents_do_not_conflict(
        self, service, resident, other_resident, schedule_type,
    ):
        _book(service, resident, schedule_type, "10:00", "11:00")
        s = _book(service, other_resident, schedule_type, "10:00", "11:00")
        assert s.resident_id == other_resident.id

    def test_facility_wide_schedules_do_not_conflict(self, service, schedule_type):
        _book(service, None, schedule_type, "10:00", "11:00")
        s = _book(service, None, schedule_type, "10:00", "11:00")
        assert s.resident is None

    def test_same_time_other_day_allowed(self, service, resident, schedule_type):
        _book(service, resident, schedule_type, "10:00", "11:00")
        s = _book(service, resident, schedule_type, "10:00", "11:00", day="2025-07-25")
        assert s.calendar_date.calendar_date == date(2025, 7, 25)

    def test_start_without_end_is_not_conflict_checked(self, service, resident, schedule_type):
        _book(service, resident, schedule_type, "10:00", None)
        s = _book(service, resident, schedule_type, "10:00", "11:00")
        assert s.end_time == time(11, 0)

    def test_all_day_clears_times(self, service, resident, schedule_type):
        s = service.create_schedule(
            DAY, schedule_type.id, "Outing", resident_id=resident.id,
            start_time="10:00", end_time="11:00", all_day=True,
        )
        assert s.all_day is True
        assert s.start_time is None
        assert s.end_time is None
        # the all-day entry does not block a timed booking
        _book(service, resident, schedule_type, "10:00", "11:00")

    def test_missing_start_time(self, service, resident, schedule_type):
        with pytest.raises(MissingStartTime):
            _book(service, resident, schedule_type, None, "11:00")

    @pytest.mark.parametrize("start,end", [("11:00", "10:00"), ("10:00", "10:00")])
    def test_invalid_interval(self, service, resident, schedule_type, start, end):
        with pytest.raises(InvalidInterval):
            _book(service, resident, schedule_type, start, end)

    def test_bad_time_format(self, service, resident, schedule_type):
        with pytest.raises(InvalidField):
            _book(service, resident, schedule_type, "25:00", "26:00")

    def test_blank_title(self, service, resident, schedule_type):
        with pytest.raises(InvalidField):
            _book(service, resident, schedule_type, "10:00", "11:00", title="   ")

    def test_title_too_long(self, service, resident, schedule_type):
        with pytest.raises(InvalidField):
            _book(service, resident, schedule_type, "10:00", "11:00", title="x" * 256)

    def test_unknown_schedule_type(self, service, resident):
        with pytest.raises(UnknownReference):
            service.create_schedule(DAY, 999, "Bath", resident_id=resident.id,
                                    start_time="10:00", end_time="11:00")

    def test_unknown_resident_leaves_no_day(self, service, schedule_type):
        with pytest.raises(UnknownReference):
            service.create_schedule(DAY, schedule_type.id, "Bath", resident_id=999,
                                    start_time="10:00", end_time="11:00")
        assert service.registry.get(DAY) is None

    def test_bad_date(self, service, resident, schedule_type):
        with pytest.raises(InvalidDate):
            _book(service, resident, schedule_type, "10:00", "11:00", day="2025-13-40")

    def test_missing_timezone_refuses(self, db, resident, schedule_type, monkeypatch):
        from carecal.config import settings
        monkeypatch.setattr(settings, "TIMEZONE", None)
        service = ScheduleService(db, day_start="07:00", day_end="22:00", include_empty_days=True)
        with pytest.raises(InvalidDate):
            _book(service, resident, schedule_type, "10:00", "11:00")

    def test_unknown_timezone_refuses(self, db, resident, schedule_type):
        service = ScheduleService(db, timezone="Mars/Olympus_Mons")
        with pytest.raises(InvalidDate):
            _book(service, resident, schedule_type, "10:00", "11:00")


class TestUpdateSchedule:
    def test_update_without_interval_change_excludes_itself(
        self, service, resident, schedule_type,
    ):
        s = _book(service, resident, schedule_type, "10:00", "11:00")
        updated = service.update_schedule(s.id, title="Evening bath")
        assert updated.title == "Evening bath"
        assert updated.start_time == time(10, 0)

    def test_update_resubmitting_same_interval(self, service, resident, schedule_type):
        s = _book(service, resident, schedule_type, "10:00", "11:00")
        updated = service.update_schedule(s.id, date=DAY, start_time="10:00", end_time="11:00")
        assert updated.id == s.id

    def test_update_into_conflict_rejected(self, service, resident, schedule_type):
        _book(service, resident, schedule_type, "10:00", "11:00")
        s = _book(service, resident, schedule_type, "11:00", "12:00")
        with pytest.raises(TimeConflict):
            service.update_schedule(s.id, start_time="10:30")
        assert service.get_schedule(s.id).start_time == time(11, 0)

    def test_update_moves_to_new_day(self, service, resident, schedule_type):
        s = _book(service, resident, schedule_type, "10:00", "11:00")
        moved = service.update_schedule(s.id, date="2025-08-01")
        assert moved.calendar_date.calendar_date == date(2025, 8, 1)
        assert service.list_schedules(date=DAY) == []

    def test_update_to_all_day(self, service, resident, schedule_type):
        s = _book(service, resident, schedule_type, "10:00", "11:00")
        updated = service.update_schedule(s.id, all_day=True)
        assert updated.all_day is True
        assert updated.start_time is None

    def test_update_from_all_day_requires_start(self, service, resident, schedule_type):
        s = service.create_schedule(DAY, schedule_type.id, "Outing",
                                    resident_id=resident.id, all_day=True)
        with pytest.raises(MissingStartTime):
            service.update_schedule(s.id, all_day=False)

    def test_update_invalid_interval(self, service, resident, schedule_type):
        s = _book(service, resident, schedule_type, "10:00", "11:00")
        with pytest.raises(InvalidInterval):
            service.update_schedule(s.id, end_time="09:00")

    def test_update_unknown_id(self, service):
        with pytest.raises(NotFound):
            service.update_schedule(999, title="Nope")

    def test_update_unknown_field(self, service, resident, schedule_type):
        s = _book(service, resident, schedule_type, "10:00", "11:00")
        with pytest.raises(InvalidField):
            service.update_schedule(s.id, colour="red")

    def test_update_unknown_resident(self, service, resident, schedule_type):
        s = _book(service, resident, schedule_type, "10:00", "11:00")
        with pytest.raises(UnknownReference):
            service.update_schedule(s.id, resident_id=999)


class TestDeleteAndRead:
    def test_delete_schedule(self, service, resident, schedule_type):
        s = _book(service, resident, schedule_type, "10:00", "11:00")
        service.delete_schedule(s.id)
        with pytest.raises(NotFound):
            service.get_schedule(s.id)

    def test_delete_unknown(self, service):
        with pytest.raises(NotFound):
            service.delete_schedule(999)

    def test_delete_frees_the_slot(self, service, resident, schedule_type):
        s = _book(service, resident, schedule_type, "10:00", "11:00")
        service.delete_schedule(s.id)
        _book(service, resident, schedule_type, "10:30", "11:30")

    def test_list_by_range_and_resident(
        self, service, resident, other_resident, schedule_type,
    ):
        _book(service, resident, schedule_type, "10:00", "11:00", day="2025-07-01")
        _book(service, resident, schedule_type, "10:00", "11:00", day="2025-07-15")
        _book(service, other_resident, schedule_type, "10:00", "11:00", day="2025-07-15")
        _book(service, resident, schedule_type, "10:00", "11:00", day="2025-08-01")

        in_range = service.list_schedules(start_date="2025-07-01", end_date="2025-07-31")
        assert len(in_range) == 3
        mine = service.list_schedules(start_date="2025-07-01", end_date="2025-07-31",
                                      resident_id=resident.id)
        assert [s.calendar_date.calendar_date.day for s in mine] == [1, 15]

    def test_service_has_conflict(self, service, resident, schedule_type):
        s = _book(service, resident, schedule_type, "10:00", "11:00")
        assert service.has_conflict(s.date_id, resident.id, "10:30", "11:30") is True
        assert service.has_conflict(s.date_id, resident.id, "11:00", "11:30") is False
        assert service.has_conflict(s.date_id, resident.id, "10:00", "11:00",
                                    exclude_schedule_id=s.id) is False


class TestStorageConstraints:
    def test_overlap_trigger_rejects_direct_insert(self, db, service, resident, schedule_type):
        s = _book(service, resident, schedule_type, "10:00", "11:00")
        with pytest.raises(sqlite3.IntegrityError, match="time_conflict"):
            with db.transaction() as conn:
                db.insert_schedule(conn, {
                    "date_id": s.date_id, "title": "Sneaky",
                    "start_time": time(10, 30), "end_time": time(11, 30),
                    "schedule_type_id": schedule_type.id, "resident_id": resident.id,
                })

    def test_overlap_trigger_allows_touching_insert(self, db, service, resident, schedule_type):
        s = _book(service, resident, schedule_type, "10:00", "11:00")
        with db.transaction() as conn:
            db.insert_schedule(conn, {
                "date_id": s.date_id, "title": "Next",
                "start_time": time(11, 0), "end_time": time(12, 0),
                "schedule_type_id": schedule_type.id, "resident_id": resident.id,
            })
        assert len(service.list_schedules(date=DAY)) == 2


class TestConcurrentWriters:
    def test_only_one_overlapping_create_wins(self, service, resident, schedule_type):
        def attempt(i):
            try:
                _book(service, resident, schedule_type, "10:00", "11:00", title=f"Try {i}")
                return "ok"
            except TimeConflict:
                return "conflict"

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(8)))

        assert outcomes.count("ok") == 1
        assert outcomes.count("conflict") == 7
        assert len(service.list_schedules(date=DAY)) == 1


class TestEndToEndScenario:
    def test_care_day_scenario(self, service, catalog):
        r = catalog.add_resident("R")
        ty = catalog.add_schedule_type("T", "#FF5733")

        s1 = service.create_schedule(DAY, ty.id, "S1", resident_id=r.id,
                                     start_time="10:00", end_time="11:00")
        with pytest.raises(TimeConflict):
            service.create_schedule(DAY, ty.id, "S2", resident_id=r.id,
                                    start_time="10:30", end_time="11:30")
        s3 = service.create_schedule(DAY, ty.id, "S3", resident_id=r.id,
                                     start_time="11:00", end_time="12:00")

        service.delete_schedule(s1.id)
        with pytest.raises(ReferentialConflict):
            catalog.delete_resident(r.id)

        service.delete_schedule(s3.id)
        catalog.delete_resident(r.id)
        with pytest.raises(NotFound):
            catalog.get_resident(r.id)
