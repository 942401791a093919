from __future__ import annotations

import unittest
from datetime import date, timedelta

from attendance_engine.errors import ApiError, ConfigurationError, ConflictError, NotFoundError, ValidationError
from attendance_engine.models import (
    ApprovalStatus,
    AttendanceRecord,
    AttendanceStatus,
    RegularizationRequest,
    RegularizationType,
)
from attendance_engine.services.attendance_records import (
    list_records,
    materialize_day,
    record_check_in,
    record_check_out,
)
from attendance_engine.services.geofence import LocationSample
from tests.sqlite_support import (
    OFFICE_LAT,
    OFFICE_LON,
    as_utc,
    local_ts,
    make_session,
    north_of_office,
    seed_department,
    seed_employee,
    seed_office,
    seed_settings,
)

DAY = date(2024, 1, 10)
AT_OFFICE = LocationSample(lat=OFFICE_LAT, lon=OFFICE_LON, accuracy_m=10)


def _sample(meters: float) -> LocationSample:
    lat, lon = north_of_office(meters)
    return LocationSample(lat=lat, lon=lon, accuracy_m=10)


class AttendanceRecordsTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        seed_settings(self.db)
        seed_office(self.db)
        seed_employee(self.db, 1)
        self.now = local_ts(DAY, 20, 0)

    def tearDown(self) -> None:
        self.db.close()

    def _check_in(self, hour: int, minute: int = 0, *, location: LocationSample | None = AT_OFFICE, day: date = DAY):
        ts = local_ts(day, hour, minute)
        return record_check_in(self.db, employee_id=1, ts_utc=ts, location=location, now_utc=ts)

    def _check_out(self, hour: int, minute: int = 0, *, location: LocationSample | None = AT_OFFICE, day: date = DAY):
        ts = local_ts(day, hour, minute)
        return record_check_out(self.db, employee_id=1, ts_utc=ts, location=location, now_utc=ts)


class CheckInTests(AttendanceRecordsTestCase):
    def test_on_time_check_in_is_present(self) -> None:
        record = self._check_in(9, 5)

        self.assertEqual(record.day_date, DAY)
        self.assertEqual(record.status, AttendanceStatus.PRESENT)
        self.assertEqual(as_utc(record.check_in), local_ts(DAY, 9, 5))
        self.assertTrue(record.geofence["is_valid"])
        self.assertEqual(record.geofence["outcome"], "INSIDE_RADIUS")
        self.assertEqual(record.check_in_location["lat"], OFFICE_LAT)

    def test_check_in_after_grace_is_late(self) -> None:
        record = self._check_in(9, 20)
        self.assertEqual(record.status, AttendanceStatus.LATE)

    def test_check_in_150m_away_is_inside_fence(self) -> None:
        record = self._check_in(9, 0, location=_sample(150))
        self.assertTrue(record.geofence["is_valid"])
        self.assertFalse(record.geofence["needs_review"])

    def test_check_in_500m_away_is_stored_and_flagged(self) -> None:
        record = self._check_in(9, 0, location=_sample(500))

        self.assertIsNotNone(record.check_in)
        self.assertEqual(record.status, AttendanceStatus.PRESENT)
        self.assertFalse(record.geofence["is_valid"])
        self.assertEqual(record.geofence["outcome"], "OUTSIDE_RADIUS")
        self.assertTrue(record.geofence["needs_review"])
        self.assertIsNone(record.geofence["validated_at"])

    def test_duplicate_check_in_is_rejected(self) -> None:
        first = self._check_in(9, 0)
        with self.assertRaises(ConflictError) as ctx:
            self._check_in(9, 30)

        self.assertEqual(ctx.exception.code, "DUPLICATE_CHECK_IN")
        self.db.expire_all()
        stored = self.db.get(AttendanceRecord, first.id)
        self.assertEqual(as_utc(stored.check_in), local_ts(DAY, 9, 0))

    def test_repeat_check_in_allowed_with_pending_regularization(self) -> None:
        self._check_in(9, 0, location=_sample(500))
        self.db.add(
            RegularizationRequest(
                employee_id=1,
                day_date=DAY,
                regularization_type=RegularizationType.CHECK_IN,
                requested_check_in=local_ts(DAY, 9, 0),
                requested_by="employee:1",
                status=ApprovalStatus.PENDING,
            )
        )
        self.db.commit()

        record = self._check_in(9, 5)
        self.assertEqual(as_utc(record.check_in), local_ts(DAY, 9, 5))
        self.assertEqual(record.status, AttendanceStatus.PRESENT)
        self.assertTrue(record.geofence["is_valid"])
        count = self.db.query(AttendanceRecord).filter(AttendanceRecord.employee_id == 1).count()
        self.assertEqual(count, 1)

    def test_check_in_in_future_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            record_check_in(self.db, employee_id=1, ts_utc=self.now + timedelta(hours=1), now_utc=self.now)
        self.assertEqual(ctx.exception.code, "CHECK_IN_IN_FUTURE")

    def test_small_clock_skew_is_tolerated(self) -> None:
        record = record_check_in(
            self.db,
            employee_id=1,
            ts_utc=self.now + timedelta(seconds=30),
            location=AT_OFFICE,
            now_utc=self.now,
        )
        self.assertEqual(record.day_date, DAY)

    def test_inactive_employee_is_forbidden(self) -> None:
        seed_employee(self.db, 2, is_active=False)
        with self.assertRaises(ApiError) as ctx:
            record_check_in(self.db, employee_id=2, ts_utc=local_ts(DAY, 9), now_utc=self.now)
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(ctx.exception.code, "EMPLOYEE_INACTIVE")

    def test_unknown_employee_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            record_check_in(self.db, employee_id=404, ts_utc=local_ts(DAY, 9), now_utc=self.now)

    def test_missing_settings_is_configuration_error(self) -> None:
        db = make_session()
        try:
            seed_employee(db, 1)
            with self.assertRaises(ConfigurationError):
                record_check_in(db, employee_id=1, ts_utc=local_ts(DAY, 9), now_utc=self.now)
        finally:
            db.close()

    def test_local_day_comes_from_configured_timezone(self) -> None:
        # 00:30 local on the 11th is still the 10th in UTC.
        ts = local_ts(DAY + timedelta(days=1), 0, 30)
        self.assertEqual(ts.date(), DAY)
        record = record_check_in(
            self.db,
            employee_id=1,
            ts_utc=ts,
            location=AT_OFFICE,
            now_utc=ts,
        )
        self.assertEqual(record.day_date, DAY + timedelta(days=1))


class BackdatedEventTests(AttendanceRecordsTestCase):
    def test_closed_day_cannot_be_checked_into_later(self) -> None:
        materialize_day(self.db, DAY, now_utc=local_ts(DAY + timedelta(days=1), 1, 0))

        with self.assertRaises(ValidationError) as ctx:
            record_check_in(
                self.db,
                employee_id=1,
                ts_utc=local_ts(DAY, 9, 0),
                location=AT_OFFICE,
                now_utc=local_ts(DAY + timedelta(days=2), 10, 0),
            )

        self.assertEqual(ctx.exception.code, "CHECK_IN_BACKDATED")
        self.db.expire_all()
        stored = self.db.query(AttendanceRecord).filter(AttendanceRecord.day_date == DAY).one()
        self.assertEqual(stored.status, AttendanceStatus.ABSENT)
        self.assertIsNone(stored.check_in)

    def test_earlier_time_on_the_same_day_is_rejected(self) -> None:
        # Posting 09:00 at 11:00 would dodge the late mark.
        with self.assertRaises(ValidationError) as ctx:
            record_check_in(
                self.db,
                employee_id=1,
                ts_utc=local_ts(DAY, 9, 0),
                location=AT_OFFICE,
                now_utc=local_ts(DAY, 11, 0),
            )
        self.assertEqual(ctx.exception.code, "CHECK_IN_BACKDATED")
        self.assertEqual(self.db.query(AttendanceRecord).count(), 0)

    def test_delay_within_clock_skew_is_accepted(self) -> None:
        record = record_check_in(
            self.db,
            employee_id=1,
            ts_utc=local_ts(DAY, 9, 0),
            location=AT_OFFICE,
            now_utc=local_ts(DAY, 9, 3),
        )
        self.assertEqual(as_utc(record.check_in), local_ts(DAY, 9, 0))

    def test_check_out_for_an_earlier_day_is_rejected(self) -> None:
        self._check_in(9, 0)
        with self.assertRaises(ValidationError) as ctx:
            record_check_out(
                self.db,
                employee_id=1,
                ts_utc=local_ts(DAY, 18, 0),
                location=AT_OFFICE,
                now_utc=local_ts(DAY + timedelta(days=1), 9, 0),
            )
        self.assertEqual(ctx.exception.code, "CHECK_OUT_BACKDATED")

    def test_skewed_time_on_the_next_local_day_is_rejected(self) -> None:
        # 00:02 tomorrow is inside the skew window but not on today's date.
        with self.assertRaises(ValidationError) as ctx:
            record_check_in(
                self.db,
                employee_id=1,
                ts_utc=local_ts(DAY + timedelta(days=1), 0, 2),
                now_utc=local_ts(DAY, 23, 59),
            )
        self.assertEqual(ctx.exception.code, "CHECK_IN_BACKDATED")


class CheckOutTests(AttendanceRecordsTestCase):
    def test_full_day_check_out_sets_work_hours(self) -> None:
        self._check_in(9, 10)
        record = self._check_out(18, 5)

        self.assertEqual(record.status, AttendanceStatus.PRESENT)
        self.assertEqual(record.work_hours, 8.92)
        self.assertEqual(as_utc(record.check_out), local_ts(DAY, 18, 5))

    def test_short_day_is_half_day(self) -> None:
        self._check_in(9, 0)
        record = self._check_out(12, 0)
        self.assertEqual(record.status, AttendanceStatus.HALF_DAY)
        self.assertEqual(record.work_hours, 3.0)

    def test_check_out_without_check_in_is_conflict(self) -> None:
        with self.assertRaises(ConflictError) as ctx:
            self._check_out(18, 0)
        self.assertEqual(ctx.exception.code, "NO_OPEN_CHECK_IN")

    def test_second_check_out_is_conflict(self) -> None:
        self._check_in(9, 0)
        self._check_out(18, 0)
        with self.assertRaises(ConflictError) as ctx:
            self._check_out(18, 30)
        self.assertEqual(ctx.exception.code, "ALREADY_CHECKED_OUT")

    def test_check_out_before_check_in_is_rejected(self) -> None:
        self._check_in(9, 0)
        with self.assertRaises(ValidationError) as ctx:
            self._check_out(8, 0)
        self.assertEqual(ctx.exception.code, "CHECK_OUT_BEFORE_CHECK_IN")

    def test_check_out_outside_fence_is_not_enforced_by_default(self) -> None:
        self._check_in(9, 0)
        record = self._check_out(18, 0, location=_sample(5000))
        self.assertEqual(record.geofence["check_out"]["outcome"], "NOT_ENFORCED")
        self.assertFalse(record.geofence["needs_review"])

    def test_flag_from_check_in_survives_check_out(self) -> None:
        self._check_in(9, 0, location=_sample(500))
        record = self._check_out(18, 0)
        self.assertTrue(record.geofence["needs_review"])


class ListRecordsTests(AttendanceRecordsTestCase):
    def test_lists_records_in_range(self) -> None:
        self._check_in(9, 0)
        records = list_records(self.db, employee_id=1, start_date=DAY - timedelta(days=3), end_date=DAY)
        self.assertEqual([record.day_date for record in records], [DAY])

    def test_status_filter(self) -> None:
        self._check_in(9, 0)
        records = list_records(
            self.db,
            employee_id=1,
            start_date=DAY,
            end_date=DAY,
            status=AttendanceStatus.LATE,
        )
        self.assertEqual(records, [])

    def test_inverted_range_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            list_records(self.db, employee_id=1, start_date=DAY, end_date=DAY - timedelta(days=1))
        self.assertEqual(ctx.exception.code, "INVALID_DATE_RANGE")

    def test_oversized_range_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            list_records(self.db, employee_id=1, start_date=DAY, end_date=DAY + timedelta(days=400))
        self.assertEqual(ctx.exception.code, "DATE_RANGE_TOO_LARGE")

    def test_department_filter_and_pagination(self) -> None:
        seed_department(self.db, 10)
        seed_employee(self.db, 2, department_id=10)
        seed_employee(self.db, 3, department_id=10)
        closed_at = local_ts(DAY + timedelta(days=1), 1, 0)
        materialize_day(self.db, DAY, now_utc=closed_at)
        materialize_day(self.db, DAY - timedelta(days=1), now_utc=closed_at)

        records = list_records(
            self.db,
            employee_id=None,
            start_date=DAY - timedelta(days=1),
            end_date=DAY,
            department_id=10,
        )
        self.assertEqual(
            [(record.day_date, record.employee_id) for record in records],
            [(DAY - timedelta(days=1), 2), (DAY - timedelta(days=1), 3), (DAY, 2), (DAY, 3)],
        )

        page = list_records(
            self.db,
            employee_id=None,
            start_date=DAY - timedelta(days=1),
            end_date=DAY,
            department_id=10,
            limit=2,
            offset=2,
        )
        self.assertEqual([(record.day_date, record.employee_id) for record in page], [(DAY, 2), (DAY, 3)])


if __name__ == "__main__":
    unittest.main()
