from __future__ import annotations

import unittest
from datetime import date, timedelta
from unittest.mock import patch

from sqlalchemy import select

from attendance_engine.errors import ApiError, ConflictError, NotFoundError, ValidationError
from attendance_engine.models import (
    ApprovalStatus,
    AttendanceRecord,
    AttendanceStatus,
    AuditLog,
    LeaveRequest,
    LeaveType,
    RecomputeJob,
    RegularizationType,
    RequestKind,
)
from attendance_engine.services.approvals import (
    JOB_STATUS_DONE,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_RUNNING,
    WORKFLOWS,
    enqueue_recompute,
    list_employee_requests,
    list_recompute_jobs,
    list_requests,
    retry_pending_recomputations,
    submit_leave,
    submit_regularization,
    submit_wfh,
)
from attendance_engine.services.attendance_records import record_check_in, record_check_out
from attendance_engine.services.geofence import LocationSample
from attendance_engine.settings import Settings
from tests.sqlite_support import (
    OFFICE_LAT,
    OFFICE_LON,
    as_utc,
    local_ts,
    make_session,
    north_of_office,
    seed_employee,
    seed_office,
    seed_settings,
)

DAY = date(2024, 1, 10)
APPROVALS = "attendance_engine.services.approvals"
AT_OFFICE = LocationSample(lat=OFFICE_LAT, lon=OFFICE_LON, accuracy_m=10)


class ApprovalWorkflowTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        seed_settings(self.db)
        seed_office(self.db)
        seed_employee(self.db, 1)
        self.now = local_ts(date(2024, 1, 12), 20, 0)

    def tearDown(self) -> None:
        self.db.close()

    def _records(self, employee_id: int = 1) -> dict[date, AttendanceRecord]:
        self.db.expire_all()
        rows = self.db.scalars(
            select(AttendanceRecord).where(AttendanceRecord.employee_id == employee_id)
        ).all()
        return {row.day_date: row for row in rows}

    def _review(self, kind: RequestKind, request_id: int, decision: ApprovalStatus = ApprovalStatus.APPROVED):
        return WORKFLOWS[kind].review(
            self.db,
            request_id,
            decision=decision,
            reviewer_id="admin:7",
            comment="ok",
            now_utc=self.now,
        )

    def _leave(self, start: date, end: date, leave_type: LeaveType = LeaveType.FULL_DAY) -> LeaveRequest:
        return submit_leave(
            self.db,
            employee_id=1,
            start_date=start,
            end_date=end,
            leave_type=leave_type,
            requested_by="employee:1",
        )


class LeaveWorkflowTests(ApprovalWorkflowTestCase):
    def test_submit_leave_is_pending_with_day_count(self) -> None:
        request = self._leave(DAY, DAY + timedelta(days=2))
        self.assertEqual(request.status, ApprovalStatus.PENDING)
        self.assertEqual(request.number_of_days, 3.0)

    def test_approved_leave_marks_each_covered_day(self) -> None:
        request = self._leave(DAY, DAY + timedelta(days=2))
        outcome = self._review(RequestKind.LEAVE, request.id)

        self.assertTrue(outcome.recomputed)
        self.assertEqual(outcome.request.status, ApprovalStatus.APPROVED)
        self.assertEqual(outcome.request.reviewed_by, "admin:7")
        records = self._records()
        for offset in range(3):
            record = records[DAY + timedelta(days=offset)]
            self.assertEqual(record.status, AttendanceStatus.LEAVE)
            self.assertTrue(record.is_leave)

    def test_future_leave_days_wait_for_the_nightly_job(self) -> None:
        self.now = local_ts(DAY, 20, 0)
        request = self._leave(DAY, DAY + timedelta(days=2))
        outcome = self._review(RequestKind.LEAVE, request.id)

        self.assertEqual([record.day_date for record in outcome.records], [DAY])
        self.assertEqual(set(self._records()), {DAY})

    def test_leave_overrides_existing_check_in(self) -> None:
        record_check_in(
            self.db,
            employee_id=1,
            ts_utc=local_ts(DAY, 10, 30),
            location=AT_OFFICE,
            now_utc=local_ts(DAY, 10, 30),
        )
        request = self._leave(DAY, DAY)
        self._review(RequestKind.LEAVE, request.id)

        record = self._records()[DAY]
        self.assertEqual(record.status, AttendanceStatus.LEAVE)
        self.assertIsNotNone(record.check_in)

    def test_rejected_leave_changes_nothing(self) -> None:
        request = self._leave(DAY, DAY)
        outcome = self._review(RequestKind.LEAVE, request.id, ApprovalStatus.REJECTED)

        self.assertFalse(outcome.recomputed)
        self.assertEqual(outcome.request.status, ApprovalStatus.REJECTED)
        self.assertEqual(self._records(), {})
        self.assertEqual(outcome.notification_payload["decision"], "rejected")

    def test_overlapping_pending_leave_is_conflict(self) -> None:
        self._leave(DAY, DAY + timedelta(days=2))
        with self.assertRaises(ConflictError) as ctx:
            self._leave(DAY + timedelta(days=1), DAY + timedelta(days=4))
        self.assertEqual(ctx.exception.code, "DUPLICATE_PENDING_REQUEST")

    def test_rejected_leave_does_not_block_resubmission(self) -> None:
        request = self._leave(DAY, DAY)
        self._review(RequestKind.LEAVE, request.id, ApprovalStatus.REJECTED)
        again = self._leave(DAY, DAY)
        self.assertEqual(again.status, ApprovalStatus.PENDING)

    def test_second_review_is_invalid_transition(self) -> None:
        request = self._leave(DAY, DAY)
        self._review(RequestKind.LEAVE, request.id)
        with self.assertRaises(ConflictError) as ctx:
            self._review(RequestKind.LEAVE, request.id, ApprovalStatus.REJECTED)
        self.assertEqual(ctx.exception.code, "INVALID_TRANSITION")

    def test_review_of_unknown_request_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            self._review(RequestKind.LEAVE, 999)
        self.assertEqual(ctx.exception.code, "NOT_FOUND")

    def test_pending_is_not_a_decision(self) -> None:
        request = self._leave(DAY, DAY)
        with self.assertRaises(ValidationError) as ctx:
            self._review(RequestKind.LEAVE, request.id, ApprovalStatus.PENDING)
        self.assertEqual(ctx.exception.code, "INVALID_DECISION")

    def test_half_day_leave_must_cover_one_date(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self._leave(DAY, DAY + timedelta(days=1), LeaveType.HALF_DAY)
        self.assertEqual(ctx.exception.code, "HALF_DAY_LEAVE_RANGE")
        request = self._leave(DAY, DAY, LeaveType.HALF_DAY)
        self.assertEqual(request.number_of_days, 0.5)

    def test_inverted_leave_range_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self._leave(DAY, DAY - timedelta(days=1))
        self.assertEqual(ctx.exception.code, "INVALID_DATE_RANGE")

    def test_inactive_employee_cannot_submit(self) -> None:
        seed_employee(self.db, 2, is_active=False)
        with self.assertRaises(ApiError) as ctx:
            submit_wfh(self.db, employee_id=2, day_date=DAY, requested_by="employee:2")
        self.assertEqual(ctx.exception.status_code, 403)


class RegularizationWorkflowTests(ApprovalWorkflowTestCase):
    def test_approved_regularization_turns_late_into_present(self) -> None:
        record_check_in(
            self.db,
            employee_id=1,
            ts_utc=local_ts(DAY, 10, 30),
            location=AT_OFFICE,
            now_utc=local_ts(DAY, 10, 30),
        )
        self.assertEqual(self._records()[DAY].status, AttendanceStatus.LATE)

        request = submit_regularization(
            self.db,
            employee_id=1,
            day_date=DAY,
            regularization_type=RegularizationType.BOTH,
            requested_check_in=local_ts(DAY, 9, 10),
            requested_check_out=local_ts(DAY, 18, 5),
            requested_by="employee:1",
        )
        outcome = self._review(RequestKind.REGULARIZATION, request.id)

        self.assertTrue(outcome.recomputed)
        record = self._records()[DAY]
        self.assertEqual(record.status, AttendanceStatus.PRESENT)
        self.assertEqual(record.work_hours, 8.92)
        self.assertTrue(record.regularized)
        self.assertEqual(as_utc(record.check_in), local_ts(DAY, 9, 10))
        self.assertEqual(as_utc(record.check_out), local_ts(DAY, 18, 5))
        self.assertTrue(record.geofence["regularized"])
        self.assertEqual(record.geofence["regularization_id"], request.id)

    def test_regularization_creates_missing_day(self) -> None:
        request = submit_regularization(
            self.db,
            employee_id=1,
            day_date=DAY,
            regularization_type=RegularizationType.BOTH,
            requested_check_in=local_ts(DAY, 9, 0),
            requested_check_out=local_ts(DAY, 18, 0),
            requested_by="employee:1",
        )
        self._review(RequestKind.REGULARIZATION, request.id)
        record = self._records()[DAY]
        self.assertEqual(record.status, AttendanceStatus.PRESENT)

    def test_waive_late_keeps_late_check_in_present(self) -> None:
        request = submit_regularization(
            self.db,
            employee_id=1,
            day_date=DAY,
            regularization_type=RegularizationType.BOTH,
            requested_check_in=local_ts(DAY, 10, 0),
            requested_check_out=local_ts(DAY, 19, 0),
            waive_late=True,
            requested_by="employee:1",
        )
        self._review(RequestKind.REGULARIZATION, request.id)
        record = self._records()[DAY]
        self.assertEqual(record.status, AttendanceStatus.PRESENT)
        self.assertTrue(record.late_waived)

    def test_requested_times_are_required_by_type(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            submit_regularization(
                self.db,
                employee_id=1,
                day_date=DAY,
                regularization_type=RegularizationType.CHECK_OUT,
                requested_check_in=local_ts(DAY, 9, 0),
                requested_by="employee:1",
            )
        self.assertEqual(ctx.exception.code, "REQUESTED_CHECK_OUT_REQUIRED")

    def test_requested_times_must_fall_on_the_day(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            submit_regularization(
                self.db,
                employee_id=1,
                day_date=DAY,
                regularization_type=RegularizationType.CHECK_IN,
                requested_check_in=local_ts(DAY + timedelta(days=1), 9, 0),
                requested_by="employee:1",
            )
        self.assertEqual(ctx.exception.code, "REGULARIZATION_DAY_MISMATCH")

    def test_check_out_correction_without_check_in_is_rejected_on_submit(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            submit_regularization(
                self.db,
                employee_id=1,
                day_date=DAY,
                regularization_type=RegularizationType.CHECK_OUT,
                requested_check_out=local_ts(DAY, 18, 0),
                requested_by="employee:1",
            )
        self.assertEqual(ctx.exception.code, "REGULARIZATION_WITHOUT_CHECK_IN")
        self.assertEqual(list_requests(self.db, RequestKind.REGULARIZATION), [])

    def test_check_out_correction_before_stored_check_in_is_rejected(self) -> None:
        record_check_in(
            self.db,
            employee_id=1,
            ts_utc=local_ts(DAY, 9, 0),
            location=AT_OFFICE,
            now_utc=local_ts(DAY, 9, 0),
        )
        with self.assertRaises(ValidationError) as ctx:
            submit_regularization(
                self.db,
                employee_id=1,
                day_date=DAY,
                regularization_type=RegularizationType.CHECK_OUT,
                requested_check_out=local_ts(DAY, 8, 30),
                requested_by="employee:1",
            )
        self.assertEqual(ctx.exception.code, "CHECK_OUT_BEFORE_CHECK_IN")

    def test_check_out_correction_is_merged_with_stored_check_in(self) -> None:
        record_check_in(
            self.db,
            employee_id=1,
            ts_utc=local_ts(DAY, 9, 0),
            location=AT_OFFICE,
            now_utc=local_ts(DAY, 9, 0),
        )
        request = submit_regularization(
            self.db,
            employee_id=1,
            day_date=DAY,
            regularization_type=RegularizationType.CHECK_OUT,
            requested_check_out=local_ts(DAY, 18, 0),
            requested_by="employee:1",
        )
        outcome = self._review(RequestKind.REGULARIZATION, request.id)

        self.assertTrue(outcome.recomputed)
        record = self._records()[DAY]
        self.assertEqual(record.status, AttendanceStatus.PRESENT)
        self.assertEqual(record.work_hours, 9.0)
        self.assertEqual(as_utc(record.check_in), local_ts(DAY, 9, 0))

    def test_second_pending_regularization_is_conflict(self) -> None:
        kwargs = {
            "employee_id": 1,
            "day_date": DAY,
            "regularization_type": RegularizationType.CHECK_IN,
            "requested_check_in": local_ts(DAY, 9, 0),
            "requested_by": "employee:1",
        }
        submit_regularization(self.db, **kwargs)
        with self.assertRaises(ConflictError):
            submit_regularization(self.db, **kwargs)


class WFHWorkflowTests(ApprovalWorkflowTestCase):
    def _check_in_far_away(self) -> None:
        lat, lon = north_of_office(5000)
        record_check_in(
            self.db,
            employee_id=1,
            ts_utc=local_ts(DAY, 9, 0),
            location=LocationSample(lat=lat, lon=lon, accuracy_m=10),
            now_utc=local_ts(DAY, 9, 0),
        )
        record_check_out(self.db, employee_id=1, ts_utc=local_ts(DAY, 18, 0), now_utc=local_ts(DAY, 18, 0))

    def test_rejected_wfh_leaves_record_unchanged(self) -> None:
        self._check_in_far_away()
        before = self._records()[DAY]
        before_status = before.status
        before_geofence = dict(before.geofence)

        request = submit_wfh(self.db, employee_id=1, day_date=DAY, requested_by="employee:1")
        self._review(RequestKind.WFH, request.id, ApprovalStatus.REJECTED)

        after = self._records()[DAY]
        self.assertEqual(after.status, before_status)
        self.assertEqual(after.geofence, before_geofence)
        self.assertTrue(after.geofence["needs_review"])

    def test_approved_wfh_bypasses_fence_on_existing_day(self) -> None:
        self._check_in_far_away()
        request = submit_wfh(self.db, employee_id=1, day_date=DAY, requested_by="employee:1")
        outcome = self._review(RequestKind.WFH, request.id)

        self.assertTrue(outcome.recomputed)
        record = self._records()[DAY]
        self.assertEqual(record.status, AttendanceStatus.WFH)
        self.assertTrue(record.is_wfh)
        self.assertTrue(record.geofence["wfh_bypass"])
        self.assertFalse(record.geofence["needs_review"])
        self.assertEqual(record.geofence["outcome"], "WFH_BYPASS")

    def test_duplicate_wfh_is_conflict(self) -> None:
        submit_wfh(self.db, employee_id=1, day_date=DAY, requested_by="employee:1")
        with self.assertRaises(ConflictError):
            submit_wfh(self.db, employee_id=1, day_date=DAY, requested_by="employee:1")

    def test_requests_listed_per_kind(self) -> None:
        submit_wfh(self.db, employee_id=1, day_date=DAY, requested_by="employee:1")
        self._leave(DAY + timedelta(days=1), DAY + timedelta(days=1))
        grouped = list_employee_requests(self.db, 1)
        self.assertEqual(len(grouped[RequestKind.WFH]), 1)
        self.assertEqual(len(grouped[RequestKind.LEAVE]), 1)
        self.assertEqual(grouped[RequestKind.REGULARIZATION], [])


class RecomputeQueueTests(ApprovalWorkflowTestCase):
    def test_failed_recomputation_keeps_decision_and_queues_job(self) -> None:
        request = self._leave(DAY, DAY)
        with patch.object(WORKFLOWS[RequestKind.LEAVE], "on_approve", side_effect=RuntimeError("lock wait")):
            outcome = self._review(RequestKind.LEAVE, request.id)

        self.assertFalse(outcome.recomputed)
        self.assertIsNotNone(outcome.recomputation_error)
        self.assertEqual(outcome.recomputation_error.code, "RECOMPUTATION_FAILED")
        self.db.expire_all()
        self.assertEqual(self.db.get(LeaveRequest, request.id).status, ApprovalStatus.APPROVED)

        job = self.db.get(RecomputeJob, outcome.recomputation_error.job_id)
        self.assertEqual(job.status, JOB_STATUS_PENDING)
        self.assertEqual(job.idempotency_key, f"recompute:leave:{request.id}")
        self.assertIn("lock wait", job.last_error)
        self.assertEqual(self._records(), {})

        processed = retry_pending_recomputations(now_utc=self.now, db=self.db)

        self.assertEqual([item.status for item in processed], [JOB_STATUS_DONE])
        self.assertEqual(self._records()[DAY].status, AttendanceStatus.LEAVE)
        actions = self.db.scalars(select(AuditLog.action)).all()
        self.assertIn("RECOMPUTE_JOB_DONE", actions)

    def test_failing_retry_backs_off(self) -> None:
        request = self._leave(DAY, DAY)
        with patch.object(WORKFLOWS[RequestKind.LEAVE], "on_approve", side_effect=RuntimeError("still down")):
            outcome = self._review(RequestKind.LEAVE, request.id)
            processed = retry_pending_recomputations(now_utc=self.now, db=self.db)

        self.assertEqual(len(processed), 1)
        job = processed[0]
        self.assertEqual(job.id, outcome.recomputation_error.job_id)
        self.assertEqual(job.status, JOB_STATUS_PENDING)
        self.assertEqual(job.attempts, 1)
        self.assertEqual(as_utc(job.scheduled_at_utc), self.now + timedelta(minutes=2))

        # Not due yet.
        self.assertEqual(retry_pending_recomputations(now_utc=self.now, db=self.db), [])
        processed = retry_pending_recomputations(now_utc=self.now + timedelta(minutes=3), db=self.db)
        self.assertEqual(processed[0].status, JOB_STATUS_DONE)

    def test_enqueue_is_idempotent_per_request(self) -> None:
        request = self._leave(DAY, DAY)
        first = enqueue_recompute(self.db, kind=RequestKind.LEAVE, request_id=request.id, now_utc=self.now)
        second = enqueue_recompute(self.db, kind=RequestKind.LEAVE, request_id=request.id, now_utc=self.now)
        self.assertEqual(first.id, second.id)
        self.assertEqual(len(list_recompute_jobs(self.db)), 1)

    def test_exhausted_job_is_flagged_failed_and_still_retried(self) -> None:
        settings = Settings(recompute_max_attempts=2, recompute_max_backoff_minutes=4)
        request = self._leave(DAY, DAY)
        with patch(f"{APPROVALS}.get_settings", return_value=settings):
            with patch.object(WORKFLOWS[RequestKind.LEAVE], "on_approve", side_effect=RuntimeError("down")):
                self._review(RequestKind.LEAVE, request.id)
            with patch.object(WORKFLOWS[RequestKind.LEAVE], "apply", side_effect=RuntimeError("down")):
                first = retry_pending_recomputations(now_utc=self.now, db=self.db)[0]
                self.assertEqual(first.status, JOB_STATUS_PENDING)
                self.assertEqual(as_utc(first.scheduled_at_utc), self.now + timedelta(minutes=2))

                later = self.now + timedelta(minutes=2)
                second = retry_pending_recomputations(now_utc=later, db=self.db)[0]
                self.assertEqual(second.status, JOB_STATUS_FAILED)
                self.assertEqual(second.attempts, 2)
                self.assertEqual(as_utc(second.scheduled_at_utc), later + timedelta(minutes=4))

                later += timedelta(minutes=4)
                third = retry_pending_recomputations(now_utc=later, db=self.db)[0]
                self.assertEqual(third.status, JOB_STATUS_FAILED)
                # Backoff stops growing at the configured ceiling.
                self.assertEqual(as_utc(third.scheduled_at_utc), later + timedelta(minutes=4))

            later += timedelta(minutes=4)
            done = retry_pending_recomputations(now_utc=later, db=self.db)

        self.assertEqual([job.status for job in done], [JOB_STATUS_DONE])
        self.assertEqual(self._records()[DAY].status, AttendanceStatus.LEAVE)

    def test_running_job_is_taken_over_after_its_lease(self) -> None:
        request = self._leave(DAY, DAY)
        with patch.object(WORKFLOWS[RequestKind.LEAVE], "on_approve", side_effect=RuntimeError("down")):
            outcome = self._review(RequestKind.LEAVE, request.id)
        job = self.db.get(RecomputeJob, outcome.recomputation_error.job_id)
        job.status = JOB_STATUS_RUNNING
        job.scheduled_at_utc = self.now
        self.db.commit()

        # Still inside the lease of the worker that claimed it.
        self.assertEqual(retry_pending_recomputations(now_utc=self.now + timedelta(minutes=1), db=self.db), [])
        enqueue_recompute(self.db, kind=RequestKind.LEAVE, request_id=request.id, now_utc=self.now)
        self.db.expire_all()
        self.assertEqual(self.db.get(RecomputeJob, job.id).status, JOB_STATUS_RUNNING)

        processed = retry_pending_recomputations(now_utc=self.now + timedelta(minutes=16), db=self.db)
        self.assertEqual([item.status for item in processed], [JOB_STATUS_DONE])
        self.assertEqual(self._records()[DAY].status, AttendanceStatus.LEAVE)


class RequestListingTests(ApprovalWorkflowTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.full = self._leave(DAY, DAY + timedelta(days=1))
        self.half = self._leave(DAY + timedelta(days=5), DAY + timedelta(days=5), LeaveType.HALF_DAY)

    def test_leave_type_filter(self) -> None:
        rows = list_requests(self.db, RequestKind.LEAVE, leave_type=LeaveType.HALF_DAY)
        self.assertEqual([row.id for row in rows], [self.half.id])

    def test_date_range_keeps_overlapping_leaves(self) -> None:
        rows = list_requests(
            self.db,
            RequestKind.LEAVE,
            start_date=DAY + timedelta(days=1),
            end_date=DAY + timedelta(days=3),
        )
        self.assertEqual([row.id for row in rows], [self.full.id])

        rows = list_requests(self.db, RequestKind.LEAVE, start_date=DAY + timedelta(days=2))
        self.assertEqual([row.id for row in rows], [self.half.id])

    def test_date_range_on_single_day_requests(self) -> None:
        submit_wfh(self.db, employee_id=1, day_date=DAY, requested_by="employee:1")
        self.assertEqual(len(list_requests(self.db, RequestKind.WFH, start_date=DAY, end_date=DAY)), 1)
        self.assertEqual(list_requests(self.db, RequestKind.WFH, start_date=DAY + timedelta(days=1)), [])

    def test_leave_type_rejected_for_other_kinds(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            list_requests(self.db, RequestKind.WFH, leave_type=LeaveType.FULL_DAY)
        self.assertEqual(ctx.exception.code, "INVALID_FILTER")

    def test_reversed_range_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            list_requests(self.db, RequestKind.LEAVE, start_date=DAY, end_date=DAY - timedelta(days=1))
        self.assertEqual(ctx.exception.code, "INVALID_DATE_RANGE")

    def test_limit_and_offset(self) -> None:
        self.assertEqual(len(list_requests(self.db, RequestKind.LEAVE, limit=1)), 1)
        self.assertEqual(len(list_requests(self.db, RequestKind.LEAVE, limit=5, offset=1)), 1)


if __name__ == "__main__":
    unittest.main()
