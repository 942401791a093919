from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
import logging
from typing import Any, Generic, TypeVar

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from attendance_engine.audit import AuditEntity, log_audit
from attendance_engine.db import SessionLocal, guard_persistence
from attendance_engine.errors import (
    ApiError,
    ConflictError,
    NotFoundError,
    RecomputationError,
    ValidationError,
)
from attendance_engine.models import (
    ApprovalStatus,
    AttendanceRecord,
    AuditActorType,
    Employee,
    LeaveRequest,
    LeaveType,
    RecomputeJob,
    RegularizationRequest,
    RegularizationType,
    RequestKind,
    WFHRequest,
)
from attendance_engine.services.attendance_records import (
    apply_leave_or_wfh_approval,
    apply_regularization,
)
from attendance_engine.services.effective_settings import effective_settings_for_employee
from attendance_engine.services.notifications import build_review_payload
from attendance_engine.settings import get_settings

logger = logging.getLogger("attendance_engine.approvals")

RequestT = TypeVar("RequestT", LeaveRequest, WFHRequest, RegularizationRequest)

ConflictFinder = Callable[[Session, Any], Any]
ApprovalEffect = Callable[[Session, int, datetime], list[AttendanceRecord]]

MAX_LEAVE_RANGE_DAYS = 366

JOB_STATUS_PENDING = "PENDING"
JOB_STATUS_RUNNING = "RUNNING"
JOB_STATUS_DONE = "DONE"
JOB_STATUS_FAILED = "FAILED"


def _normalize_ts(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _stored_ts(value: datetime | None) -> datetime | None:
    return _normalize_ts(value) if value is not None else None


@dataclass
class ReviewOutcome:
    kind: RequestKind
    request: Any
    decision: ApprovalStatus
    records: list[AttendanceRecord] = field(default_factory=list)
    recomputation_error: RecomputationError | None = None
    notification_payload: dict[str, Any] | None = None

    @property
    def recomputed(self) -> bool:
        return self.decision == ApprovalStatus.APPROVED and self.recomputation_error is None


class ReviewWorkflow(Generic[RequestT]):
    """Pending -> approved | rejected for one request model.

    The decision is committed before the approval side effect runs, so a
    failing recomputation never undoes a reviewer's decision. Failed side
    effects are queued as RecomputeJob rows and retried in the background.
    """

    def __init__(
        self,
        kind: RequestKind,
        model: type[RequestT],
        *,
        find_conflict: ConflictFinder,
        on_approve: ApprovalEffect,
    ) -> None:
        self.kind = kind
        self.model = model
        self.find_conflict = find_conflict
        self.on_approve = on_approve

    def get(self, db: Session, request_id: int) -> RequestT:
        request = db.get(self.model, request_id)
        if request is None:
            raise NotFoundError("NOT_FOUND", f"{self.kind.value} request not found.")
        return request

    def submit(self, db: Session, request: RequestT) -> RequestT:
        with guard_persistence(db, operation=f"submit_{self.kind.value}"):
            # Serializes submissions of the same employee so two racing
            # requests cannot both pass the conflict check.
            db.scalar(select(Employee.id).where(Employee.id == request.employee_id).with_for_update())
            conflict = self.find_conflict(db, request)
            if conflict is not None:
                db.rollback()
                raise ConflictError(
                    "DUPLICATE_PENDING_REQUEST",
                    f"A {conflict.status.value} {self.kind.value} request already covers this date.",
                )
            request.status = ApprovalStatus.PENDING
            db.add(request)
            db.commit()
            db.refresh(request)

        logger.info(
            "request_submitted",
            extra={
                "kind": self.kind.value,
                "review_request_id": request.id,
                "employee_id": request.employee_id,
            },
        )
        return request

    def review(
        self,
        db: Session,
        request_id: int,
        *,
        decision: ApprovalStatus,
        reviewer_id: str,
        comment: str | None = None,
        now_utc: datetime | None = None,
    ) -> ReviewOutcome:
        if decision == ApprovalStatus.PENDING:
            raise ValidationError("INVALID_DECISION", "Decision must be approved or rejected.")

        now = _normalize_ts(now_utc)
        with guard_persistence(db, operation=f"review_{self.kind.value}"):
            request = db.scalar(select(self.model).where(self.model.id == request_id).with_for_update())
            if request is None:
                db.rollback()
                raise NotFoundError("NOT_FOUND", f"{self.kind.value} request not found.")
            if request.status != ApprovalStatus.PENDING:
                current_status = request.status.value
                db.rollback()
                raise ConflictError(
                    "INVALID_TRANSITION",
                    f"Request is already {current_status}.",
                )
            request.status = decision
            request.reviewed_by = reviewer_id
            request.reviewed_at = now
            request.review_comment = comment
            db.commit()
            db.refresh(request)

        logger.info(
            "request_reviewed",
            extra={
                "kind": self.kind.value,
                "review_request_id": request.id,
                "employee_id": request.employee_id,
                "decision": decision.value,
                "reviewer_id": reviewer_id,
            },
        )

        outcome = ReviewOutcome(kind=self.kind, request=request, decision=decision)
        if decision == ApprovalStatus.APPROVED:
            try:
                outcome.records = self.on_approve(db, request.id, now)
            except Exception as exc:
                db.rollback()
                job = enqueue_recompute(db, kind=self.kind, request_id=request.id, error=exc, now_utc=now)
                outcome.recomputation_error = RecomputationError(
                    "Request approved but attendance recomputation failed; it will be retried.",
                    job_id=job.id,
                )
                logger.exception(
                    "recomputation_failed",
                    extra={
                        "kind": self.kind.value,
                        "review_request_id": request.id,
                        "job_id": job.id,
                    },
                )

        # Delivered by the caller once the response is out.
        outcome.notification_payload = build_review_payload(self.kind, request, decision)
        return outcome

    def apply(self, db: Session, request_id: int, now_utc: datetime | None = None) -> list[AttendanceRecord]:
        return self.on_approve(db, request_id, _normalize_ts(now_utc))


def _find_leave_conflict(db: Session, request: LeaveRequest) -> LeaveRequest | None:
    return db.scalar(
        select(LeaveRequest)
        .where(
            LeaveRequest.employee_id == request.employee_id,
            LeaveRequest.status.in_((ApprovalStatus.PENDING, ApprovalStatus.APPROVED)),
            LeaveRequest.start_date <= request.end_date,
            LeaveRequest.end_date >= request.start_date,
        )
        .order_by(LeaveRequest.id.asc())
        .limit(1)
    )


def _find_wfh_conflict(db: Session, request: WFHRequest) -> WFHRequest | None:
    return db.scalar(
        select(WFHRequest)
        .where(
            WFHRequest.employee_id == request.employee_id,
            WFHRequest.status.in_((ApprovalStatus.PENDING, ApprovalStatus.APPROVED)),
            WFHRequest.day_date == request.day_date,
        )
        .limit(1)
    )


def _find_regularization_conflict(db: Session, request: RegularizationRequest) -> RegularizationRequest | None:
    # Approved regularizations do not block a later compensating correction.
    return db.scalar(
        select(RegularizationRequest)
        .where(
            RegularizationRequest.employee_id == request.employee_id,
            RegularizationRequest.status == ApprovalStatus.PENDING,
            RegularizationRequest.day_date == request.day_date,
        )
        .limit(1)
    )


def _apply_leave(db: Session, request_id: int, now_utc: datetime) -> list[AttendanceRecord]:
    return apply_leave_or_wfh_approval(db, kind=RequestKind.LEAVE, request_id=request_id, now_utc=now_utc)


def _apply_wfh(db: Session, request_id: int, now_utc: datetime) -> list[AttendanceRecord]:
    return apply_leave_or_wfh_approval(db, kind=RequestKind.WFH, request_id=request_id, now_utc=now_utc)


def _apply_regularization(db: Session, request_id: int, now_utc: datetime) -> list[AttendanceRecord]:
    return [apply_regularization(db, request_id, now_utc=now_utc)]


WORKFLOWS: dict[RequestKind, ReviewWorkflow[Any]] = {
    RequestKind.LEAVE: ReviewWorkflow(
        RequestKind.LEAVE,
        LeaveRequest,
        find_conflict=_find_leave_conflict,
        on_approve=_apply_leave,
    ),
    RequestKind.WFH: ReviewWorkflow(
        RequestKind.WFH,
        WFHRequest,
        find_conflict=_find_wfh_conflict,
        on_approve=_apply_wfh,
    ),
    RequestKind.REGULARIZATION: ReviewWorkflow(
        RequestKind.REGULARIZATION,
        RegularizationRequest,
        find_conflict=_find_regularization_conflict,
        on_approve=_apply_regularization,
    ),
}


def get_workflow(kind: RequestKind) -> ReviewWorkflow[Any]:
    return WORKFLOWS[kind]


def _get_active_employee(db: Session, employee_id: int) -> Employee:
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise NotFoundError("EMPLOYEE_NOT_FOUND", "Employee not found.")
    if not employee.is_active:
        raise ApiError(
            status_code=403,
            code="EMPLOYEE_INACTIVE",
            message="Inactive employee cannot submit requests.",
        )
    return employee


def submit_leave(
    db: Session,
    *,
    employee_id: int,
    start_date: date,
    end_date: date,
    leave_type: LeaveType,
    requested_by: str,
    reason: str | None = None,
) -> LeaveRequest:
    _get_active_employee(db, employee_id)
    if end_date < start_date:
        raise ValidationError("INVALID_DATE_RANGE", "end_date must be greater than or equal to start_date.")
    if (end_date - start_date).days >= MAX_LEAVE_RANGE_DAYS:
        raise ValidationError("DATE_RANGE_TOO_LARGE", f"A leave can cover at most {MAX_LEAVE_RANGE_DAYS} days.")
    if leave_type == LeaveType.HALF_DAY and start_date != end_date:
        raise ValidationError("HALF_DAY_LEAVE_RANGE", "A half-day leave must cover a single date.")

    number_of_days = 0.5 if leave_type == LeaveType.HALF_DAY else float((end_date - start_date).days + 1)
    request = LeaveRequest(
        employee_id=employee_id,
        start_date=start_date,
        end_date=end_date,
        leave_type=leave_type,
        number_of_days=number_of_days,
        reason=reason,
        requested_by=requested_by,
    )
    return WORKFLOWS[RequestKind.LEAVE].submit(db, request)


def submit_wfh(
    db: Session,
    *,
    employee_id: int,
    day_date: date,
    requested_by: str,
    reason: str | None = None,
) -> WFHRequest:
    _get_active_employee(db, employee_id)
    request = WFHRequest(
        employee_id=employee_id,
        day_date=day_date,
        reason=reason,
        requested_by=requested_by,
    )
    return WORKFLOWS[RequestKind.WFH].submit(db, request)


def submit_regularization(
    db: Session,
    *,
    employee_id: int,
    day_date: date,
    regularization_type: RegularizationType,
    requested_by: str,
    requested_check_in: datetime | None = None,
    requested_check_out: datetime | None = None,
    waive_late: bool = False,
    reason: str | None = None,
) -> RegularizationRequest:
    employee = _get_active_employee(db, employee_id)
    check_in = _normalize_ts(requested_check_in) if requested_check_in is not None else None
    check_out = _normalize_ts(requested_check_out) if requested_check_out is not None else None

    needs_check_in = regularization_type in {RegularizationType.CHECK_IN, RegularizationType.BOTH}
    needs_check_out = regularization_type in {RegularizationType.CHECK_OUT, RegularizationType.BOTH}
    if needs_check_in and check_in is None:
        raise ValidationError("REQUESTED_CHECK_IN_REQUIRED", "requested_check_in is required for this type.")
    if needs_check_out and check_out is None:
        raise ValidationError("REQUESTED_CHECK_OUT_REQUIRED", "requested_check_out is required for this type.")
    if not needs_check_in:
        check_in = None
    if not needs_check_out:
        check_out = None

    settings = effective_settings_for_employee(db, employee)
    for value in (check_in, check_out):
        if value is not None and settings.local_day(value) != day_date:
            raise ValidationError(
                "REGULARIZATION_DAY_MISMATCH",
                "Requested times must fall on the regularized day.",
            )

    # The approved request must be applicable to the day as it is stored now.
    stored = db.scalar(
        select(AttendanceRecord).where(
            AttendanceRecord.employee_id == employee_id,
            AttendanceRecord.day_date == day_date,
        )
    )
    merged_check_in = check_in if needs_check_in else _stored_ts(stored.check_in if stored else None)
    merged_check_out = check_out if needs_check_out else _stored_ts(stored.check_out if stored else None)
    if merged_check_in is None:
        raise ValidationError(
            "REGULARIZATION_WITHOUT_CHECK_IN",
            "No check-in is recorded for this day; request both times instead.",
        )
    if merged_check_out is not None and merged_check_out < merged_check_in:
        raise ValidationError("CHECK_OUT_BEFORE_CHECK_IN", "Check-out cannot be earlier than check-in.")

    request = RegularizationRequest(
        employee_id=employee_id,
        day_date=day_date,
        regularization_type=regularization_type,
        requested_check_in=check_in,
        requested_check_out=check_out,
        waive_late=waive_late,
        reason=reason,
        requested_by=requested_by,
    )
    return WORKFLOWS[RequestKind.REGULARIZATION].submit(db, request)


def list_requests(
    db: Session,
    kind: RequestKind,
    *,
    employee_id: int | None = None,
    status: ApprovalStatus | None = None,
    leave_type: LeaveType | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[Any]:
    """List requests of one kind, newest first.

    The date range keeps requests that touch it: a leave overlapping the
    range, or a WFH / regularization day inside it.
    """
    if start_date is not None and end_date is not None and end_date < start_date:
        raise ValidationError("INVALID_DATE_RANGE", "end_date must be greater than or equal to start_date.")
    if leave_type is not None and kind != RequestKind.LEAVE:
        raise ValidationError("INVALID_FILTER", "leave_type only applies to leave requests.")

    model = WORKFLOWS[kind].model
    stmt = select(model).order_by(model.created_at.desc(), model.id.desc())
    if employee_id is not None:
        stmt = stmt.where(model.employee_id == employee_id)
    if status is not None:
        stmt = stmt.where(model.status == status)
    if leave_type is not None:
        stmt = stmt.where(LeaveRequest.leave_type == leave_type)
    if kind == RequestKind.LEAVE:
        if start_date is not None:
            stmt = stmt.where(LeaveRequest.end_date >= start_date)
        if end_date is not None:
            stmt = stmt.where(LeaveRequest.start_date <= end_date)
    else:
        if start_date is not None:
            stmt = stmt.where(model.day_date >= start_date)
        if end_date is not None:
            stmt = stmt.where(model.day_date <= end_date)
    if offset:
        stmt = stmt.offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.scalars(stmt).all())


def list_employee_requests(
    db: Session,
    employee_id: int,
    *,
    status: ApprovalStatus | None = None,
) -> dict[RequestKind, list[Any]]:
    return {kind: list_requests(db, kind, employee_id=employee_id, status=status) for kind in RequestKind}


def _recompute_idempotency_key(kind: RequestKind, request_id: int) -> str:
    return f"recompute:{kind.value}:{request_id}"


def enqueue_recompute(
    db: Session,
    *,
    kind: RequestKind,
    request_id: int,
    error: Exception | None = None,
    now_utc: datetime | None = None,
) -> RecomputeJob:
    now = _normalize_ts(now_utc)
    idempotency_key = _recompute_idempotency_key(kind, request_id)
    job = db.scalar(select(RecomputeJob).where(RecomputeJob.idempotency_key == idempotency_key))
    if job is None:
        job = RecomputeJob(
            request_kind=kind,
            request_id=request_id,
            status=JOB_STATUS_PENDING,
            attempts=0,
            scheduled_at_utc=now,
            idempotency_key=idempotency_key,
        )
        db.add(job)
    elif job.status != JOB_STATUS_RUNNING or _lease_expired(job, now):
        job.status = JOB_STATUS_PENDING
        job.scheduled_at_utc = now
    job.last_error = str(error)[:4000] if error is not None else job.last_error
    db.commit()
    db.refresh(job)
    logger.info(
        "recompute_job_enqueued",
        extra={"job_id": job.id, "kind": kind.value, "review_request_id": request_id},
    )
    return job


def _lease_seconds() -> int:
    return max(60, get_settings().recompute_lease_seconds)


def _lease_expired(job: RecomputeJob, now_utc: datetime) -> bool:
    return _normalize_ts(job.scheduled_at_utc) <= now_utc - timedelta(seconds=_lease_seconds())


def _retry_delay(attempts: int) -> timedelta:
    return timedelta(minutes=min(2**attempts, max(1, get_settings().recompute_max_backoff_minutes)))


def _claim_due_jobs(
    session: Session,
    *,
    now_utc: datetime,
    limit: int,
) -> list[RecomputeJob]:
    """Claim due jobs and stamp the claim time as the start of their lease.

    FAILED jobs stay claimable at the capped interval. A RUNNING job whose
    lease ran out belongs to a worker that died mid-run and is taken over.
    """
    lease_cutoff = now_utc - timedelta(seconds=_lease_seconds())
    stmt = (
        select(RecomputeJob)
        .where(
            or_(
                and_(
                    RecomputeJob.status.in_((JOB_STATUS_PENDING, JOB_STATUS_FAILED)),
                    RecomputeJob.scheduled_at_utc <= now_utc,
                ),
                and_(
                    RecomputeJob.status == JOB_STATUS_RUNNING,
                    RecomputeJob.scheduled_at_utc <= lease_cutoff,
                ),
            )
        )
        .order_by(RecomputeJob.scheduled_at_utc.asc(), RecomputeJob.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    jobs = list(session.scalars(stmt).all())
    for job in jobs:
        if job.status == JOB_STATUS_RUNNING:
            logger.warning(
                "recompute_job_lease_expired",
                extra={"job_id": job.id, "kind": job.request_kind, "attempts": job.attempts},
            )
        job.status = JOB_STATUS_RUNNING
        job.scheduled_at_utc = now_utc
    session.commit()
    return jobs


def _mark_job_done(session: Session, *, job_id: int) -> RecomputeJob | None:
    job = session.get(RecomputeJob, job_id)
    if job is None:
        return None
    job.status = JOB_STATUS_DONE
    job.attempts = (job.attempts or 0) + 1
    job.last_error = None
    session.commit()
    session.refresh(job)
    return job


def _mark_job_failure(
    session: Session,
    *,
    job_id: int,
    error: Exception,
    now_utc: datetime,
) -> RecomputeJob | None:
    job = session.get(RecomputeJob, job_id)
    if job is None:
        return None

    next_attempts = (job.attempts or 0) + 1
    job.attempts = next_attempts
    job.last_error = str(error)[:4000]
    # FAILED only raises the alarm; the job keeps being retried.
    job.status = JOB_STATUS_PENDING if next_attempts < get_settings().recompute_max_attempts else JOB_STATUS_FAILED
    job.scheduled_at_utc = now_utc + _retry_delay(next_attempts)

    session.commit()
    session.refresh(job)
    return job


def retry_pending_recomputations(
    limit: int | None = None,
    *,
    now_utc: datetime | None = None,
    db: Session | None = None,
) -> list[RecomputeJob]:
    if db is None:
        with SessionLocal() as managed_db:
            return retry_pending_recomputations(limit=limit, now_utc=now_utc, db=managed_db)

    session = db
    reference_utc = _normalize_ts(now_utc)
    batch_size = limit if limit is not None else get_settings().recompute_batch_size
    claimed_jobs = _claim_due_jobs(session, now_utc=reference_utc, limit=max(1, batch_size))
    if not claimed_jobs:
        return []

    processed: list[RecomputeJob] = []
    for claimed in claimed_jobs:
        job_id = claimed.id
        kind = claimed.request_kind
        request_id = claimed.request_id
        try:
            WORKFLOWS[kind].apply(session, request_id, reference_utc)
        except Exception as exc:
            session.rollback()
            failed_job = _mark_job_failure(session, job_id=job_id, error=exc, now_utc=reference_utc)
            if failed_job is None:
                continue
            processed.append(failed_job)
            logger.warning(
                "recompute_job_failed",
                extra={
                    "job_id": failed_job.id,
                    "kind": kind.value,
                    "review_request_id": request_id,
                    "attempts": failed_job.attempts,
                    "status": failed_job.status,
                    "error": failed_job.last_error,
                },
            )
            log_audit(
                session,
                actor_type=AuditActorType.SYSTEM,
                actor_id="recompute_runner",
                action="RECOMPUTE_JOB_FAILED",
                success=False,
                entity=AuditEntity.RECOMPUTE_JOB,
                entity_id=failed_job.id,
                details={
                    "kind": kind.value,
                    "request_id": request_id,
                    "attempts": failed_job.attempts,
                    "status": failed_job.status,
                    "error": failed_job.last_error,
                },
            )
            continue

        done_job = _mark_job_done(session, job_id=job_id)
        if done_job is None:
            continue
        processed.append(done_job)
        log_audit(
            session,
            actor_type=AuditActorType.SYSTEM,
            actor_id="recompute_runner",
            action="RECOMPUTE_JOB_DONE",
            success=True,
            entity=AuditEntity.RECOMPUTE_JOB,
            entity_id=done_job.id,
            details={
                "kind": kind.value,
                "request_id": request_id,
                "attempts": done_job.attempts,
            },
        )
    return processed


def list_recompute_jobs(
    db: Session,
    *,
    status: str | None = None,
    limit: int = 100,
) -> list[RecomputeJob]:
    stmt = select(RecomputeJob).order_by(RecomputeJob.id.desc()).limit(max(1, min(limit, 500)))
    if status is not None:
        stmt = stmt.where(RecomputeJob.status == status)
    return list(db.scalars(stmt).all())
