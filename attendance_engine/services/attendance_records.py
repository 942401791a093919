from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attendance_engine.db import guard_persistence
from attendance_engine.errors import ApiError, ConflictError, NotFoundError, ValidationError
from attendance_engine.models import (
    ApprovalStatus,
    AttendanceRecord,
    AttendanceStatus,
    Employee,
    GeofenceOutcome,
    Holiday,
    LeaveRequest,
    OfficeLocation,
    RegularizationRequest,
    RegularizationType,
    RequestKind,
    WFHRequest,
)
from attendance_engine.services.effective_settings import (
    EffectiveSettings,
    effective_settings_for_employee,
)
from attendance_engine.services.geofence import EventKind, LocationSample, validate_location
from attendance_engine.services.status_resolver import (
    HolidayOverlay,
    LeaveOverlay,
    Resolution,
    resolve_status,
    should_materialize,
)
from attendance_engine.settings import get_settings

logger = logging.getLogger("attendance_engine.attendance")

MAX_QUERY_RANGE_DAYS = 366


@dataclass(frozen=True)
class DayContext:
    holiday: HolidayOverlay | None
    leave: LeaveOverlay | None
    wfh_approved: bool
    has_pending_regularization: bool


def _normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


def _optional_ts(ts_utc: datetime | None) -> datetime | None:
    if ts_utc is None:
        return None
    return _normalize_ts(ts_utc)


def _iter_days(start: date, end: date) -> list[date]:
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]


def _get_employee(db: Session, employee_id: int, *, require_active: bool) -> Employee:
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise NotFoundError("EMPLOYEE_NOT_FOUND", "Employee not found.")
    if require_active and not employee.is_active:
        raise ApiError(
            status_code=403,
            code="EMPLOYEE_INACTIVE",
            message="Inactive employee cannot perform attendance actions.",
        )
    return employee


def _lock_record(db: Session, *, employee_id: int, day: date) -> AttendanceRecord | None:
    return db.scalar(
        select(AttendanceRecord)
        .where(
            AttendanceRecord.employee_id == employee_id,
            AttendanceRecord.day_date == day,
        )
        .with_for_update()
    )


def _lock_or_create_record(db: Session, *, employee_id: int, day: date) -> AttendanceRecord:
    """Return the locked record for the key, inserting the row first if needed.

    The insert is a no-op when another writer created the row concurrently, so
    both writers end up waiting on the same row lock.
    """
    record = _lock_record(db, employee_id=employee_id, day=day)
    if record is not None:
        return record

    values: dict[str, Any] = {
        "employee_id": employee_id,
        "day_date": day,
        "status": AttendanceStatus.ABSENT,
        "work_hours": 0.0,
    }
    dialect_name = db.get_bind().dialect.name
    if dialect_name in {"postgresql", "sqlite"}:
        insert_fn = pg_insert if dialect_name == "postgresql" else sqlite_insert
        db.execute(
            insert_fn(AttendanceRecord)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["employee_id", "day_date"])
        )
    else:
        try:
            with db.begin_nested():
                db.add(AttendanceRecord(**values))
        except IntegrityError:
            logger.info("attendance_record_insert_race", extra={"employee_id": employee_id, "day": day.isoformat()})

    record = _lock_record(db, employee_id=employee_id, day=day)
    if record is None:
        raise ConflictError("RECORD_UNAVAILABLE", "Attendance record could not be locked, retry.")
    return record


def _load_day_context(db: Session, *, employee_id: int, day: date) -> DayContext:
    holiday_row = db.scalar(select(Holiday).where(Holiday.day_date == day))
    leave_row = db.scalar(
        select(LeaveRequest)
        .where(
            LeaveRequest.employee_id == employee_id,
            LeaveRequest.status == ApprovalStatus.APPROVED,
            LeaveRequest.start_date <= day,
            LeaveRequest.end_date >= day,
        )
        .order_by(LeaveRequest.id.asc())
        .limit(1)
    )
    wfh_id = db.scalar(
        select(WFHRequest.id)
        .where(
            WFHRequest.employee_id == employee_id,
            WFHRequest.status == ApprovalStatus.APPROVED,
            WFHRequest.day_date == day,
        )
        .limit(1)
    )
    pending_regularization_id = db.scalar(
        select(RegularizationRequest.id)
        .where(
            RegularizationRequest.employee_id == employee_id,
            RegularizationRequest.status == ApprovalStatus.PENDING,
            RegularizationRequest.day_date == day,
        )
        .limit(1)
    )
    return DayContext(
        holiday=(
            HolidayOverlay(title=holiday_row.title, is_optional=holiday_row.is_optional)
            if holiday_row is not None
            else None
        ),
        leave=(
            LeaveOverlay(leave_type=leave_row.leave_type, request_id=leave_row.id)
            if leave_row is not None
            else None
        ),
        wfh_approved=wfh_id is not None,
        has_pending_regularization=pending_regularization_id is not None,
    )


def _active_offices(db: Session) -> list[OfficeLocation]:
    return list(db.scalars(select(OfficeLocation).where(OfficeLocation.is_active.is_(True))).all())


def _resolve_context(
    *,
    day: date,
    context: DayContext,
    settings: EffectiveSettings,
    today: date,
    record: AttendanceRecord | None,
) -> Resolution:
    annotation = (record.geofence if record is not None else None) or {}
    return resolve_status(
        day,
        check_in=_optional_ts(record.check_in) if record is not None else None,
        check_out=_optional_ts(record.check_out) if record is not None else None,
        settings=settings,
        today=today,
        holiday=context.holiday,
        leave=context.leave,
        wfh_approved=context.wfh_approved,
        wfh_bypass=bool(annotation.get("wfh_bypass")),
        late_waived=bool(record.late_waived) if record is not None else False,
    )


def _apply_resolution(
    record: AttendanceRecord,
    resolution: Resolution,
    *,
    context: DayContext,
    now_utc: datetime,
) -> None:
    record.status = resolution.status
    record.work_hours = resolution.work_hours
    record.is_leave = resolution.is_leave
    record.is_holiday = resolution.is_holiday
    record.is_weekend = resolution.is_weekend
    record.is_wfh = resolution.is_wfh
    record.holiday_title = context.holiday.title if resolution.is_holiday and context.holiday else None
    record.resolved_at = now_utc


def _re_resolve(
    db: Session,
    record: AttendanceRecord,
    *,
    settings: EffectiveSettings,
    today: date,
    now_utc: datetime,
) -> AttendanceRecord:
    context = _load_day_context(db, employee_id=record.employee_id, day=record.day_date)
    resolution = _resolve_context(
        day=record.day_date,
        context=context,
        settings=settings,
        today=today,
        record=record,
    )
    _apply_resolution(record, resolution, context=context, now_utc=now_utc)
    return record


def _resolve_day(
    db: Session,
    *,
    employee_id: int,
    day: date,
    settings: EffectiveSettings,
    today: date,
    now_utc: datetime,
    record: AttendanceRecord | None,
) -> AttendanceRecord | None:
    """Re-resolve a day, writing a record only when one is allowed to exist.

    Stored records of today and earlier are always superseded in place. Only a
    pre-seeded future record that no longer qualifies (its holiday was
    removed, for example) is dropped, since no event has touched it yet.
    """
    context = _load_day_context(db, employee_id=employee_id, day=day)
    resolution = _resolve_context(day=day, context=context, settings=settings, today=today, record=record)
    has_check_in = record is not None and record.check_in is not None
    if not should_materialize(day, today=today, has_check_in=has_check_in, resolution=resolution):
        if record is None:
            return None
        if day > today:
            db.delete(record)
            logger.info(
                "preseeded_record_dropped",
                extra={"employee_id": employee_id, "day": day.isoformat(), "status": record.status.value},
            )
            return None

    if record is not None:
        _apply_resolution(record, resolution, context=context, now_utc=now_utc)
        return record

    record = _lock_or_create_record(db, employee_id=employee_id, day=day)
    # Another writer may have added a check-in between the two lookups.
    return _re_resolve(db, record, settings=settings, today=today, now_utc=now_utc)


def _annotate_event(
    db: Session,
    *,
    sample: LocationSample | None,
    settings: EffectiveSettings,
    wfh_approved: bool,
    event: EventKind,
    ts_utc: datetime,
) -> dict[str, Any]:
    result = validate_location(
        sample,
        _active_offices(db),
        settings.geofence,
        wfh_approved=wfh_approved,
        event=event,
    )
    return result.to_annotation(validated_at=ts_utc)


def _require_current_day(ts: datetime, *, now: datetime, day: date, today: date, event: EventKind) -> None:
    """Live events describe the present; past times go through a regularization."""
    skew = timedelta(seconds=get_settings().max_checkin_clock_skew_seconds)
    if day != today or ts < now - skew:
        code = "CHECK_IN_BACKDATED" if event == "check_in" else "CHECK_OUT_BACKDATED"
        raise ValidationError(
            code,
            "Attendance events must be recorded as they happen; request a regularization for earlier times.",
        )


def record_check_in(
    db: Session,
    *,
    employee_id: int,
    ts_utc: datetime | None = None,
    location: LocationSample | None = None,
    now_utc: datetime | None = None,
) -> AttendanceRecord:
    now = _normalize_ts(now_utc)
    ts = _normalize_ts(ts_utc or now)
    if ts > now + timedelta(seconds=get_settings().max_checkin_clock_skew_seconds):
        raise ValidationError("CHECK_IN_IN_FUTURE", "Check-in time cannot be in the future.")

    with guard_persistence(db, operation="record_check_in"):
        employee = _get_employee(db, employee_id, require_active=True)
        settings = effective_settings_for_employee(db, employee)
        day = settings.local_day(ts)
        today = settings.local_day(now)
        _require_current_day(ts, now=now, day=day, today=today, event="check_in")

        record = _lock_or_create_record(db, employee_id=employee.id, day=day)
        context = _load_day_context(db, employee_id=employee.id, day=day)
        if record.check_in is not None:
            if not context.has_pending_regularization:
                db.rollback()
                raise ConflictError(
                    "DUPLICATE_CHECK_IN",
                    "A check-in already exists for this day.",
                )
            logger.info(
                "repeat_check_in_with_pending_regularization",
                extra={"employee_id": employee.id, "day": day.isoformat()},
            )
            if record.check_out is not None and _normalize_ts(record.check_out) < ts:
                record.check_out = None
                record.check_out_location = None

        annotation = _annotate_event(
            db,
            sample=location,
            settings=settings,
            wfh_approved=context.wfh_approved,
            event="check_in",
            ts_utc=ts,
        )
        record.check_in = ts
        record.check_in_location = location.to_dict() if location is not None else None
        record.geofence = annotation
        _re_resolve(db, record, settings=settings, today=today, now_utc=now)
        db.commit()
        db.refresh(record)

    logger.info(
        "check_in_recorded",
        extra={
            "employee_id": employee.id,
            "day": day.isoformat(),
            "status": record.status.value,
            "geofence_outcome": annotation.get("outcome"),
            "needs_review": annotation.get("needs_review"),
        },
    )
    return record


def record_check_out(
    db: Session,
    *,
    employee_id: int,
    ts_utc: datetime | None = None,
    location: LocationSample | None = None,
    now_utc: datetime | None = None,
) -> AttendanceRecord:
    now = _normalize_ts(now_utc)
    ts = _normalize_ts(ts_utc or now)
    if ts > now + timedelta(seconds=get_settings().max_checkin_clock_skew_seconds):
        raise ValidationError("CHECK_OUT_IN_FUTURE", "Check-out time cannot be in the future.")

    with guard_persistence(db, operation="record_check_out"):
        employee = _get_employee(db, employee_id, require_active=True)
        settings = effective_settings_for_employee(db, employee)
        day = settings.local_day(ts)
        today = settings.local_day(now)
        _require_current_day(ts, now=now, day=day, today=today, event="check_out")

        record = _lock_record(db, employee_id=employee.id, day=day)
        if record is None or record.check_in is None:
            db.rollback()
            raise ConflictError("NO_OPEN_CHECK_IN", "No check-in exists for this day.")
        if record.check_out is not None:
            db.rollback()
            raise ConflictError("ALREADY_CHECKED_OUT", "A check-out already exists for this day.")
        if ts < _normalize_ts(record.check_in):
            db.rollback()
            raise ValidationError("CHECK_OUT_BEFORE_CHECK_IN", "Check-out cannot be earlier than check-in.")

        context = _load_day_context(db, employee_id=employee.id, day=day)
        checkout_annotation = _annotate_event(
            db,
            sample=location,
            settings=settings,
            wfh_approved=context.wfh_approved,
            event="check_out",
            ts_utc=ts,
        )
        annotation = dict(record.geofence or {})
        annotation["check_out"] = checkout_annotation
        annotation["needs_review"] = bool(annotation.get("needs_review")) or bool(
            checkout_annotation["needs_review"]
        )
        record.check_out = ts
        record.check_out_location = location.to_dict() if location is not None else None
        record.geofence = annotation
        _re_resolve(db, record, settings=settings, today=today, now_utc=now)
        db.commit()
        db.refresh(record)

    logger.info(
        "check_out_recorded",
        extra={
            "employee_id": employee.id,
            "day": day.isoformat(),
            "status": record.status.value,
            "work_hours": record.work_hours,
        },
    )
    return record


def apply_regularization(
    db: Session,
    request_id: int,
    *,
    now_utc: datetime | None = None,
) -> AttendanceRecord:
    """Rewrite a day from an approved regularization's requested times."""
    now = _normalize_ts(now_utc)
    with guard_persistence(db, operation="apply_regularization"):
        request = db.get(RegularizationRequest, request_id)
        if request is None:
            raise NotFoundError("REQUEST_NOT_FOUND", "Regularization request not found.")
        if request.status != ApprovalStatus.APPROVED:
            raise ConflictError("REQUEST_NOT_APPROVED", "Only approved regularizations can be applied.")

        employee = _get_employee(db, request.employee_id, require_active=False)
        settings = effective_settings_for_employee(db, employee)
        today = settings.local_day(now)
        record = _lock_or_create_record(db, employee_id=employee.id, day=request.day_date)

        new_check_in = _optional_ts(record.check_in)
        new_check_out = _optional_ts(record.check_out)
        if request.regularization_type in {RegularizationType.CHECK_IN, RegularizationType.BOTH}:
            new_check_in = _optional_ts(request.requested_check_in)
        if request.regularization_type in {RegularizationType.CHECK_OUT, RegularizationType.BOTH}:
            new_check_out = _optional_ts(request.requested_check_out)

        if new_check_in is None:
            db.rollback()
            raise ValidationError(
                "REGULARIZATION_WITHOUT_CHECK_IN",
                "A regularized day needs a check-in time.",
            )
        if new_check_out is not None and new_check_out < new_check_in:
            db.rollback()
            raise ValidationError("CHECK_OUT_BEFORE_CHECK_IN", "Check-out cannot be earlier than check-in.")

        annotation = dict(record.geofence or {})
        annotation.update(
            {
                "regularized": True,
                "regularization_id": request.id,
                "is_valid": True,
                "needs_review": False,
            }
        )
        record.check_in = new_check_in
        record.check_out = new_check_out
        record.geofence = annotation
        record.regularized = True
        record.late_waived = bool(request.waive_late)
        _re_resolve(db, record, settings=settings, today=today, now_utc=now)
        db.commit()
        db.refresh(record)

    logger.info(
        "regularization_applied",
        extra={
            "review_request_id": request.id,
            "employee_id": request.employee_id,
            "day": request.day_date.isoformat(),
            "status": record.status.value,
        },
    )
    return record


def apply_leave_or_wfh_approval(
    db: Session,
    *,
    kind: RequestKind,
    request_id: int,
    now_utc: datetime | None = None,
) -> list[AttendanceRecord]:
    """Re-resolve every day covered by an approved leave or WFH request.

    Days are locked in ascending order. Future days are left for the nightly
    job unless they are pre-seedable.
    """
    if kind not in {RequestKind.LEAVE, RequestKind.WFH}:
        raise ValidationError("UNSUPPORTED_REQUEST_KIND", f"{kind.value} is not a leave or WFH request.")

    now = _normalize_ts(now_utc)
    with guard_persistence(db, operation="apply_leave_or_wfh_approval"):
        request: LeaveRequest | WFHRequest | None
        if kind == RequestKind.LEAVE:
            request = db.get(LeaveRequest, request_id)
        else:
            request = db.get(WFHRequest, request_id)
        if request is None:
            raise NotFoundError("REQUEST_NOT_FOUND", f"{kind.value} request not found.")
        if request.status != ApprovalStatus.APPROVED:
            raise ConflictError("REQUEST_NOT_APPROVED", "Only approved requests can be applied.")

        employee = _get_employee(db, request.employee_id, require_active=False)
        settings = effective_settings_for_employee(db, employee)
        today = settings.local_day(now)
        if isinstance(request, LeaveRequest):
            days = _iter_days(request.start_date, request.end_date)
        else:
            days = [request.day_date]

        records: list[AttendanceRecord] = []
        for day in days:
            record = _lock_record(db, employee_id=employee.id, day=day)
            if (
                kind == RequestKind.WFH
                and record is not None
                and record.check_in is not None
                and settings.geofence.allow_wfh_bypass
            ):
                annotation = dict(record.geofence or {})
                annotation.update(
                    {
                        "wfh_bypass": True,
                        "is_valid": True,
                        "outcome": GeofenceOutcome.WFH_BYPASS.value,
                        "needs_review": False,
                        "validated_at": annotation.get("validated_at") or now.isoformat(),
                    }
                )
                record.geofence = annotation
            stored = _resolve_day(
                db,
                employee_id=employee.id,
                day=day,
                settings=settings,
                today=today,
                now_utc=now,
                record=record,
            )
            if stored is not None:
                records.append(stored)
        db.commit()
        for record in records:
            db.refresh(record)

    logger.info(
        "leave_or_wfh_applied",
        extra={
            "kind": kind.value,
            "review_request_id": request_id,
            "employee_id": employee.id,
            "days": [record.day_date.isoformat() for record in records],
        },
    )
    return records


def materialize_day(
    db: Session,
    day: date,
    *,
    now_utc: datetime | None = None,
) -> dict[str, Any]:
    """Write or refresh the record of every active employee for one day.

    Safe to re-run: an already resolved day resolves to the same values.
    """
    now = _normalize_ts(now_utc)
    settings_cache: dict[int | None, EffectiveSettings] = {}
    counts: Counter[str] = Counter()
    written = 0
    skipped = 0

    with guard_persistence(db, operation="materialize_day"):
        employees = list(
            db.scalars(select(Employee).where(Employee.is_active.is_(True)).order_by(Employee.id.asc())).all()
        )
        for employee in employees:
            if employee.department_id not in settings_cache:
                settings_cache[employee.department_id] = effective_settings_for_employee(db, employee)
            settings = settings_cache[employee.department_id]
            today = settings.local_day(now)

            record = _lock_record(db, employee_id=employee.id, day=day)
            stored = _resolve_day(
                db,
                employee_id=employee.id,
                day=day,
                settings=settings,
                today=today,
                now_utc=now,
                record=record,
            )
            db.commit()
            if stored is None:
                skipped += 1
                continue
            written += 1
            counts[stored.status.value] += 1

    summary = {
        "day": day.isoformat(),
        "employees": len(employees),
        "written": written,
        "skipped": skipped,
        "by_status": dict(counts),
    }
    logger.info("attendance_day_materialized", extra=summary)
    return summary


def list_records(
    db: Session,
    *,
    employee_id: int | None,
    start_date: date,
    end_date: date,
    status: AttendanceStatus | None = None,
    department_id: int | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[AttendanceRecord]:
    if end_date < start_date:
        raise ValidationError("INVALID_DATE_RANGE", "end_date must be greater than or equal to start_date.")
    if (end_date - start_date).days >= MAX_QUERY_RANGE_DAYS:
        raise ValidationError("DATE_RANGE_TOO_LARGE", f"Query at most {MAX_QUERY_RANGE_DAYS} days at once.")

    stmt = (
        select(AttendanceRecord)
        .where(
            AttendanceRecord.day_date >= start_date,
            AttendanceRecord.day_date <= end_date,
        )
        .order_by(AttendanceRecord.day_date.asc(), AttendanceRecord.employee_id.asc())
    )
    if employee_id is not None:
        _get_employee(db, employee_id, require_active=False)
        stmt = stmt.where(AttendanceRecord.employee_id == employee_id)
    if status is not None:
        stmt = stmt.where(AttendanceRecord.status == status)
    if department_id is not None:
        # Current department membership, not the one at the time of the record.
        stmt = stmt.join(Employee, Employee.id == AttendanceRecord.employee_id).where(
            Employee.department_id == department_id
        )
    if offset:
        stmt = stmt.offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.scalars(stmt).all())
