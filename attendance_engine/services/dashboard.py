from __future__ import annotations

from datetime import date, datetime, timezone
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from attendance_engine.models import (
    ApprovalStatus,
    AttendanceRecord,
    AttendanceStatus,
    Employee,
    Holiday,
    LeaveRequest,
    RegularizationRequest,
    WFHRequest,
)
from attendance_engine.services.effective_settings import EffectiveSettings, effective_settings
from attendance_engine.services.status_resolver import HolidayOverlay, LeaveOverlay, resolve_status

logger = logging.getLogger("attendance_engine.dashboard")

PRESENT_STATUSES = frozenset({AttendanceStatus.PRESENT, AttendanceStatus.HALF_DAY, AttendanceStatus.WFH})


def _pending_count(db: Session, model: Any) -> int:
    return int(db.scalar(select(func.count(model.id)).where(model.status == ApprovalStatus.PENDING)) or 0)


def today_summary(db: Session, *, now_utc: datetime | None = None, day: date | None = None) -> dict[str, Any]:
    """Count today's statuses across active employees.

    Employees without a stored record are resolved on the fly with no
    check-in, so approved leave, holidays and weekends still show up.
    Nothing is written.
    """
    reference_utc = now_utc or datetime.now(timezone.utc)
    settings_cache: dict[int | None, EffectiveSettings] = {None: effective_settings(db, None)}
    target_day = day or settings_cache[None].local_day(reference_utc)

    employees = list(db.scalars(select(Employee).where(Employee.is_active.is_(True))).all())
    records = {
        record.employee_id: record
        for record in db.scalars(select(AttendanceRecord).where(AttendanceRecord.day_date == target_day)).all()
    }
    holiday_row = db.scalar(select(Holiday).where(Holiday.day_date == target_day))
    holiday = (
        HolidayOverlay(title=holiday_row.title, is_optional=holiday_row.is_optional)
        if holiday_row is not None
        else None
    )
    leaves = {
        row.employee_id: row
        for row in db.scalars(
            select(LeaveRequest).where(
                LeaveRequest.status == ApprovalStatus.APPROVED,
                LeaveRequest.start_date <= target_day,
                LeaveRequest.end_date >= target_day,
            )
        ).all()
    }
    wfh_employee_ids = set(
        db.scalars(
            select(WFHRequest.employee_id).where(
                WFHRequest.status == ApprovalStatus.APPROVED,
                WFHRequest.day_date == target_day,
            )
        ).all()
    )

    counts = {status.value: 0 for status in AttendanceStatus}
    for employee in employees:
        record = records.get(employee.id)
        if record is not None:
            counts[record.status.value] += 1
            continue

        if employee.department_id not in settings_cache:
            settings_cache[employee.department_id] = effective_settings(db, employee.department_id)
        leave_row = leaves.get(employee.id)
        resolution = resolve_status(
            target_day,
            check_in=None,
            check_out=None,
            settings=settings_cache[employee.department_id],
            today=target_day,
            holiday=holiday,
            leave=LeaveOverlay(leave_type=leave_row.leave_type, request_id=leave_row.id) if leave_row else None,
            wfh_approved=employee.id in wfh_employee_ids,
        )
        counts[resolution.status.value] += 1

    summary = {
        "day": target_day.isoformat(),
        "total": len(employees),
        "present": sum(counts[status.value] for status in PRESENT_STATUSES),
        "late": counts[AttendanceStatus.LATE.value],
        "absent": counts[AttendanceStatus.ABSENT.value],
        "on_leave": counts[AttendanceStatus.LEAVE.value],
        "wfh": counts[AttendanceStatus.WFH.value],
        "holiday": counts[AttendanceStatus.HOLIDAY.value],
        "weekend": counts[AttendanceStatus.WEEKEND.value],
        "by_status": counts,
        "pending_requests": {
            "leave": _pending_count(db, LeaveRequest),
            "wfh": _pending_count(db, WFHRequest),
            "regularization": _pending_count(db, RegularizationRequest),
        },
    }
    logger.info("dashboard_today_computed", extra={"day": summary["day"], "total": summary["total"]})
    return summary
