"""Derive the canonical attendance status of one employee-day.

Rules are evaluated in precedence order and the first match wins:

1. holiday  - non-optional holiday and no check-in
2. leave    - an approved full-day or half-day leave covers the day
3. weekend  - non-working weekday and no check-in
4. absent   - nothing else applies and there is no check-in
5. with a check-in: late, then wfh, then half-day, otherwise present

The resolver is a pure function. It never raises on missing data; callers
reject malformed timestamps before they get here and decide whether a record
for a day without check-in should be written at all (see should_materialize).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone

from attendance_engine.models import AttendanceStatus, LeaveType
from attendance_engine.services.effective_settings import EffectiveSettings


@dataclass(frozen=True)
class HolidayOverlay:
    title: str
    is_optional: bool = False


@dataclass(frozen=True)
class LeaveOverlay:
    leave_type: LeaveType
    request_id: int | None = None


@dataclass(frozen=True)
class Resolution:
    status: AttendanceStatus
    work_hours: float
    is_leave: bool = False
    is_holiday: bool = False
    is_weekend: bool = False
    is_wfh: bool = False


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_work_hours(check_in: datetime | None, check_out: datetime | None) -> float:
    if check_in is None or check_out is None:
        return 0.0
    seconds = (_as_utc(check_out) - _as_utc(check_in)).total_seconds()
    return round(max(0.0, seconds / 3600), 2)


def resolve_status(
    day: date,
    *,
    check_in: datetime | None,
    check_out: datetime | None,
    settings: EffectiveSettings,
    today: date,
    holiday: HolidayOverlay | None = None,
    leave: LeaveOverlay | None = None,
    wfh_approved: bool = False,
    wfh_bypass: bool = False,
    late_waived: bool = False,
) -> Resolution:
    is_holiday = holiday is not None and not holiday.is_optional
    is_weekend = settings.is_non_working_day(day)
    is_leave = leave is not None
    flags = {
        "is_leave": is_leave,
        "is_holiday": is_holiday,
        "is_weekend": is_weekend,
        "is_wfh": wfh_approved or wfh_bypass,
    }
    work_hours = compute_work_hours(check_in, check_out)

    if is_holiday and check_in is None:
        return Resolution(status=AttendanceStatus.HOLIDAY, work_hours=0.0, **flags)

    if is_leave:
        return Resolution(status=AttendanceStatus.LEAVE, work_hours=work_hours, **flags)

    if is_weekend and check_in is None:
        return Resolution(status=AttendanceStatus.WEEKEND, work_hours=0.0, **flags)

    if check_in is None:
        return Resolution(status=AttendanceStatus.ABSENT, work_hours=0.0, **flags)

    if _as_utc(check_in) > settings.late_after_utc(day) and not late_waived:
        return Resolution(status=AttendanceStatus.LATE, work_hours=work_hours, **flags)

    if wfh_bypass:
        return Resolution(status=AttendanceStatus.WFH, work_hours=work_hours, **flags)

    if check_out is not None:
        cutoff = settings.half_day_cutoff_utc(day)
        if work_hours < settings.half_day_threshold_hours:
            return Resolution(status=AttendanceStatus.HALF_DAY, work_hours=work_hours, **flags)
        if cutoff is not None and _as_utc(check_out) < cutoff:
            return Resolution(status=AttendanceStatus.HALF_DAY, work_hours=work_hours, **flags)
    elif day < today:
        # The day closed without a check-out: keep it as a partial day.
        return Resolution(status=AttendanceStatus.HALF_DAY, work_hours=0.0, **flags)

    return Resolution(status=AttendanceStatus.PRESENT, work_hours=work_hours, **flags)


def should_materialize(
    day: date,
    *,
    today: date,
    has_check_in: bool,
    resolution: Resolution,
) -> bool:
    """Whether a record may be written for a day, given its resolution.

    Past days are always written. Today is written once something happened
    (a check-in or an approved leave/holiday/weekend overlay). Future days are
    only pre-seeded for holidays and weekends.
    """
    if has_check_in or day < today:
        return True
    if day == today:
        return resolution.status != AttendanceStatus.ABSENT
    return resolution.status in {AttendanceStatus.HOLIDAY, AttendanceStatus.WEEKEND}
