from __future__ import annotations

from datetime import date
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from attendance_engine.errors import ConfigurationError, ConflictError, NotFoundError, ValidationError
from attendance_engine.models import Department, DepartmentSettings, GlobalSettings, Holiday, OfficeLocation
from attendance_engine.schemas import (
    DepartmentSettingsUpsert,
    EffectiveSettingsRead,
    GlobalSettingsUpsert,
    HolidayCreate,
    OfficeCreate,
    OfficeUpdate,
)
from attendance_engine.services.effective_settings import (
    OVERRIDABLE_FIELDS,
    EffectiveSettings,
    effective_settings,
    format_hhmm,
    get_global_settings_row,
    merge_settings,
)

logger = logging.getLogger("attendance_engine.configuration")


def _settings_values(payload: GlobalSettingsUpsert | DepartmentSettingsUpsert) -> dict[str, Any]:
    values = payload.model_dump(mode="json")
    for name in ("weekend_days", "saturday_holidays"):
        if values.get(name) is not None:
            values[name] = sorted(set(values[name]))
    return values


def _validate_candidate(candidate: Any, override: Any | None, *, timezone_name: str) -> None:
    try:
        merge_settings(candidate, override, timezone_name=timezone_name)
    except ConfigurationError as exc:
        raise ValidationError("INVALID_SETTINGS", exc.message) from exc


def serialize_effective_settings(settings: EffectiveSettings) -> EffectiveSettingsRead:
    policy = settings.geofence
    return EffectiveSettingsRead(
        timezone=settings.timezone,
        department_id=settings.department_id,
        working_hours={
            "start": format_hhmm(settings.working_hours.start),
            "end": format_hhmm(settings.working_hours.end),
        },
        check_in_grace_minutes=settings.check_in_grace_minutes,
        half_day_threshold_hours=settings.half_day_threshold_hours,
        half_day_cutoff=format_hhmm(settings.half_day_cutoff) if settings.half_day_cutoff else None,
        weekend_days=sorted(settings.weekend_days),
        saturday_holidays=sorted(settings.saturday_holidays),
        geofence={
            "enabled": policy.enabled,
            "enforce_check_in": policy.enforce_check_in,
            "enforce_check_out": policy.enforce_check_out,
            "allow_wfh_bypass": policy.allow_wfh_bypass,
            "max_accuracy_m": policy.max_accuracy_m,
        },
        overridden_fields=list(settings.overridden_fields),
    )


def get_effective_settings(db: Session, department_id: int | None = None) -> EffectiveSettingsRead:
    if department_id is not None and db.get(Department, department_id) is None:
        raise NotFoundError("DEPARTMENT_NOT_FOUND", "Department not found.")
    return serialize_effective_settings(effective_settings(db, department_id))


def upsert_global_settings(db: Session, payload: GlobalSettingsUpsert) -> GlobalSettings:
    values = _settings_values(payload)
    row = get_global_settings_row(db)
    candidate = GlobalSettings(**values)
    _validate_candidate(candidate, None, timezone_name=values["timezone"])

    if row is None:
        row = candidate
        db.add(row)
    else:
        for name, value in values.items():
            setattr(row, name, value)
    db.commit()
    db.refresh(row)
    logger.info("global_settings_updated", extra={"settings_id": row.id, "timezone": row.timezone})
    return row


def upsert_department_settings(
    db: Session,
    department_id: int,
    payload: DepartmentSettingsUpsert,
) -> DepartmentSettings:
    if db.get(Department, department_id) is None:
        raise NotFoundError("DEPARTMENT_NOT_FOUND", "Department not found.")

    values = _settings_values(payload)
    global_row = get_global_settings_row(db)
    if global_row is not None:
        override = DepartmentSettings(department_id=department_id, **values)
        _validate_candidate(global_row, override, timezone_name=global_row.timezone)

    row = db.scalar(select(DepartmentSettings).where(DepartmentSettings.department_id == department_id))
    if row is None:
        row = DepartmentSettings(department_id=department_id)
        db.add(row)
    # PUT semantics: a field left out falls back to the global value.
    for name in OVERRIDABLE_FIELDS:
        setattr(row, name, values.get(name))
    db.commit()
    db.refresh(row)
    logger.info(
        "department_settings_updated",
        extra={
            "department_id": department_id,
            "overridden_fields": [name for name in OVERRIDABLE_FIELDS if values.get(name) is not None],
        },
    )
    return row


def list_holidays(
    db: Session,
    *,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[Holiday]:
    stmt = select(Holiday).order_by(Holiday.day_date.asc())
    if start_date is not None:
        stmt = stmt.where(Holiday.day_date >= start_date)
    if end_date is not None:
        stmt = stmt.where(Holiday.day_date <= end_date)
    return list(db.scalars(stmt).all())


def create_holiday(db: Session, payload: HolidayCreate) -> Holiday:
    existing = db.scalar(select(Holiday).where(Holiday.day_date == payload.day_date))
    if existing is not None:
        raise ConflictError("HOLIDAY_EXISTS", "A holiday already exists on this date.")

    holiday = Holiday(
        day_date=payload.day_date,
        title=payload.title.strip(),
        is_optional=payload.is_optional,
    )
    db.add(holiday)
    db.commit()
    db.refresh(holiday)
    logger.info("holiday_created", extra={"holiday_id": holiday.id, "day": holiday.day_date.isoformat()})
    return holiday


def delete_holiday(db: Session, holiday_id: int) -> date:
    holiday = db.get(Holiday, holiday_id)
    if holiday is None:
        raise NotFoundError("HOLIDAY_NOT_FOUND", "Holiday not found.")

    day = holiday.day_date
    db.delete(holiday)
    db.commit()
    logger.info("holiday_deleted", extra={"holiday_id": holiday_id, "day": day.isoformat()})
    return day


def list_offices(db: Session, *, include_inactive: bool = True) -> list[OfficeLocation]:
    stmt = select(OfficeLocation).order_by(OfficeLocation.id.asc())
    if not include_inactive:
        stmt = stmt.where(OfficeLocation.is_active.is_(True))
    return list(db.scalars(stmt).all())


def create_office(db: Session, payload: OfficeCreate) -> OfficeLocation:
    office = OfficeLocation(**payload.model_dump())
    db.add(office)
    db.commit()
    db.refresh(office)
    logger.info("office_created", extra={"office_id": office.id, "radius_m": office.radius_m})
    return office


def update_office(db: Session, office_id: int, payload: OfficeUpdate) -> OfficeLocation:
    office = db.get(OfficeLocation, office_id)
    if office is None:
        raise NotFoundError("OFFICE_NOT_FOUND", "Office location not found.")

    for name, value in payload.model_dump(exclude_unset=True).items():
        if value is None:
            raise ValidationError("INVALID_OFFICE_UPDATE", f"{name} cannot be null.")
        setattr(office, name, value)
    db.commit()
    db.refresh(office)
    logger.info("office_updated", extra={"office_id": office.id, "is_active": office.is_active})
    return office
