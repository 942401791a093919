from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.orm import Session

from attendance_engine.errors import ConfigurationError
from attendance_engine.models import DepartmentSettings, Employee, GlobalSettings

# Top-level fields a department may override. Each one is replaced whole or not at all.
OVERRIDABLE_FIELDS: tuple[str, ...] = (
    "working_hours",
    "check_in_grace_minutes",
    "half_day_threshold_hours",
    "half_day_cutoff",
    "weekend_days",
    "saturday_holidays",
    "geofence",
)

SATURDAY = 5


class SettingsSource(Protocol):
    working_hours: Any
    check_in_grace_minutes: Any
    half_day_threshold_hours: Any
    half_day_cutoff: Any
    weekend_days: Any
    saturday_holidays: Any
    geofence: Any


@dataclass(frozen=True)
class WorkingHours:
    start: time
    end: time


@dataclass(frozen=True)
class GeofencePolicy:
    enabled: bool = False
    enforce_check_in: bool = True
    enforce_check_out: bool = False
    allow_wfh_bypass: bool = True
    max_accuracy_m: float = 100.0


@dataclass(frozen=True)
class EffectiveSettings:
    timezone: str
    working_hours: WorkingHours
    check_in_grace_minutes: int
    half_day_threshold_hours: float
    half_day_cutoff: time | None
    weekend_days: frozenset[int]
    saturday_holidays: frozenset[int]
    geofence: GeofencePolicy
    department_id: int | None = None
    overridden_fields: tuple[str, ...] = field(default=())

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def local_day(self, ts_utc: datetime) -> date:
        return ts_utc.astimezone(self.tzinfo).date()

    def local_datetime(self, day: date, value: time) -> datetime:
        return datetime.combine(day, value, tzinfo=self.tzinfo).astimezone(timezone.utc)

    def late_after_utc(self, day: date) -> datetime:
        return self.local_datetime(day, self.working_hours.start) + timedelta(minutes=self.check_in_grace_minutes)

    def half_day_cutoff_utc(self, day: date) -> datetime | None:
        if self.half_day_cutoff is None:
            return None
        return self.local_datetime(day, self.half_day_cutoff)

    def is_non_working_day(self, day: date) -> bool:
        weekday = day.weekday()
        if weekday in self.weekend_days:
            return True
        if weekday == SATURDAY and self.saturday_holidays:
            return ((day.day - 1) // 7 + 1) in self.saturday_holidays
        return False


def parse_hhmm(value: str) -> time:
    hour_str, minute_str = value.strip().split(":")
    hour = int(hour_str)
    minute = int(minute_str)
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        raise ValueError(f"Invalid HH:MM value: {value!r}")
    return time(hour=hour, minute=minute)


def format_hhmm(value: time) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def _parse_working_hours(raw: Any) -> WorkingHours:
    if not isinstance(raw, dict):
        raise ConfigurationError("working_hours must be an object with start and end.")
    try:
        start = parse_hhmm(str(raw["start"]))
        end = parse_hhmm(str(raw["end"]))
    except (KeyError, ValueError) as exc:
        raise ConfigurationError("working_hours start/end must be HH:MM.") from exc
    if end <= start:
        raise ConfigurationError("working_hours end must be after start.")
    return WorkingHours(start=start, end=end)


def _parse_geofence(raw: Any) -> GeofencePolicy:
    if raw is None:
        return GeofencePolicy()
    if not isinstance(raw, dict):
        raise ConfigurationError("geofence must be an object.")
    defaults = GeofencePolicy()
    try:
        max_accuracy_m = float(raw.get("max_accuracy_m", defaults.max_accuracy_m))
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("geofence.max_accuracy_m must be a number.") from exc
    return GeofencePolicy(
        enabled=bool(raw.get("enabled", defaults.enabled)),
        enforce_check_in=bool(raw.get("enforce_check_in", defaults.enforce_check_in)),
        enforce_check_out=bool(raw.get("enforce_check_out", defaults.enforce_check_out)),
        allow_wfh_bypass=bool(raw.get("allow_wfh_bypass", defaults.allow_wfh_bypass)),
        max_accuracy_m=max_accuracy_m,
    )


def _parse_weekdays(raw: Any, *, field_name: str, upper: int) -> frozenset[int]:
    values = raw or []
    if not isinstance(values, (list, tuple, set, frozenset)):
        raise ConfigurationError(f"{field_name} must be a list of integers.")
    parsed: set[int] = set()
    for item in values:
        if not isinstance(item, int) or isinstance(item, bool) or item < 0 or item > upper:
            raise ConfigurationError(f"{field_name} contains an invalid value: {item!r}.")
        parsed.add(item)
    return frozenset(parsed)


def merge_settings(
    global_settings: SettingsSource,
    department_settings: SettingsSource | None = None,
    *,
    timezone_name: str,
    department_id: int | None = None,
) -> EffectiveSettings:
    """Overlay a department override on the global settings.

    A field counts as present when the department value is not None; the
    global value is used otherwise. Nested objects are never merged key by key.
    """
    raw: dict[str, Any] = {name: getattr(global_settings, name) for name in OVERRIDABLE_FIELDS}
    overridden: list[str] = []
    if department_settings is not None:
        for name in OVERRIDABLE_FIELDS:
            value = getattr(department_settings, name)
            if value is not None:
                raw[name] = value
                overridden.append(name)

    try:
        ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"Unknown timezone: {timezone_name!r}.") from exc

    cutoff_raw = raw["half_day_cutoff"]
    try:
        half_day_cutoff = parse_hhmm(str(cutoff_raw)) if cutoff_raw else None
    except ValueError as exc:
        raise ConfigurationError("half_day_cutoff must be HH:MM.") from exc

    try:
        grace_minutes = int(raw["check_in_grace_minutes"])
        threshold_hours = float(raw["half_day_threshold_hours"])
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("Grace period and half-day threshold must be numeric.") from exc
    if grace_minutes < 0 or threshold_hours < 0:
        raise ConfigurationError("Grace period and half-day threshold must not be negative.")

    return EffectiveSettings(
        timezone=timezone_name,
        working_hours=_parse_working_hours(raw["working_hours"]),
        check_in_grace_minutes=grace_minutes,
        half_day_threshold_hours=threshold_hours,
        half_day_cutoff=half_day_cutoff,
        weekend_days=_parse_weekdays(raw["weekend_days"], field_name="weekend_days", upper=6),
        saturday_holidays=_parse_weekdays(raw["saturday_holidays"], field_name="saturday_holidays", upper=5),
        geofence=_parse_geofence(raw["geofence"]),
        department_id=department_id,
        overridden_fields=tuple(overridden),
    )


def get_global_settings_row(db: Session) -> GlobalSettings | None:
    return db.scalar(select(GlobalSettings).order_by(GlobalSettings.id.asc()).limit(1))


def effective_settings(db: Session, department_id: int | None = None) -> EffectiveSettings:
    global_row = get_global_settings_row(db)
    if global_row is None:
        raise ConfigurationError("Global attendance settings are not configured.")

    department_row = None
    if department_id is not None:
        department_row = db.scalar(
            select(DepartmentSettings).where(DepartmentSettings.department_id == department_id)
        )
    return merge_settings(
        global_row,
        department_row,
        timezone_name=global_row.timezone,
        department_id=department_id,
    )


def effective_settings_for_employee(db: Session, employee: Employee) -> EffectiveSettings:
    return effective_settings(db, employee.department_id)
