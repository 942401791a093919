from datetime import date, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from attendance_engine.models import (
    ApprovalStatus,
    AttendanceStatus,
    LeaveType,
    RegularizationType,
    RequestKind,
)

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"

Weekday = Annotated[int, Field(ge=0, le=6)]
SaturdayOrdinal = Annotated[int, Field(ge=1, le=5)]


class LocationSampleIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    accuracy_m: float | None = Field(default=None, ge=0)
    captured_at: datetime | None = None


class AttendanceEventRequest(BaseModel):
    ts_utc: datetime | None = None
    location: LocationSampleIn | None = None


class AttendanceRecordRead(BaseModel):
    id: int
    employee_id: int
    day_date: date
    check_in: datetime | None
    check_out: datetime | None
    status: AttendanceStatus
    work_hours: float
    check_in_location: dict[str, Any] | None = None
    check_out_location: dict[str, Any] | None = None
    geofence: dict[str, Any] | None = None
    is_leave: bool
    is_holiday: bool
    is_weekend: bool
    is_wfh: bool
    late_waived: bool
    regularized: bool
    holiday_title: str | None = None
    resolved_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class LeaveSubmitRequest(BaseModel):
    start_date: date
    end_date: date
    leave_type: LeaveType = LeaveType.FULL_DAY
    reason: str | None = Field(default=None, max_length=1000)


class WFHSubmitRequest(BaseModel):
    day_date: date
    reason: str | None = Field(default=None, max_length=1000)


class RegularizationSubmitRequest(BaseModel):
    day_date: date
    regularization_type: RegularizationType
    requested_check_in: datetime | None = None
    requested_check_out: datetime | None = None
    waive_late: bool = False
    reason: str | None = Field(default=None, max_length=1000)


class ReviewableRequestRead(BaseModel):
    id: int
    employee_id: int
    status: ApprovalStatus
    reason: str | None = None
    requested_by: str
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_comment: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeaveRequestRead(ReviewableRequestRead):
    start_date: date
    end_date: date
    leave_type: LeaveType
    number_of_days: float


class WFHRequestRead(ReviewableRequestRead):
    day_date: date


class RegularizationRequestRead(ReviewableRequestRead):
    day_date: date
    regularization_type: RegularizationType
    requested_check_in: datetime | None = None
    requested_check_out: datetime | None = None
    waive_late: bool


class EmployeeRequestsResponse(BaseModel):
    leave: list[LeaveRequestRead]
    wfh: list[WFHRequestRead]
    regularization: list[RegularizationRequestRead]


class ReviewDecisionRequest(BaseModel):
    decision: Literal["approved", "rejected"]
    comment: str | None = Field(default=None, max_length=1000)


class RecomputationFailureRead(BaseModel):
    code: str
    message: str
    job_id: int | None = None


class ReviewResponse(BaseModel):
    kind: RequestKind
    request: dict[str, Any]
    decision: ApprovalStatus
    recomputed: bool
    records: list[AttendanceRecordRead]
    recomputation_error: RecomputationFailureRead | None = None


class MaterializeRequest(BaseModel):
    day: date


class MaterializeResponse(BaseModel):
    day: date
    employees: int
    written: int
    skipped: int
    by_status: dict[str, int]


class RecomputeJobRead(BaseModel):
    id: int
    request_kind: RequestKind
    request_id: int
    status: str
    attempts: int
    last_error: str | None = None
    scheduled_at_utc: datetime
    idempotency_key: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RecomputeRunResponse(BaseModel):
    processed: int
    jobs: list[RecomputeJobRead]


class DashboardPendingRequests(BaseModel):
    leave: int
    wfh: int
    regularization: int


class DashboardTodayResponse(BaseModel):
    day: date
    total: int
    present: int
    late: int
    absent: int
    on_leave: int
    wfh: int
    holiday: int
    weekend: int
    by_status: dict[str, int]
    pending_requests: DashboardPendingRequests


class WorkingHoursPayload(BaseModel):
    start: str = Field(pattern=HHMM_PATTERN)
    end: str = Field(pattern=HHMM_PATTERN)

    @model_validator(mode="after")
    def validate_order(self) -> "WorkingHoursPayload":
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class GeofencePolicyPayload(BaseModel):
    enabled: bool = False
    enforce_check_in: bool = True
    enforce_check_out: bool = False
    allow_wfh_bypass: bool = True
    max_accuracy_m: float = Field(default=100.0, gt=0)


class GlobalSettingsUpsert(BaseModel):
    timezone: str = Field(min_length=1, max_length=64)
    working_hours: WorkingHoursPayload
    check_in_grace_minutes: int = Field(default=15, ge=0, le=720)
    half_day_threshold_hours: float = Field(default=4.0, ge=0, le=24)
    half_day_cutoff: str | None = Field(default=None, pattern=HHMM_PATTERN)
    weekend_days: list[Weekday] = Field(default_factory=lambda: [6])
    saturday_holidays: list[SaturdayOrdinal] = Field(default_factory=list)
    geofence: GeofencePolicyPayload = Field(default_factory=GeofencePolicyPayload)


class DepartmentSettingsUpsert(BaseModel):
    working_hours: WorkingHoursPayload | None = None
    check_in_grace_minutes: int | None = Field(default=None, ge=0, le=720)
    half_day_threshold_hours: float | None = Field(default=None, ge=0, le=24)
    half_day_cutoff: str | None = Field(default=None, pattern=HHMM_PATTERN)
    weekend_days: list[Weekday] | None = None
    saturday_holidays: list[SaturdayOrdinal] | None = None
    geofence: GeofencePolicyPayload | None = None


class EffectiveSettingsRead(BaseModel):
    timezone: str
    department_id: int | None
    working_hours: WorkingHoursPayload
    check_in_grace_minutes: int
    half_day_threshold_hours: float
    half_day_cutoff: str | None
    weekend_days: list[int]
    saturday_holidays: list[int]
    geofence: GeofencePolicyPayload
    overridden_fields: list[str]


class HolidayCreate(BaseModel):
    day_date: date
    title: str = Field(min_length=1, max_length=255)
    is_optional: bool = False


class HolidayRead(BaseModel):
    id: int
    day_date: date
    title: str
    is_optional: bool

    model_config = ConfigDict(from_attributes=True)


class OfficeCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    radius_m: int = Field(default=200, ge=1, le=50000)
    is_active: bool = True


class OfficeUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    lat: float | None = Field(default=None, ge=-90, le=90)
    lon: float | None = Field(default=None, ge=-180, le=180)
    radius_m: int | None = Field(default=None, ge=1, le=50000)
    is_active: bool | None = None


class OfficeRead(BaseModel):
    id: int
    name: str
    lat: float
    lon: float
    radius_m: int
    is_active: bool
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DepartmentUpsert(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class DepartmentRead(BaseModel):
    id: int
    name: str

    model_config = ConfigDict(from_attributes=True)


class EmployeeUpsert(BaseModel):
    full_name: str = Field(min_length=1, max_length=255)
    department_id: int | None = Field(default=None, ge=1)
    is_active: bool = True


class EmployeeRead(BaseModel):
    id: int
    full_name: str
    department_id: int | None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)
