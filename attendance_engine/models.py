from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from attendance_engine.db import Base

JsonDocument = JSON().with_variant(JSONB(), "postgresql")


class AttendanceStatus(str, enum.Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    HALF_DAY = "half-day"
    LEAVE = "leave"
    HOLIDAY = "holiday"
    WEEKEND = "weekend"
    WFH = "wfh"


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class LeaveType(str, enum.Enum):
    FULL_DAY = "full-day"
    HALF_DAY = "half-day"


class RegularizationType(str, enum.Enum):
    CHECK_IN = "check-in"
    CHECK_OUT = "check-out"
    BOTH = "both"


class RequestKind(str, enum.Enum):
    LEAVE = "leave"
    WFH = "wfh"
    REGULARIZATION = "regularization"


class GeofenceOutcome(str, enum.Enum):
    INSIDE_RADIUS = "INSIDE_RADIUS"
    OUTSIDE_RADIUS = "OUTSIDE_RADIUS"
    INVALID_EVIDENCE = "INVALID_EVIDENCE"
    WFH_BYPASS = "WFH_BYPASS"
    NOT_ENFORCED = "NOT_ENFORCED"
    NO_ACTIVE_OFFICES = "NO_ACTIVE_OFFICES"


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    EMPLOYEE = "EMPLOYEE"
    SYSTEM = "SYSTEM"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Department(Base):
    __tablename__ = "departments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    employees: Mapped[list[Employee]] = relationship(back_populates="department")
    settings_override: Mapped[DepartmentSettings | None] = relationship(
        back_populates="department",
        uselist=False,
    )


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    department_id: Mapped[int | None] = mapped_column(
        ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    department: Mapped[Department | None] = relationship(back_populates="employees")
    attendance_records: Mapped[list[AttendanceRecord]] = relationship(back_populates="employee")


class OfficeLocation(Base):
    __tablename__ = "office_locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    radius_m: Mapped[int] = mapped_column(Integer, nullable=False, default=200, server_default=text("200"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )


class Holiday(Base):
    __tablename__ = "holidays"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    day_date: Mapped[date] = mapped_column(Date, nullable=False, unique=True, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    is_optional: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))


class GlobalSettings(Base):
    __tablename__ = "global_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    working_hours: Mapped[dict[str, Any]] = mapped_column(JsonDocument, nullable=False)
    check_in_grace_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=15)
    half_day_threshold_hours: Mapped[float] = mapped_column(Float, nullable=False, default=4.0)
    half_day_cutoff: Mapped[str | None] = mapped_column(String(5), nullable=True)
    weekend_days: Mapped[list[int]] = mapped_column(JsonDocument, nullable=False, default=list)
    saturday_holidays: Mapped[list[int]] = mapped_column(JsonDocument, nullable=False, default=list)
    geofence: Mapped[dict[str, Any]] = mapped_column(JsonDocument, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )


class DepartmentSettings(Base):
    __tablename__ = "department_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    department_id: Mapped[int] = mapped_column(
        ForeignKey("departments.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    working_hours: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    check_in_grace_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    half_day_threshold_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    half_day_cutoff: Mapped[str | None] = mapped_column(String(5), nullable=True)
    weekend_days: Mapped[list[int] | None] = mapped_column(JsonDocument, nullable=True)
    saturday_holidays: Mapped[list[int] | None] = mapped_column(JsonDocument, nullable=True)
    geofence: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    department: Mapped[Department] = relationship(back_populates="settings_override")


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (
        UniqueConstraint("employee_id", "day_date", name="uq_attendance_records_employee_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    check_in: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    check_out: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[AttendanceStatus] = mapped_column(
        Enum(AttendanceStatus, name="attendance_status", values_callable=_enum_values),
        nullable=False,
        index=True,
    )
    work_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))
    check_in_location: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    check_out_location: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    geofence: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    is_leave: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    is_holiday: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    is_weekend: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    is_wfh: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    late_waived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    regularized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    holiday_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    employee: Mapped[Employee] = relationship(back_populates="attendance_records")


class ReviewableRequestMixin:
    """Columns shared by every request that goes through the review workflow."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[ApprovalStatus] = mapped_column(
        Enum(ApprovalStatus, name="approval_status", values_callable=_enum_values),
        nullable=False,
        default=ApprovalStatus.PENDING,
        index=True,
    )
    reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    requested_by: Mapped[str] = mapped_column(String(255), nullable=False)
    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_comment: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class LeaveRequest(ReviewableRequestMixin, Base):
    __tablename__ = "leave_requests"

    start_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    end_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    leave_type: Mapped[LeaveType] = mapped_column(
        Enum(LeaveType, name="leave_type", values_callable=_enum_values),
        nullable=False,
    )
    number_of_days: Mapped[float] = mapped_column(Float, nullable=False)


class WFHRequest(ReviewableRequestMixin, Base):
    __tablename__ = "wfh_requests"

    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)


class RegularizationRequest(ReviewableRequestMixin, Base):
    __tablename__ = "regularization_requests"

    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    regularization_type: Mapped[RegularizationType] = mapped_column(
        Enum(RegularizationType, name="regularization_type", values_callable=_enum_values),
        nullable=False,
    )
    requested_check_in: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    requested_check_out: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    waive_late: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))


class RecomputeJob(Base):
    __tablename__ = "recompute_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_kind: Mapped[RequestKind] = mapped_column(
        Enum(RequestKind, name="request_kind", values_callable=_enum_values),
        nullable=False,
    )
    request_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        server_default=text("'PENDING'"),
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    scheduled_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    details: Mapped[dict[str, Any]] = mapped_column(JsonDocument, nullable=False, default=dict)
