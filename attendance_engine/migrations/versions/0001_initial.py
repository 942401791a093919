"""Initial attendance engine schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-12 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

attendance_status = postgresql.ENUM(
    "present",
    "absent",
    "late",
    "half-day",
    "leave",
    "holiday",
    "weekend",
    "wfh",
    name="attendance_status",
    create_type=False,
)
approval_status = postgresql.ENUM(
    "pending",
    "approved",
    "rejected",
    name="approval_status",
    create_type=False,
)
leave_type = postgresql.ENUM("full-day", "half-day", name="leave_type", create_type=False)
regularization_type = postgresql.ENUM(
    "check-in",
    "check-out",
    "both",
    name="regularization_type",
    create_type=False,
)
request_kind = postgresql.ENUM("leave", "wfh", "regularization", name="request_kind", create_type=False)
audit_actor_type = postgresql.ENUM("ADMIN", "EMPLOYEE", "SYSTEM", name="audit_actor_type", create_type=False)

JSONB = postgresql.JSONB(astext_type=sa.Text())


def _timestamps(*, with_created: bool = True) -> list[sa.Column]:
    columns = []
    if with_created:
        columns.append(
            sa.Column(
                "created_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.text("CURRENT_TIMESTAMP"),
            )
        )
    columns.append(
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        )
    )
    return columns


def _review_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("status", approval_status, nullable=False),
        sa.Column("reason", sa.String(length=1000), nullable=True),
        sa.Column("requested_by", sa.String(length=255), nullable=False),
        sa.Column("reviewed_by", sa.String(length=255), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_comment", sa.String(length=1000), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in (
        attendance_status,
        approval_status,
        leave_type,
        regularization_type,
        request_kind,
        audit_actor_type,
    ):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "departments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.UniqueConstraint("name", name="uq_departments_name"),
    )

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_employees_department_id", "employees", ["department_id"], unique=False)

    op.create_table(
        "office_locations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lon", sa.Float(), nullable=False),
        sa.Column("radius_m", sa.Integer(), nullable=False, server_default=sa.text("200")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(with_created=False),
    )

    op.create_table(
        "holidays",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("is_optional", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    op.create_index("ix_holidays_day_date", "holidays", ["day_date"], unique=True)

    op.create_table(
        "global_settings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.Column("working_hours", JSONB, nullable=False),
        sa.Column("check_in_grace_minutes", sa.Integer(), nullable=False),
        sa.Column("half_day_threshold_hours", sa.Float(), nullable=False),
        sa.Column("half_day_cutoff", sa.String(length=5), nullable=True),
        sa.Column("weekend_days", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("saturday_holidays", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("geofence", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        *_timestamps(with_created=False),
    )

    op.create_table(
        "department_settings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=False),
        sa.Column("working_hours", JSONB, nullable=True),
        sa.Column("check_in_grace_minutes", sa.Integer(), nullable=True),
        sa.Column("half_day_threshold_hours", sa.Float(), nullable=True),
        sa.Column("half_day_cutoff", sa.String(length=5), nullable=True),
        sa.Column("weekend_days", JSONB, nullable=True),
        sa.Column("saturday_holidays", JSONB, nullable=True),
        sa.Column("geofence", JSONB, nullable=True),
        *_timestamps(with_created=False),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("department_id", name="uq_department_settings_department_id"),
    )

    op.create_table(
        "attendance_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("check_in", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_out", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", attendance_status, nullable=False),
        sa.Column("work_hours", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("check_in_location", JSONB, nullable=True),
        sa.Column("check_out_location", JSONB, nullable=True),
        sa.Column("geofence", JSONB, nullable=True),
        sa.Column("is_leave", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_holiday", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_weekend", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_wfh", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("late_waived", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("regularized", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("holiday_title", sa.String(length=255), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "day_date", name="uq_attendance_records_employee_day"),
    )
    op.create_index("ix_attendance_records_employee_id", "attendance_records", ["employee_id"], unique=False)
    op.create_index("ix_attendance_records_day_date", "attendance_records", ["day_date"], unique=False)
    op.create_index("ix_attendance_records_status", "attendance_records", ["status"], unique=False)

    op.create_table(
        "leave_requests",
        *_review_columns(),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("leave_type", leave_type, nullable=False),
        sa.Column("number_of_days", sa.Float(), nullable=False),
    )
    op.create_table(
        "wfh_requests",
        *_review_columns(),
        sa.Column("day_date", sa.Date(), nullable=False),
    )
    op.create_table(
        "regularization_requests",
        *_review_columns(),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("regularization_type", regularization_type, nullable=False),
        sa.Column("requested_check_in", sa.DateTime(timezone=True), nullable=True),
        sa.Column("requested_check_out", sa.DateTime(timezone=True), nullable=True),
        sa.Column("waive_late", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    for table_name in ("leave_requests", "wfh_requests", "regularization_requests"):
        op.create_index(f"ix_{table_name}_employee_id", table_name, ["employee_id"], unique=False)
        op.create_index(f"ix_{table_name}_status", table_name, ["status"], unique=False)
    op.create_index("ix_leave_requests_start_date", "leave_requests", ["start_date"], unique=False)
    op.create_index("ix_leave_requests_end_date", "leave_requests", ["end_date"], unique=False)
    op.create_index("ix_wfh_requests_day_date", "wfh_requests", ["day_date"], unique=False)
    op.create_index(
        "ix_regularization_requests_day_date",
        "regularization_requests",
        ["day_date"],
        unique=False,
    )

    op.create_table(
        "recompute_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("request_kind", request_kind, nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("scheduled_at_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_recompute_jobs_request_id", "recompute_jobs", ["request_id"], unique=False)
    op.create_index("ix_recompute_jobs_status", "recompute_jobs", ["status"], unique=False)
    op.create_index("ix_recompute_jobs_scheduled_at_utc", "recompute_jobs", ["scheduled_at_utc"], unique=False)
    op.create_index("ix_recompute_jobs_idempotency_key", "recompute_jobs", ["idempotency_key"], unique=True)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("request_id", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("details", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)
    op.create_index("ix_audit_logs_request_id", "audit_logs", ["request_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_request_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("recompute_jobs")
    op.drop_table("regularization_requests")
    op.drop_table("wfh_requests")
    op.drop_table("leave_requests")
    op.drop_table("attendance_records")
    op.drop_table("department_settings")
    op.drop_table("global_settings")
    op.drop_table("holidays")
    op.drop_table("office_locations")
    op.drop_table("employees")
    op.drop_table("departments")

    bind = op.get_bind()
    for enum_type in (
        audit_actor_type,
        request_kind,
        regularization_type,
        leave_type,
        approval_status,
        attendance_status,
    ):
        enum_type.drop(bind, checkfirst=True)
