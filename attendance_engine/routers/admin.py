from datetime import date
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session

from attendance_engine.audit import AuditEntity, log_actor_audit
from attendance_engine.db import get_db
from attendance_engine.errors import get_request_id
from attendance_engine.models import ApprovalStatus, AttendanceStatus, LeaveType, RequestKind
from attendance_engine.schemas import (
    AttendanceRecordRead,
    DashboardTodayResponse,
    DepartmentRead,
    DepartmentSettingsUpsert,
    DepartmentUpsert,
    EffectiveSettingsRead,
    EmployeeRead,
    EmployeeUpsert,
    GlobalSettingsUpsert,
    HolidayCreate,
    HolidayRead,
    LeaveRequestRead,
    MaterializeRequest,
    MaterializeResponse,
    OfficeCreate,
    OfficeRead,
    OfficeUpdate,
    RecomputeJobRead,
    RecomputeRunResponse,
    RegularizationRequestRead,
    ReviewableRequestRead,
    ReviewDecisionRequest,
    ReviewResponse,
    WFHRequestRead,
)
from attendance_engine.security import Actor, require_reviewer, require_roles
from attendance_engine.services.approvals import (
    get_workflow,
    list_recompute_jobs,
    list_requests,
    retry_pending_recomputations,
)
from attendance_engine.services.attendance_records import list_records, materialize_day
from attendance_engine.services.configuration import (
    create_holiday,
    create_office,
    delete_holiday,
    get_effective_settings,
    list_holidays,
    list_offices,
    update_office,
    upsert_department_settings,
    upsert_global_settings,
)
from attendance_engine.services.dashboard import today_summary
from attendance_engine.services.directory import upsert_department, upsert_employee
from attendance_engine.services.notifications import send_review_notification

router = APIRouter(tags=["admin"])

require_admin = require_roles("admin")

REQUEST_READ_SCHEMAS: dict[RequestKind, type[ReviewableRequestRead]] = {
    RequestKind.LEAVE: LeaveRequestRead,
    RequestKind.WFH: WFHRequestRead,
    RequestKind.REGULARIZATION: RegularizationRequestRead,
}


def _serialize_request(kind: RequestKind, item: Any) -> dict[str, Any]:
    return REQUEST_READ_SCHEMAS[kind].model_validate(item).model_dump(mode="json")


def _audit_admin_action(
    db: Session,
    request: Request,
    *,
    actor: Actor,
    action: str,
    entity: AuditEntity,
    entity_id: str | int | None,
    details: dict[str, Any],
) -> None:
    log_actor_audit(
        db,
        actor_subject=actor.subject,
        actor_role=actor.role,
        action=action,
        entity=entity,
        entity_id=entity_id,
        details=details,
        request_id=get_request_id(request),
    )


@router.get("/admin/attendance", response_model=list[AttendanceRecordRead])
def admin_list_attendance(
    start_date: date = Query(),
    end_date: date = Query(),
    employee_id: int | None = Query(default=None, ge=1),
    department_id: int | None = Query(default=None, ge=1),
    status_filter: AttendanceStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=500, ge=1, le=5000),
    offset: int = Query(default=0, ge=0),
    _actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
) -> list[AttendanceRecordRead]:
    records = list_records(
        db,
        employee_id=employee_id,
        start_date=start_date,
        end_date=end_date,
        status=status_filter,
        department_id=department_id,
        limit=limit,
        offset=offset,
    )
    return [AttendanceRecordRead.model_validate(record) for record in records]


@router.get("/admin/dashboard/today", response_model=DashboardTodayResponse)
def admin_dashboard_today(
    _actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
) -> DashboardTodayResponse:
    return DashboardTodayResponse.model_validate(today_summary(db))


@router.get("/admin/requests/{kind}", response_model=list[dict[str, Any]])
def admin_list_requests(
    kind: RequestKind,
    employee_id: int | None = Query(default=None, ge=1),
    status_filter: ApprovalStatus | None = Query(default=None, alias="status"),
    leave_type: LeaveType | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    _actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    items = list_requests(
        db,
        kind,
        employee_id=employee_id,
        status=status_filter,
        leave_type=leave_type,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    return [_serialize_request(kind, item) for item in items]


@router.post("/admin/requests/{kind}/{request_id}/review", response_model=ReviewResponse)
def admin_review_request(
    kind: RequestKind,
    request_id: int,
    payload: ReviewDecisionRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
) -> ReviewResponse:
    decision = ApprovalStatus(payload.decision)
    outcome = get_workflow(kind).review(
        db,
        request_id,
        decision=decision,
        reviewer_id=actor.subject,
        comment=payload.comment,
    )
    recomputation_error = None
    if outcome.recomputation_error is not None:
        # Decision is stored; only the attendance update is still outstanding.
        response.status_code = status.HTTP_202_ACCEPTED
        recomputation_error = {
            "code": outcome.recomputation_error.code,
            "message": outcome.recomputation_error.message,
            "job_id": outcome.recomputation_error.job_id,
        }

    _audit_admin_action(
        db,
        request,
        actor=actor,
        action=f"{kind.value.upper()}_REQUEST_{decision.value.upper()}",
        entity=AuditEntity.for_request(kind),
        entity_id=request_id,
        details={
            "employee_id": outcome.request.employee_id,
            "comment": payload.comment,
            "recomputed": outcome.recomputed,
            "recompute_job_id": recomputation_error["job_id"] if recomputation_error else None,
            "days": [record.day_date.isoformat() for record in outcome.records],
        },
    )
    if outcome.notification_payload is not None:
        background_tasks.add_task(send_review_notification, outcome.notification_payload)
    return ReviewResponse(
        kind=kind,
        request=_serialize_request(kind, outcome.request),
        decision=decision,
        recomputed=outcome.recomputed,
        records=[AttendanceRecordRead.model_validate(record) for record in outcome.records],
        recomputation_error=recomputation_error,
    )


@router.post("/admin/attendance/materialize", response_model=MaterializeResponse)
def admin_materialize_day(
    payload: MaterializeRequest,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> MaterializeResponse:
    summary = materialize_day(db, payload.day)
    _audit_admin_action(
        db,
        request,
        actor=actor,
        action="ATTENDANCE_DAY_MATERIALIZED",
        entity=AuditEntity.ATTENDANCE_DAY,
        entity_id=payload.day.isoformat(),
        details=summary,
    )
    return MaterializeResponse.model_validate(summary)


@router.get("/admin/recompute-jobs", response_model=list[RecomputeJobRead])
def admin_list_recompute_jobs(
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    _actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
) -> list[RecomputeJobRead]:
    jobs = list_recompute_jobs(db, status=status_filter.upper() if status_filter else None, limit=limit)
    return [RecomputeJobRead.model_validate(job) for job in jobs]


@router.post("/admin/recompute-jobs/run", response_model=RecomputeRunResponse)
def admin_run_recompute_jobs(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> RecomputeRunResponse:
    jobs = retry_pending_recomputations(limit=limit, db=db)
    _audit_admin_action(
        db,
        request,
        actor=actor,
        action="RECOMPUTE_JOBS_RUN",
        entity=AuditEntity.RECOMPUTE_JOB,
        entity_id=None,
        details={"processed": len(jobs), "job_ids": [job.id for job in jobs]},
    )
    return RecomputeRunResponse(
        processed=len(jobs),
        jobs=[RecomputeJobRead.model_validate(job) for job in jobs],
    )


@router.get("/admin/settings/effective", response_model=EffectiveSettingsRead)
def admin_effective_settings(
    department_id: int | None = Query(default=None, ge=1),
    _actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
) -> EffectiveSettingsRead:
    return get_effective_settings(db, department_id)


@router.put("/admin/settings/global", response_model=EffectiveSettingsRead)
def admin_put_global_settings(
    payload: GlobalSettingsUpsert,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> EffectiveSettingsRead:
    row = upsert_global_settings(db, payload)
    _audit_admin_action(
        db,
        request,
        actor=actor,
        action="GLOBAL_SETTINGS_UPDATED",
        entity=AuditEntity.GLOBAL_SETTINGS,
        entity_id=row.id,
        details=payload.model_dump(mode="json"),
    )
    return get_effective_settings(db, None)


@router.put("/admin/settings/departments/{department_id}", response_model=EffectiveSettingsRead)
def admin_put_department_settings(
    department_id: int,
    payload: DepartmentSettingsUpsert,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> EffectiveSettingsRead:
    upsert_department_settings(db, department_id, payload)
    _audit_admin_action(
        db,
        request,
        actor=actor,
        action="DEPARTMENT_SETTINGS_UPDATED",
        entity=AuditEntity.DEPARTMENT_SETTINGS,
        entity_id=department_id,
        details=payload.model_dump(mode="json", exclude_none=True),
    )
    return get_effective_settings(db, department_id)


@router.get("/admin/holidays", response_model=list[HolidayRead])
def admin_list_holidays(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    _actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
) -> list[HolidayRead]:
    return [
        HolidayRead.model_validate(item)
        for item in list_holidays(db, start_date=start_date, end_date=end_date)
    ]


@router.post("/admin/holidays", response_model=HolidayRead, status_code=status.HTTP_201_CREATED)
def admin_create_holiday(
    payload: HolidayCreate,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> HolidayRead:
    holiday = create_holiday(db, payload)
    summary = materialize_day(db, holiday.day_date)
    _audit_admin_action(
        db,
        request,
        actor=actor,
        action="HOLIDAY_CREATED",
        entity=AuditEntity.HOLIDAY,
        entity_id=holiday.id,
        details={"day": holiday.day_date.isoformat(), "title": holiday.title, "materialized": summary},
    )
    return HolidayRead.model_validate(holiday)


@router.delete("/admin/holidays/{holiday_id}", status_code=status.HTTP_204_NO_CONTENT)
def admin_delete_holiday(
    holiday_id: int,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Response:
    day = delete_holiday(db, holiday_id)
    summary = materialize_day(db, day)
    _audit_admin_action(
        db,
        request,
        actor=actor,
        action="HOLIDAY_DELETED",
        entity=AuditEntity.HOLIDAY,
        entity_id=holiday_id,
        details={"day": day.isoformat(), "materialized": summary},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/admin/offices", response_model=list[OfficeRead])
def admin_list_offices(
    include_inactive: bool = Query(default=True),
    _actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
) -> list[OfficeRead]:
    return [OfficeRead.model_validate(item) for item in list_offices(db, include_inactive=include_inactive)]


@router.post("/admin/offices", response_model=OfficeRead, status_code=status.HTTP_201_CREATED)
def admin_create_office(
    payload: OfficeCreate,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> OfficeRead:
    office = create_office(db, payload)
    _audit_admin_action(
        db,
        request,
        actor=actor,
        action="OFFICE_CREATED",
        entity=AuditEntity.OFFICE_LOCATION,
        entity_id=office.id,
        details=payload.model_dump(mode="json"),
    )
    return OfficeRead.model_validate(office)


@router.patch("/admin/offices/{office_id}", response_model=OfficeRead)
def admin_update_office(
    office_id: int,
    payload: OfficeUpdate,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> OfficeRead:
    office = update_office(db, office_id, payload)
    _audit_admin_action(
        db,
        request,
        actor=actor,
        action="OFFICE_UPDATED",
        entity=AuditEntity.OFFICE_LOCATION,
        entity_id=office.id,
        details=payload.model_dump(mode="json", exclude_unset=True),
    )
    return OfficeRead.model_validate(office)


@router.put("/admin/directory/departments/{department_id}", response_model=DepartmentRead)
def admin_sync_department(
    department_id: int,
    payload: DepartmentUpsert,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> DepartmentRead:
    department = upsert_department(db, department_id, payload)
    _audit_admin_action(
        db,
        request,
        actor=actor,
        action="DEPARTMENT_SYNCED",
        entity=AuditEntity.DEPARTMENT,
        entity_id=department.id,
        details={"name": department.name},
    )
    return DepartmentRead.model_validate(department)


@router.put("/admin/directory/employees/{employee_id}", response_model=EmployeeRead)
def admin_sync_employee(
    employee_id: int,
    payload: EmployeeUpsert,
    request: Request,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> EmployeeRead:
    employee = upsert_employee(db, employee_id, payload)
    _audit_admin_action(
        db,
        request,
        actor=actor,
        action="EMPLOYEE_SYNCED",
        entity=AuditEntity.EMPLOYEE,
        entity_id=employee.id,
        details=payload.model_dump(mode="json"),
    )
    return EmployeeRead.model_validate(employee)
