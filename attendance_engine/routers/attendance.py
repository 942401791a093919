from datetime import date, datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from attendance_engine.audit import AuditEntity, log_actor_audit
from attendance_engine.db import get_db
from attendance_engine.errors import get_request_id
from attendance_engine.models import ApprovalStatus, RequestKind
from attendance_engine.schemas import (
    AttendanceEventRequest,
    AttendanceRecordRead,
    EmployeeRequestsResponse,
    LeaveRequestRead,
    LeaveSubmitRequest,
    RegularizationRequestRead,
    RegularizationSubmitRequest,
    WFHRequestRead,
    WFHSubmitRequest,
)
from attendance_engine.security import Actor, require_employee
from attendance_engine.services.approvals import (
    list_employee_requests,
    submit_leave,
    submit_regularization,
    submit_wfh,
)
from attendance_engine.services.attendance_records import list_records, record_check_in, record_check_out
from attendance_engine.services.effective_settings import effective_settings
from attendance_engine.services.geofence import LocationSample

router = APIRouter(tags=["attendance"])


def _location_sample(payload: AttendanceEventRequest) -> LocationSample | None:
    if payload.location is None:
        return None
    return LocationSample(
        lat=payload.location.lat,
        lon=payload.location.lon,
        accuracy_m=payload.location.accuracy_m,
        captured_at=payload.location.captured_at,
    )


def _audit_employee_action(
    db: Session,
    request: Request,
    *,
    actor: Actor,
    action: str,
    entity: AuditEntity,
    entity_id: int,
    details: dict,
) -> None:
    log_actor_audit(
        db,
        actor_subject=actor.subject,
        actor_role=actor.role,
        action=action,
        entity=entity,
        entity_id=entity_id,
        details={"employee_id": actor.employee_id, **details},
        request_id=get_request_id(request),
    )


@router.post("/attendance/check-in", response_model=AttendanceRecordRead, status_code=status.HTTP_201_CREATED)
def check_in(
    payload: AttendanceEventRequest,
    request: Request,
    actor: Actor = Depends(require_employee),
    db: Session = Depends(get_db),
) -> AttendanceRecordRead:
    record = record_check_in(
        db,
        employee_id=actor.employee_id,
        ts_utc=payload.ts_utc,
        location=_location_sample(payload),
    )
    request.state.employee_id = record.employee_id
    _audit_employee_action(
        db,
        request,
        actor=actor,
        action="ATTENDANCE_CHECK_IN",
        entity=AuditEntity.ATTENDANCE_RECORD,
        entity_id=record.id,
        details={
            "day": record.day_date.isoformat(),
            "status": record.status.value,
            "geofence_outcome": (record.geofence or {}).get("outcome"),
        },
    )
    return AttendanceRecordRead.model_validate(record)


@router.post("/attendance/check-out", response_model=AttendanceRecordRead)
def check_out(
    payload: AttendanceEventRequest,
    request: Request,
    actor: Actor = Depends(require_employee),
    db: Session = Depends(get_db),
) -> AttendanceRecordRead:
    record = record_check_out(
        db,
        employee_id=actor.employee_id,
        ts_utc=payload.ts_utc,
        location=_location_sample(payload),
    )
    request.state.employee_id = record.employee_id
    _audit_employee_action(
        db,
        request,
        actor=actor,
        action="ATTENDANCE_CHECK_OUT",
        entity=AuditEntity.ATTENDANCE_RECORD,
        entity_id=record.id,
        details={
            "day": record.day_date.isoformat(),
            "status": record.status.value,
            "work_hours": record.work_hours,
        },
    )
    return AttendanceRecordRead.model_validate(record)


@router.get("/attendance/me", response_model=list[AttendanceRecordRead])
def my_attendance(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    actor: Actor = Depends(require_employee),
    db: Session = Depends(get_db),
) -> list[AttendanceRecordRead]:
    resolved_end = end_date or effective_settings(db).local_day(datetime.now(timezone.utc))
    resolved_start = start_date or (resolved_end - timedelta(days=30))
    records = list_records(
        db,
        employee_id=actor.employee_id,
        start_date=resolved_start,
        end_date=resolved_end,
    )
    return [AttendanceRecordRead.model_validate(record) for record in records]


@router.post("/requests/leaves", response_model=LeaveRequestRead, status_code=status.HTTP_201_CREATED)
def create_leave_request(
    payload: LeaveSubmitRequest,
    request: Request,
    actor: Actor = Depends(require_employee),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave = submit_leave(
        db,
        employee_id=actor.employee_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        leave_type=payload.leave_type,
        reason=payload.reason,
        requested_by=actor.subject,
    )
    _audit_employee_action(
        db,
        request,
        actor=actor,
        action="LEAVE_REQUEST_SUBMITTED",
        entity=AuditEntity.LEAVE_REQUEST,
        entity_id=leave.id,
        details={
            "start_date": leave.start_date.isoformat(),
            "end_date": leave.end_date.isoformat(),
            "leave_type": leave.leave_type.value,
        },
    )
    return LeaveRequestRead.model_validate(leave)


@router.post("/requests/wfh", response_model=WFHRequestRead, status_code=status.HTTP_201_CREATED)
def create_wfh_request(
    payload: WFHSubmitRequest,
    request: Request,
    actor: Actor = Depends(require_employee),
    db: Session = Depends(get_db),
) -> WFHRequestRead:
    wfh = submit_wfh(
        db,
        employee_id=actor.employee_id,
        day_date=payload.day_date,
        reason=payload.reason,
        requested_by=actor.subject,
    )
    _audit_employee_action(
        db,
        request,
        actor=actor,
        action="WFH_REQUEST_SUBMITTED",
        entity=AuditEntity.WFH_REQUEST,
        entity_id=wfh.id,
        details={"day": wfh.day_date.isoformat()},
    )
    return WFHRequestRead.model_validate(wfh)


@router.post(
    "/requests/regularizations",
    response_model=RegularizationRequestRead,
    status_code=status.HTTP_201_CREATED,
)
def create_regularization_request(
    payload: RegularizationSubmitRequest,
    request: Request,
    actor: Actor = Depends(require_employee),
    db: Session = Depends(get_db),
) -> RegularizationRequestRead:
    regularization = submit_regularization(
        db,
        employee_id=actor.employee_id,
        day_date=payload.day_date,
        regularization_type=payload.regularization_type,
        requested_check_in=payload.requested_check_in,
        requested_check_out=payload.requested_check_out,
        waive_late=payload.waive_late,
        reason=payload.reason,
        requested_by=actor.subject,
    )
    _audit_employee_action(
        db,
        request,
        actor=actor,
        action="REGULARIZATION_REQUEST_SUBMITTED",
        entity=AuditEntity.REGULARIZATION_REQUEST,
        entity_id=regularization.id,
        details={
            "day": regularization.day_date.isoformat(),
            "regularization_type": regularization.regularization_type.value,
        },
    )
    return RegularizationRequestRead.model_validate(regularization)


@router.get("/requests/me", response_model=EmployeeRequestsResponse)
def my_requests(
    status_filter: ApprovalStatus | None = Query(default=None, alias="status"),
    actor: Actor = Depends(require_employee),
    db: Session = Depends(get_db),
) -> EmployeeRequestsResponse:
    grouped = list_employee_requests(db, actor.employee_id, status=status_filter)
    return EmployeeRequestsResponse(
        leave=[LeaveRequestRead.model_validate(item) for item in grouped[RequestKind.LEAVE]],
        wfh=[WFHRequestRead.model_validate(item) for item in grouped[RequestKind.WFH]],
        regularization=[
            RegularizationRequestRead.model_validate(item) for item in grouped[RequestKind.REGULARIZATION]
        ],
    )
