from __future__ import annotations

from datetime import datetime, timezone
import enum
import logging
from typing import Any

from sqlalchemy.orm import Session

from attendance_engine.logging_utils import current_log_context
from attendance_engine.models import AuditActorType, AuditLog, RequestKind

logger = logging.getLogger("attendance_engine.audit")


class AuditEntity(str, enum.Enum):
    ATTENDANCE_RECORD = "attendance_record"
    ATTENDANCE_DAY = "attendance_day"
    LEAVE_REQUEST = "leave_request"
    WFH_REQUEST = "wfh_request"
    REGULARIZATION_REQUEST = "regularization_request"
    RECOMPUTE_JOB = "recompute_job"
    GLOBAL_SETTINGS = "global_settings"
    DEPARTMENT_SETTINGS = "department_settings"
    HOLIDAY = "holiday"
    OFFICE_LOCATION = "office_location"
    DEPARTMENT = "department"
    EMPLOYEE = "employee"

    @classmethod
    def for_request(cls, kind: RequestKind) -> AuditEntity:
        return cls(f"{kind.value}_request")


def actor_type_for_role(role: str) -> AuditActorType:
    if role == "employee":
        return AuditActorType.EMPLOYEE
    if role == "system":
        return AuditActorType.SYSTEM
    return AuditActorType.ADMIN


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    entity: AuditEntity,
    entity_id: str | int | None = None,
    success: bool = True,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditLog | None:
    """Append an audit row in its own commit. A failed write is logged, never raised.

    The request id defaults to the one bound to the current log context, so
    rows written while serving a request can be joined to its log lines.
    """
    request_id = request_id or current_log_context().get("request_id")
    audit = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        entity_type=entity.value,
        entity_id=str(entity_id) if entity_id is not None else None,
        request_id=request_id[:255] if request_id else None,
        success=success,
        details=details or {},
    )
    db.add(audit)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={"request_id": request_id, "action": action, "actor_id": actor_id},
        )
        return None

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "actor_id": actor_id,
            "action": action,
            "actor_type": actor_type,
            "entity_type": entity,
            "entity_id": audit.entity_id,
            "success": success,
        },
    )
    return audit


def log_actor_audit(
    db: Session,
    *,
    actor_subject: str,
    actor_role: str,
    action: str,
    entity: AuditEntity,
    entity_id: str | int | None,
    details: dict[str, Any],
    request_id: str | None = None,
) -> AuditLog | None:
    return log_audit(
        db,
        actor_type=actor_type_for_role(actor_role),
        actor_id=actor_subject,
        action=action,
        entity=entity,
        entity_id=entity_id,
        details=details,
        request_id=request_id,
    )
