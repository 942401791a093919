from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from attendance_engine.audit import AuditEntity, log_audit
from attendance_engine.db import SessionLocal
from attendance_engine.models import AuditActorType, AuditLog
from attendance_engine.services.attendance_records import materialize_day
from attendance_engine.services.effective_settings import effective_settings, parse_hhmm
from attendance_engine.settings import get_settings

logger = logging.getLogger("attendance_engine.nightly")

DAY_CLOSED_ACTION = "NIGHTLY_DAY_CLOSED"


def _nightly_local_time() -> time:
    raw = get_settings().nightly_materialization_local_time
    try:
        return parse_hhmm(raw)
    except ValueError:
        logger.warning("nightly_local_time_invalid", extra={"value": raw})
        return time(hour=0, minute=30)


def last_closed_day(db: Session) -> date | None:
    """Newest day the nightly job closed, read back from its audit trail."""
    value = db.scalar(
        select(func.max(AuditLog.entity_id)).where(
            AuditLog.action == DAY_CLOSED_ACTION,
            AuditLog.success.is_(True),
        )
    )
    return date.fromisoformat(value) if value else None


def due_nightly_days(
    local_now: datetime,
    *,
    last_closed: date | None,
    max_days: int = 31,
) -> list[date]:
    """Days still to close, oldest first.

    Yesterday becomes due at the configured local time. Days missed while the
    worker was down are due right away. Without any history only yesterday is
    closed.
    """
    yesterday = local_now.date() - timedelta(days=1)
    latest = yesterday if local_now.time() >= _nightly_local_time() else yesterday - timedelta(days=1)
    if last_closed is None:
        return [yesterday] if latest == yesterday else []

    first = last_closed + timedelta(days=1)
    if first > latest:
        return []
    count = min((latest - first).days + 1, max(1, max_days))
    return [first + timedelta(days=offset) for offset in range(count)]


def run_nightly_job(
    *,
    now_utc: datetime | None = None,
    db: Session | None = None,
    force: bool = False,
) -> dict[str, Any] | None:
    """Close every due day and pre-seed upcoming holidays and weekends.

    Returns None when nothing was due. `force` re-closes yesterday even when
    it is already closed; closing a day twice rewrites identical records.
    """
    if db is None:
        with SessionLocal() as managed_db:
            return run_nightly_job(now_utc=now_utc, db=managed_db, force=force)

    reference_utc = now_utc or datetime.now(timezone.utc)
    settings = effective_settings(db)
    local_now = reference_utc.astimezone(settings.tzinfo)
    today = local_now.date()
    if force:
        days = [today - timedelta(days=1)]
    else:
        days = due_nightly_days(
            local_now,
            last_closed=last_closed_day(db),
            max_days=get_settings().nightly_catchup_max_days,
        )
    if not days:
        return None
    if len(days) > 1:
        logger.warning(
            "nightly_catching_up",
            extra={"first_day": days[0].isoformat(), "last_day": days[-1].isoformat(), "days_count": len(days)},
        )

    closed: list[dict[str, Any]] = []
    for day in days:
        summary = materialize_day(db, day, now_utc=reference_utc)
        log_audit(
            db,
            actor_type=AuditActorType.SYSTEM,
            actor_id="nightly_job",
            action=DAY_CLOSED_ACTION,
            entity=AuditEntity.ATTENDANCE_DAY,
            entity_id=day.isoformat(),
            details=summary,
        )
        closed.append(summary)

    preseeded: list[dict[str, Any]] = []
    for offset in range(1, max(0, get_settings().nightly_preseed_days) + 1):
        summary = materialize_day(db, today + timedelta(days=offset), now_utc=reference_utc)
        if summary["written"]:
            preseeded.append(summary)

    result = {
        "days": [day.isoformat() for day in days],
        "closed": closed,
        "preseeded": preseeded,
    }
    logger.info(
        "nightly_job_completed",
        extra={
            "closed_days": result["days"],
            "written": sum(item["written"] for item in closed),
            "preseeded_days": [item["day"] for item in preseeded],
        },
    )
    return result
