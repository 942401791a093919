from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Any
from urllib import error as urllib_error
from urllib import request as urllib_request

from attendance_engine.models import ApprovalStatus, RequestKind
from attendance_engine.settings import get_settings, is_notification_webhook_configured

logger = logging.getLogger("attendance_engine.notifications")


def _deliver_webhook(url: str, payload: dict[str, Any], *, token: str | None, timeout_seconds: int) -> int:
    """POST the payload and return the HTTP status. Raises on transport errors."""
    webhook_request = urllib_request.Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers={"Content-Type": "application/json"},
    )
    if token:
        webhook_request.add_header("Authorization", f"Bearer {token}")
    try:
        with urllib_request.urlopen(webhook_request, timeout=max(1, timeout_seconds)) as response:
            return int(getattr(response, "status", 200) or 200)
    except urllib_error.HTTPError as exc:
        return int(exc.code)


def _request_dates(request: Any) -> dict[str, str]:
    if hasattr(request, "start_date"):
        return {
            "start_date": request.start_date.isoformat(),
            "end_date": request.end_date.isoformat(),
        }
    return {"day_date": request.day_date.isoformat()}


def build_review_payload(kind: RequestKind, request: Any, decision: ApprovalStatus) -> dict[str, Any]:
    return {
        "event": "request_reviewed",
        "kind": kind.value,
        "request_id": request.id,
        "employee_id": request.employee_id,
        "decision": decision.value,
        "reviewed_by": request.reviewed_by,
        "review_comment": request.review_comment,
        "sent_at_utc": datetime.now(timezone.utc).isoformat(),
        **_request_dates(request),
    }


def send_review_notification(payload: dict[str, Any]) -> dict[str, Any]:
    """Deliver a built review payload. Never raises; meant to run after the response."""
    if not is_notification_webhook_configured():
        return {"configured": False, "ok": False, "status_code": None, "error": None}

    settings = get_settings()
    status_code: int | None = None
    error: str | None = None
    try:
        status_code = _deliver_webhook(
            (settings.notification_webhook_url or "").strip(),
            payload,
            token=(settings.notification_webhook_token or "").strip() or None,
            timeout_seconds=settings.notification_timeout_seconds,
        )
    except Exception as exc:
        error = str(exc)
    ok = status_code is not None and 200 <= status_code < 300
    if status_code is not None and not ok:
        error = f"webhook answered {status_code}"

    log_extra = {
        "kind": payload.get("kind"),
        "employee_id": payload.get("employee_id"),
        "review_request_id": payload.get("request_id"),
        "decision": payload.get("decision"),
        "status_code": status_code,
    }
    if ok:
        logger.info("review_notification_sent", extra=log_extra)
    else:
        logger.warning("review_notification_failed", extra={**log_extra, "error": (error or "")[:500]})
    return {"configured": True, "ok": ok, "status_code": status_code, "error": error}

