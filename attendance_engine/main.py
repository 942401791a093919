import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from attendance_engine.db import engine
from attendance_engine.errors import ApiError, error_response
from attendance_engine.logging_utils import log_context, setup_json_logging
from attendance_engine.routers import admin, attendance
from attendance_engine.services.approvals import retry_pending_recomputations
from attendance_engine.services.nightly import run_nightly_job
from attendance_engine.settings import get_cors_origins, get_settings, is_notification_webhook_configured

settings = get_settings()
setup_json_logging(settings.log_level)
logger = logging.getLogger("attendance_engine.request")
worker_logger = logging.getLogger("attendance_engine.worker")


app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "system")
    request.state.actor_id = getattr(request.state, "actor_id", "system")

    start = time.perf_counter()
    status_code = 500
    try:
        with log_context(request_id=request_id):
            response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "system"),
                "actor_id": getattr(request.state, "actor_id", "system"),
                "employee_id": getattr(request.state, "employee_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        401: "INVALID_TOKEN",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(OperationalError)
async def handle_operational_error(request: Request, exc: OperationalError) -> JSONResponse:
    logger.warning(
        "persistence_timeout",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "error": str(exc)[:500],
        },
    )
    return error_response(
        request,
        status_code=503,
        code="PERSISTENCE_TIMEOUT",
        message="Storage did not respond in time, retry the request.",
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(attendance.router, prefix="/api")
app.include_router(admin.router, prefix="/api")


def _worker_tick(now_utc: datetime) -> tuple[int, dict[str, Any] | None]:
    processed_jobs = retry_pending_recomputations(now_utc=now_utc)
    nightly = run_nightly_job(now_utc=now_utc)
    return len(processed_jobs), nightly


async def _background_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = max(15, int(settings.background_worker_interval_seconds))
    while not stop_event.is_set():
        try:
            now_utc = datetime.now(timezone.utc)
            processed_count, nightly = await asyncio.to_thread(_worker_tick, now_utc)
        except Exception:
            worker_logger.exception("background_worker_tick_failed")
        else:
            if processed_count or nightly is not None:
                worker_logger.info(
                    "background_worker_tick",
                    extra={
                        "processed_recompute_jobs": processed_count,
                        "nightly_days": nightly["days"] if nightly else None,
                    },
                )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def start_background_worker() -> None:
    if not settings.background_worker_enabled:
        return
    if getattr(app.state, "background_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_background_worker_loop(stop_event))
    app.state.background_worker_stop_event = stop_event
    app.state.background_worker_task = task
    if not is_notification_webhook_configured():
        worker_logger.warning("notification_webhook_not_configured")
    worker_logger.info(
        "background_worker_started",
        extra={
            "interval_seconds": max(15, int(settings.background_worker_interval_seconds)),
            "nightly_local_time": settings.nightly_materialization_local_time,
        },
    )


@app.on_event("shutdown")
async def stop_background_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "background_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "background_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.background_worker_stop_event = None
    app.state.background_worker_task = None


def _database_reachable() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("select 1"))
    except Exception:
        logger.exception("health_database_unreachable")
        return False
    return True


@app.get("/health")
def health() -> dict[str, Any]:
    database_ok = _database_reachable()
    return {
        "status": "ok" if database_ok else "degraded",
        "database": database_ok,
        "background_worker": getattr(app.state, "background_worker_task", None) is not None,
        "notification_webhook": is_notification_webhook_configured(),
    }
