from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class ValidationError(ApiError):
    """Malformed input, rejected before it reaches the resolver."""

    def __init__(self, code: str, message: str):
        super().__init__(422, code, message)


class ConflictError(ApiError):
    """Duplicate check-in, duplicate pending request or an invalid transition."""

    def __init__(self, code: str, message: str):
        super().__init__(409, code, message)


class NotFoundError(ApiError):
    def __init__(self, code: str, message: str):
        super().__init__(404, code, message)


class ConfigurationError(ApiError):
    """No usable effective settings. Fatal to the operation, never defaulted."""

    def __init__(self, message: str, code: str = "CONFIGURATION_MISSING"):
        super().__init__(500, code, message)


class PersistenceTimeoutError(ApiError):
    """A database call exceeded its bound. Safe to retry."""

    def __init__(self, message: str = "Storage did not respond in time, retry the request."):
        super().__init__(503, "PERSISTENCE_TIMEOUT", message)


class RecomputationError(ApiError):
    """The approval is stored but the attendance recomputation failed and was queued."""

    def __init__(self, message: str, *, job_id: int | None = None):
        super().__init__(500, "RECOMPUTATION_FAILED", message)
        self.job_id = job_id


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    headers = {"Retry-After": "1"} if status_code == 503 else None
    return JSONResponse(status_code=status_code, content=payload, headers=headers)
