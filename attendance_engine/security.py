from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from attendance_engine.errors import ApiError
from attendance_engine.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

ROLE_ADMIN = "admin"
ROLE_HR = "hr"
ROLE_EMPLOYEE = "employee"
KNOWN_ROLES = frozenset({ROLE_ADMIN, ROLE_HR, ROLE_EMPLOYEE})
REVIEWER_ROLES = (ROLE_ADMIN, ROLE_HR)


@dataclass(frozen=True)
class Actor:
    subject: str
    role: str
    employee_id: int | None = None

    @property
    def is_reviewer(self) -> bool:
        return self.role in REVIEWER_ROLES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(
    *,
    sub: str,
    role: str,
    employee_id: int | None = None,
    expires_delta: timedelta = timedelta(minutes=30),
) -> str:
    """Issue a token the way the auth service does. Used by tests and local tooling."""
    settings = get_settings()
    now = _utcnow()
    claims: dict[str, Any] = {
        "sub": sub,
        "role": role,
        "employee_id": employee_id,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
        "jti": str(uuid4()),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm="HS256")


def decode_token(token: str) -> Actor:
    settings = get_settings()
    if not settings.jwt_secret:
        raise ApiError(status_code=500, code="CONFIGURATION_MISSING", message="JWT secret is not configured.")
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")

    role = payload.get("role")
    if role not in KNOWN_ROLES:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")

    raw_employee_id = payload.get("employee_id")
    employee_id: int | None = None
    if raw_employee_id is not None:
        try:
            employee_id = int(raw_employee_id)
        except (TypeError, ValueError) as exc:
            raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token employee is invalid.") from exc
    if role == ROLE_EMPLOYEE and employee_id is None:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token employee is missing.")

    return Actor(subject=subject, role=role, employee_id=employee_id)


def require_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Actor:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    actor = decode_token(credentials.credentials)
    request.state.actor = actor.role
    request.state.actor_id = actor.subject
    return actor


def require_roles(*roles: str) -> Callable[..., Actor]:
    unknown = set(roles) - KNOWN_ROLES
    if unknown:
        raise ValueError(f"Unknown roles: {sorted(unknown)}")

    def _dependency(actor: Actor = Depends(require_actor)) -> Actor:
        if actor.role not in roles:
            raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
        return actor

    return _dependency


def require_employee(actor: Actor = Depends(require_actor)) -> Actor:
    if actor.employee_id is None:
        raise ApiError(
            status_code=403,
            code="EMPLOYEE_CONTEXT_REQUIRED",
            message="Token is not bound to an employee.",
        )
    return actor


require_reviewer = require_roles(*REVIEWER_ROLES)
