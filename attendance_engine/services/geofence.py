from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from math import asin, cos, radians, sin, sqrt
from typing import Any, Literal, Protocol

from attendance_engine.models import GeofenceOutcome
from attendance_engine.services.effective_settings import GeofencePolicy

EventKind = Literal["check_in", "check_out"]

EARTH_RADIUS_M = 6371000.0


class OfficeLike(Protocol):
    id: int
    name: str
    lat: float
    lon: float
    radius_m: int
    is_active: bool


@dataclass(frozen=True)
class LocationSample:
    lat: float
    lon: float
    accuracy_m: float | None = None
    captured_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lat": self.lat,
            "lon": self.lon,
            "accuracy_m": self.accuracy_m,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
        }


@dataclass(frozen=True)
class GeofenceResult:
    is_valid: bool
    outcome: GeofenceOutcome
    enforced: bool
    distance_m: float | None = None
    office_id: int | None = None
    office_name: str | None = None
    radius_m: int | None = None
    wfh_bypass: bool = False
    reason: str | None = None

    @property
    def needs_review(self) -> bool:
        return not self.is_valid

    @property
    def is_invalid_evidence(self) -> bool:
        return self.outcome == GeofenceOutcome.INVALID_EVIDENCE

    def to_annotation(self, *, validated_at: datetime) -> dict[str, Any]:
        # validated_at is only stamped when the sample actually satisfied the fence.
        stamped = self.outcome in {GeofenceOutcome.INSIDE_RADIUS, GeofenceOutcome.WFH_BYPASS}
        return {
            "enforced": self.enforced,
            "outcome": self.outcome.value,
            "is_valid": self.is_valid,
            "office_id": self.office_id,
            "office_name": self.office_name,
            "distance_m": self.distance_m,
            "radius_m": self.radius_m,
            "reason": self.reason,
            "validated_at": validated_at.isoformat() if stamped else None,
            "wfh_bypass": self.wfh_bypass,
            "regularized": False,
            "needs_review": self.needs_review,
        }


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = radians(lat1)
    lon1_rad = radians(lon1)
    lat2_rad = radians(lat2)
    lon2_rad = radians(lon2)

    delta_lat = lat2_rad - lat1_rad
    delta_lon = lon2_rad - lon1_rad

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    c = 2 * asin(sqrt(a))
    return EARTH_RADIUS_M * c


def nearest_office(sample: LocationSample, offices: Iterable[OfficeLike]) -> tuple[OfficeLike, float] | None:
    best: tuple[OfficeLike, float] | None = None
    for office in offices:
        value = distance_m(office.lat, office.lon, sample.lat, sample.lon)
        if best is None or value < best[1]:
            best = (office, value)
    return best


def _is_enforced(policy: GeofencePolicy, event: EventKind) -> bool:
    if not policy.enabled:
        return False
    if event == "check_in":
        return policy.enforce_check_in
    return policy.enforce_check_out


def validate_location(
    sample: LocationSample | None,
    offices: Iterable[OfficeLike],
    policy: GeofencePolicy,
    *,
    wfh_approved: bool = False,
    event: EventKind = "check_in",
) -> GeofenceResult:
    """Check a location sample against the active offices.

    Order of evaluation: WFH bypass, enforcement switched off for the event,
    no active offices (fail open), missing or imprecise sample, then distance
    to the nearest office. Never raises and has no side effects.
    """
    active_offices = [office for office in offices if office.is_active]
    nearest = nearest_office(sample, active_offices) if sample is not None and active_offices else None
    nearest_fields: dict[str, Any] = {}
    if nearest is not None:
        office, value = nearest
        nearest_fields = {
            "distance_m": round(value, 2),
            "office_id": office.id,
            "office_name": office.name,
            "radius_m": office.radius_m,
        }

    enforced = _is_enforced(policy, event)
    if wfh_approved and policy.allow_wfh_bypass:
        return GeofenceResult(
            is_valid=True,
            outcome=GeofenceOutcome.WFH_BYPASS,
            enforced=enforced,
            distance_m=nearest_fields.get("distance_m"),
            wfh_bypass=True,
            reason="approved_wfh",
        )

    if not enforced:
        return GeofenceResult(
            is_valid=True,
            outcome=GeofenceOutcome.NOT_ENFORCED,
            enforced=False,
            **nearest_fields,
        )

    if not active_offices:
        return GeofenceResult(
            is_valid=True,
            outcome=GeofenceOutcome.NO_ACTIVE_OFFICES,
            enforced=True,
            reason="no_active_offices",
        )

    if sample is None:
        return GeofenceResult(
            is_valid=False,
            outcome=GeofenceOutcome.INVALID_EVIDENCE,
            enforced=True,
            reason="no_location",
        )

    if sample.accuracy_m is not None and sample.accuracy_m > policy.max_accuracy_m:
        return GeofenceResult(
            is_valid=False,
            outcome=GeofenceOutcome.INVALID_EVIDENCE,
            enforced=True,
            reason="low_accuracy",
            **nearest_fields,
        )

    office, value = nearest if nearest is not None else (None, float("inf"))
    if office is not None and value <= office.radius_m:
        return GeofenceResult(
            is_valid=True,
            outcome=GeofenceOutcome.INSIDE_RADIUS,
            enforced=True,
            **nearest_fields,
        )

    return GeofenceResult(
        is_valid=False,
        outcome=GeofenceOutcome.OUTSIDE_RADIUS,
        enforced=True,
        reason="outside_radius",
        **nearest_fields,
    )
