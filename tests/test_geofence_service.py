from __future__ import annotations

import unittest
from datetime import datetime, timezone
from types import SimpleNamespace

from attendance_engine.models import GeofenceOutcome
from attendance_engine.services.effective_settings import GeofencePolicy
from attendance_engine.services.geofence import (
    LocationSample,
    distance_m,
    nearest_office,
    validate_location,
)
from tests.sqlite_support import OFFICE_LAT, OFFICE_LON, north_of_office


def _office(office_id: int = 1, *, lat: float = OFFICE_LAT, lon: float = OFFICE_LON, radius_m: int = 200, is_active: bool = True):
    return SimpleNamespace(
        id=office_id,
        name=f"Office {office_id}",
        lat=lat,
        lon=lon,
        radius_m=radius_m,
        is_active=is_active,
    )


ENFORCED = GeofencePolicy(enabled=True, enforce_check_in=True, enforce_check_out=False)


class DistanceTests(unittest.TestCase):
    def test_distance_m_zero_for_same_point(self) -> None:
        self.assertAlmostEqual(distance_m(OFFICE_LAT, OFFICE_LON, OFFICE_LAT, OFFICE_LON), 0.0, places=6)

    def test_distance_m_known_reference(self) -> None:
        # Approximate distance for 1 degree longitude on equator.
        self.assertAlmostEqual(distance_m(0.0, 0.0, 0.0, 1.0), 111_195, delta=300)

    def test_nearest_office_picks_closest(self) -> None:
        far_lat, far_lon = north_of_office(5000)
        near = _office(2)
        far = _office(1, lat=far_lat, lon=far_lon)
        office, value = nearest_office(LocationSample(lat=OFFICE_LAT, lon=OFFICE_LON), [far, near])
        self.assertIs(office, near)
        self.assertLess(value, 1.0)


class ValidateLocationTests(unittest.TestCase):
    def test_sample_150m_from_office_is_inside_radius(self) -> None:
        lat, lon = north_of_office(150)
        result = validate_location(LocationSample(lat=lat, lon=lon, accuracy_m=10), [_office()], ENFORCED)

        self.assertTrue(result.is_valid)
        self.assertEqual(result.outcome, GeofenceOutcome.INSIDE_RADIUS)
        self.assertAlmostEqual(result.distance_m, 150, delta=1)
        self.assertFalse(result.needs_review)

    def test_sample_500m_from_office_is_outside_radius(self) -> None:
        lat, lon = north_of_office(500)
        result = validate_location(LocationSample(lat=lat, lon=lon, accuracy_m=10), [_office()], ENFORCED)

        self.assertFalse(result.is_valid)
        self.assertEqual(result.outcome, GeofenceOutcome.OUTSIDE_RADIUS)
        self.assertEqual(result.reason, "outside_radius")
        self.assertTrue(result.needs_review)
        self.assertEqual(result.office_id, 1)

    def test_low_accuracy_sample_is_invalid_evidence(self) -> None:
        result = validate_location(
            LocationSample(lat=OFFICE_LAT, lon=OFFICE_LON, accuracy_m=250),
            [_office()],
            ENFORCED,
        )
        self.assertFalse(result.is_valid)
        self.assertTrue(result.is_invalid_evidence)
        self.assertEqual(result.reason, "low_accuracy")

    def test_missing_sample_is_invalid_evidence_when_enforced(self) -> None:
        result = validate_location(None, [_office()], ENFORCED)
        self.assertEqual(result.outcome, GeofenceOutcome.INVALID_EVIDENCE)
        self.assertEqual(result.reason, "no_location")

    def test_no_active_offices_fails_open(self) -> None:
        lat, lon = north_of_office(500)
        result = validate_location(
            LocationSample(lat=lat, lon=lon),
            [_office(is_active=False)],
            ENFORCED,
        )
        self.assertTrue(result.is_valid)
        self.assertEqual(result.outcome, GeofenceOutcome.NO_ACTIVE_OFFICES)

    def test_disabled_policy_is_not_enforced_but_keeps_distance(self) -> None:
        lat, lon = north_of_office(500)
        result = validate_location(LocationSample(lat=lat, lon=lon), [_office()], GeofencePolicy(enabled=False))
        self.assertTrue(result.is_valid)
        self.assertFalse(result.enforced)
        self.assertEqual(result.outcome, GeofenceOutcome.NOT_ENFORCED)
        self.assertAlmostEqual(result.distance_m, 500, delta=2)

    def test_check_out_not_enforced_by_default(self) -> None:
        lat, lon = north_of_office(500)
        result = validate_location(LocationSample(lat=lat, lon=lon), [_office()], ENFORCED, event="check_out")
        self.assertTrue(result.is_valid)
        self.assertEqual(result.outcome, GeofenceOutcome.NOT_ENFORCED)

    def test_approved_wfh_bypasses_the_fence(self) -> None:
        lat, lon = north_of_office(5000)
        result = validate_location(LocationSample(lat=lat, lon=lon), [_office()], ENFORCED, wfh_approved=True)
        self.assertTrue(result.is_valid)
        self.assertTrue(result.wfh_bypass)
        self.assertEqual(result.outcome, GeofenceOutcome.WFH_BYPASS)

    def test_wfh_bypass_can_be_disabled(self) -> None:
        lat, lon = north_of_office(5000)
        policy = GeofencePolicy(enabled=True, allow_wfh_bypass=False)
        result = validate_location(LocationSample(lat=lat, lon=lon), [_office()], policy, wfh_approved=True)
        self.assertFalse(result.is_valid)
        self.assertEqual(result.outcome, GeofenceOutcome.OUTSIDE_RADIUS)

    def test_annotation_only_stamps_validated_at_for_satisfied_fence(self) -> None:
        ts = datetime(2024, 1, 10, 3, 30, tzinfo=timezone.utc)
        inside = validate_location(LocationSample(lat=OFFICE_LAT, lon=OFFICE_LON), [_office()], ENFORCED)
        lat, lon = north_of_office(500)
        outside = validate_location(LocationSample(lat=lat, lon=lon), [_office()], ENFORCED)

        inside_annotation = inside.to_annotation(validated_at=ts)
        outside_annotation = outside.to_annotation(validated_at=ts)

        self.assertEqual(inside_annotation["validated_at"], ts.isoformat())
        self.assertFalse(inside_annotation["needs_review"])
        self.assertIsNone(outside_annotation["validated_at"])
        self.assertTrue(outside_annotation["needs_review"])
        self.assertEqual(outside_annotation["outcome"], "OUTSIDE_RADIUS")


if __name__ == "__main__":
    unittest.main()
