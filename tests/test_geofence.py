from datetime import datetime, timedelta, timezone

import pytest

from patrolhub.services.errors import ConflictError, ValidationError
from patrolhub.services.geofence import (
    CheckpointSnapshot,
    find_nearest,
    haversine_distance,
    is_within_geofence,
    select_checkpoint_for_check_in,
    validate_check_in_location,
    validate_coordinates,
)

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def test_distance_is_zero_for_same_point():
    assert haversine_distance(40.7128, -74.0060, 40.7128, -74.0060) == 0


def test_distance_is_symmetric():
    a = haversine_distance(40.7128, -74.0060, 51.5074, -0.1278)
    b = haversine_distance(51.5074, -0.1278, 40.7128, -74.0060)
    assert a == pytest.approx(b)


def test_one_degree_of_longitude_on_equator():
    assert haversine_distance(0, 0, 0, 1) == pytest.approx(111194.93, abs=1)


def test_antipodal_points_do_not_blow_up():
    assert haversine_distance(0, 0, 0, 180) == pytest.approx(20015086.8, rel=1e-6)


@pytest.mark.parametrize("bad", ["12.5", None, float("nan"), float("inf"), True])
def test_distance_rejects_non_numeric_input(bad):
    with pytest.raises(ValidationError):
        haversine_distance(bad, 0, 0, 0)


@pytest.mark.parametrize("lat,lng", [(91, 0), (-90.5, 0), (0, 180.1), (0, -181)])
def test_validate_coordinates_range(lat, lng):
    with pytest.raises(ValidationError) as exc:
        validate_coordinates(lat, lng)
    assert exc.value.code == "INVALID_COORDINATE"


def test_geofence_boundary_is_inclusive():
    d = haversine_distance(40.0, -74.0, 40.0005, -74.0)
    assert is_within_geofence(40.0, -74.0, 40.0005, -74.0, radius_m=d)
    assert not is_within_geofence(40.0, -74.0, 40.0005, -74.0, radius_m=d - 0.001)


def test_find_nearest_skips_missing_coordinates_and_keeps_first_tie():
    a = CheckpointSnapshot(id="a", name="A", latitude=0.0, longitude=0.001)
    b = CheckpointSnapshot(id="b", name="B", latitude=0.0, longitude=-0.001)
    no_coords = CheckpointSnapshot(id="c", name="C")
    cp, distance = find_nearest(0.0, 0.0, [no_coords, a, b])
    assert cp.id == "a"
    assert distance == pytest.approx(111.19, abs=0.1)


def test_find_nearest_empty():
    assert find_nearest(0, 0, []) is None


def test_check_in_outside_radius_is_rejected():
    cp = CheckpointSnapshot(id="a", name="Gate", latitude=40.0, longitude=-74.0, geofence_radius=50)
    with pytest.raises(ConflictError) as exc:
        validate_check_in_location(40.001, -74.0, cp)
    assert exc.value.code == "OUTSIDE_GEOFENCE"
    assert exc.value.details["required_radius"] == 50
    assert exc.value.details["checkpoint_name"] == "Gate"
    assert exc.value.details["distance"] == 111


def test_check_in_passes_when_geofence_disabled_or_no_coordinates():
    far = CheckpointSnapshot(id="a", name="Gate", latitude=40.0, longitude=-74.0, is_geofence_enabled=False)
    assert validate_check_in_location(41.0, -74.0, far) > 100000
    assert validate_check_in_location(41.0, -74.0, CheckpointSnapshot(id="b", name="Roaming")) is None


def test_auto_select_prefers_overdue_checkpoint():
    near_fresh = CheckpointSnapshot(
        id="near", name="Near", latitude=0.0, longitude=0.0001, last_patrolled=NOW - timedelta(minutes=5),
    )
    far_overdue = CheckpointSnapshot(
        id="far", name="Far", latitude=0.0, longitude=0.0005, last_patrolled=NOW - timedelta(hours=3),
    )
    cp, _ = select_checkpoint_for_check_in(0.0, 0.0, [near_fresh, far_overdue], NOW)
    assert cp.id == "far"


def test_auto_select_falls_back_to_nearest_active():
    fresh = CheckpointSnapshot(id="a", name="A", latitude=0.0, longitude=0.0001, last_patrolled=NOW)
    inactive = CheckpointSnapshot(id="b", name="B", latitude=0.0, longitude=0.00001, is_active=False)
    cp, _ = select_checkpoint_for_check_in(0.0, 0.0, [fresh, inactive], NOW)
    assert cp.id == "a"
