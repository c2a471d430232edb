"""
Geofence validation service.
Uses Haversine formula to calculate distance between points.
"""
import math
import numbers
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence, Tuple

import structlog

from .errors import ValidationError, ConflictError
from .time_rules import ensure_utc

logger = structlog.get_logger(__name__)

# Earth radius in meters
EARTH_RADIUS_M = 6371000
DEFAULT_RADIUS_M = 100


@dataclass(frozen=True)
class CheckpointSnapshot:
    """Plain view of a checkpoint row used by geofence and assignment logic."""
    id: str
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    is_active: bool = True
    geofence_radius: int = DEFAULT_RADIUS_M
    is_geofence_enabled: bool = True
    max_assigned_guards: int = 1
    patrol_frequency: int = 60
    last_patrolled: Optional[datetime] = None

    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def is_overdue(self, now: datetime) -> bool:
        if self.last_patrolled is None:
            return True
        threshold = ensure_utc(now) - timedelta(minutes=self.patrol_frequency)
        return ensure_utc(self.last_patrolled) < threshold


def _require_number(name: str, value) -> float:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ValidationError(f"{name} must be a number", code="INVALID_COORDINATE", details={"field": name})
    value = float(value)
    if not math.isfinite(value):
        raise ValidationError(f"{name} must be finite", code="INVALID_COORDINATE", details={"field": name})
    return value


def validate_coordinates(latitude, longitude) -> Tuple[float, float]:
    """Range check used before any distance computation."""
    lat = _require_number("latitude", latitude)
    lng = _require_number("longitude", longitude)
    if not -90 <= lat <= 90:
        raise ValidationError("Latitude must be between -90 and 90", code="INVALID_COORDINATE", details={"field": "latitude"})
    if not -180 <= lng <= 180:
        raise ValidationError("Longitude must be between -180 and 180", code="INVALID_COORDINATE", details={"field": "longitude"})
    return lat, lng


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    lat1 = _require_number("lat1", lat1)
    lon1 = _require_number("lng1", lon1)
    lat2 = _require_number("lat2", lat2)
    lon2 = _require_number("lng2", lon2)

    # Convert to radians
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    # Haversine formula
    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    # Rounding can push a slightly above 1 for antipodal points
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def is_within_geofence(
    guard_lat: float,
    guard_lng: float,
    checkpoint_lat: float,
    checkpoint_lng: float,
    radius_m: float = DEFAULT_RADIUS_M,
) -> bool:
    """True when the guard is at most radius_m meters from the checkpoint."""
    distance = haversine_distance(guard_lat, guard_lng, checkpoint_lat, checkpoint_lng)
    return distance <= radius_m


def find_nearest(
    lat: float,
    lng: float,
    checkpoints: Sequence[CheckpointSnapshot],
) -> Optional[Tuple[CheckpointSnapshot, float]]:
    """
    Linear scan for the closest checkpoint.

    Checkpoints without coordinates are skipped. On equal distances the first
    checkpoint in input order wins.

    Returns:
        (checkpoint, distance_m) or None when nothing has coordinates
    """
    nearest = None
    nearest_distance = None
    for cp in checkpoints:
        if not cp.has_coordinates():
            continue
        distance = haversine_distance(lat, lng, cp.latitude, cp.longitude)
        if nearest_distance is None or distance < nearest_distance:
            nearest = cp
            nearest_distance = distance
    if nearest is None:
        return None
    return nearest, nearest_distance


def validate_check_in_location(lat: float, lng: float, checkpoint: CheckpointSnapshot) -> Optional[float]:
    """
    Enforce the checkpoint geofence for a check-in.

    Returns:
        Distance in meters, or None when the checkpoint has no coordinates.

    Raises:
        ConflictError: guard is outside the checkpoint radius
    """
    if not checkpoint.has_coordinates():
        return None
    distance = haversine_distance(lat, lng, checkpoint.latitude, checkpoint.longitude)
    if not checkpoint.is_geofence_enabled:
        return distance
    radius = checkpoint.geofence_radius or DEFAULT_RADIUS_M
    if distance > radius:
        logger.info(
            "geofence_rejected",
            checkpoint_id=checkpoint.id,
            distance_m=round(distance, 2),
            radius_m=radius,
        )
        raise ConflictError(
            f"Check-in location is {round(distance)}m away from checkpoint "
            f"'{checkpoint.name}'. Maximum allowed distance: {radius}m",
            code="OUTSIDE_GEOFENCE",
            details={
                "distance": round(distance),
                "required_radius": radius,
                "checkpoint_name": checkpoint.name,
            },
        )
    return distance


def select_checkpoint_for_check_in(
    lat: float,
    lng: float,
    checkpoints: Sequence[CheckpointSnapshot],
    now: datetime,
) -> Optional[Tuple[CheckpointSnapshot, float]]:
    """
    Pick the checkpoint a guard is checking in at when none was given.

    Prefers the nearest active checkpoint that is due for a patrol (never
    patrolled or overdue); falls back to the nearest active checkpoint.
    """
    active = [cp for cp in checkpoints if cp.is_active and cp.has_coordinates()]
    eligible = [cp for cp in active if cp.is_overdue(now)]
    return find_nearest(lat, lng, eligible) or find_nearest(lat, lng, active)
