"""
Attendance status rules.

States: Absent (initial), Present, Late, Off.
  Absent/Off  -> Present|Late   via check-in
  Present|Late -> unchanged     via check-out
  any         -> Absent|Off     via administrative mark

Every transition takes an AttendanceSnapshot and returns a new one; nothing
here touches the database.
"""
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Optional, Tuple

from .errors import ConflictError
from .geofence import validate_coordinates
from .shift_window import ShiftWindow
from .time_rules import ensure_utc, minutes_between

STATUS_PRESENT = "Present"
STATUS_LATE = "Late"
STATUS_ABSENT = "Absent"
STATUS_OFF = "Off"
ATTENDANCE_STATUSES = (STATUS_PRESENT, STATUS_LATE, STATUS_ABSENT, STATUS_OFF)

OFF_DUTY_NOTE = "Marked as Off-duty"


@dataclass(frozen=True)
class AttendanceSnapshot:
    guard_id: str
    shift_id: str
    date: date
    status: str = STATUS_ABSENT
    check_in_time: Optional[datetime] = None
    check_out_time: Optional[datetime] = None
    checkpoint_id: Optional[str] = None
    check_in_lat: Optional[float] = None
    check_in_lng: Optional[float] = None
    check_out_lat: Optional[float] = None
    check_out_lng: Optional[float] = None
    scheduled_check_in: Optional[datetime] = None
    scheduled_check_out: Optional[datetime] = None
    late_minutes: int = 0
    early_checkout_minutes: int = 0
    total_minutes: Optional[int] = None
    notes: Optional[str] = None
    modified_by: Optional[str] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class InvariantResult:
    errors: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return not self.errors


def on_check_in(
    record: AttendanceSnapshot,
    window: ShiftWindow,
    shift_date: date,
    now: datetime,
    latitude: float,
    longitude: float,
    checkpoint_id: Optional[str] = None,
) -> AttendanceSnapshot:
    """
    Record a check-in. lateMinutes is measured from the scheduled start,
    without subtracting the grace period; use ShiftWindow.is_late_check_in
    for the grace-gated lateness flag.
    """
    if record.check_in_time is not None:
        raise ConflictError("Already checked in for this shift", code="ALREADY_CHECKED_IN")
    latitude, longitude = validate_coordinates(latitude, longitude)

    scheduled = window.scheduled_check_in(shift_date)
    late_minutes = max(0, minutes_between(scheduled, window.align(now)))
    return replace(
        record,
        status=STATUS_LATE if late_minutes > 0 else STATUS_PRESENT,
        check_in_time=now,
        check_in_lat=latitude,
        check_in_lng=longitude,
        scheduled_check_in=scheduled,
        late_minutes=late_minutes,
        checkpoint_id=checkpoint_id or record.checkpoint_id,
        # an off-duty note does not describe a worked shift
        notes=None if record.status == STATUS_OFF else record.notes,
    )


def on_check_out(
    record: AttendanceSnapshot,
    window: ShiftWindow,
    shift_date: date,
    now: datetime,
    latitude: float,
    longitude: float,
) -> AttendanceSnapshot:
    if record.check_in_time is None:
        raise ConflictError("No check-in record found for this shift", code="NOT_CHECKED_IN")
    if record.check_out_time is not None:
        raise ConflictError("Already checked out for this shift", code="ALREADY_CHECKED_OUT")
    if ensure_utc(now) <= ensure_utc(record.check_in_time):
        raise ConflictError("Check-out time must be after check-in time", code="CHECKOUT_BEFORE_CHECKIN")
    latitude, longitude = validate_coordinates(latitude, longitude)

    scheduled = window.scheduled_check_out(shift_date)
    early_minutes = max(0, minutes_between(window.align(now), scheduled))
    return replace(
        record,
        check_out_time=now,
        check_out_lat=latitude,
        check_out_lng=longitude,
        scheduled_check_out=scheduled,
        early_checkout_minutes=early_minutes,
        total_minutes=minutes_between(ensure_utc(record.check_in_time), ensure_utc(now)),
    )


def _cleared(record: AttendanceSnapshot, status: str, modified_by: Optional[str], notes: Optional[str]) -> AttendanceSnapshot:
    return replace(
        record,
        status=status,
        check_in_time=None,
        check_out_time=None,
        check_in_lat=None,
        check_in_lng=None,
        check_out_lat=None,
        check_out_lng=None,
        late_minutes=0,
        early_checkout_minutes=0,
        total_minutes=None,
        modified_by=modified_by,
        notes=notes,
    )


def mark_absent(record: AttendanceSnapshot, modified_by: Optional[str] = None) -> AttendanceSnapshot:
    return _cleared(record, STATUS_ABSENT, modified_by, record.notes)


def mark_off(record: AttendanceSnapshot, modified_by: Optional[str] = None, note: Optional[str] = None) -> AttendanceSnapshot:
    return _cleared(record, STATUS_OFF, modified_by, note or OFF_DUTY_NOTE)


def overtime_minutes(worked_minutes: int, window: ShiftWindow) -> int:
    return max(0, worked_minutes - window.overtime_threshold_minutes)


def worked_hours(worked_minutes: int) -> float:
    return round(worked_minutes / 60, 2)


def check_invariants(record: AttendanceSnapshot) -> InvariantResult:
    """Collect every rule the record breaks instead of stopping at the first."""
    errors = []
    if record.status not in ATTENDANCE_STATUSES:
        errors.append("Status must be Present, Late, Absent, or Off")
    if record.check_out_time is not None:
        if record.check_in_time is None:
            errors.append("Check-out requires a check-in")
        elif ensure_utc(record.check_out_time) <= ensure_utc(record.check_in_time):
            errors.append("Check-out time must be after check-in time")
    if record.status in (STATUS_PRESENT, STATUS_LATE) and record.check_in_time is None:
        errors.append("Present/Late requires check-in time")
    if record.status == STATUS_ABSENT and record.check_in_time is not None:
        errors.append("Cannot be Absent if check-in exists")
    if record.check_in_time is not None and (record.check_in_lat is None or record.check_in_lng is None):
        errors.append("Check-in location required with check-in time")
    if (record.late_minutes or 0) < 0 or (record.early_checkout_minutes or 0) < 0:
        errors.append("Minute counters cannot be negative")
    return InvariantResult(errors=tuple(errors))
