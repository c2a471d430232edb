"""
Attendance service.

Loads rows, hands plain snapshots to the status engine and geofence rules,
and writes the outcome back in a single transaction per request.
"""
import uuid
from dataclasses import fields
from datetime import date, datetime
from typing import List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Attendance, Checkpoint, PatrolLog, Shift, User, ROLE_GUARD
from .attendance_status import (
    AttendanceSnapshot,
    STATUS_ABSENT,
    STATUS_LATE,
    STATUS_OFF,
    STATUS_PRESENT,
    check_invariants,
    mark_absent,
    mark_off,
    on_check_in,
    on_check_out,
    overtime_minutes,
    worked_hours,
)
from .audit import create_audit_log
from .cache import CheckpointCache
from .checkpoint_assignment import checkpoint_snapshot
from .errors import ConflictError, DependencyFailure, NotFoundError, ValidationError
from .geofence import select_checkpoint_for_check_in, validate_check_in_location, validate_coordinates
from .shift_window import ShiftWindow, find_current_window, window_from_shift
from .time_rules import ensure_utc, minutes_between, to_iso, utc_to_local

logger = structlog.get_logger(__name__)

NOT_CHECKED_IN = "Not Checked In"


# -- row <-> snapshot --

def _str_or_none(value) -> Optional[str]:
    return str(value) if value is not None else None


def snapshot_from_row(row: Attendance) -> AttendanceSnapshot:
    return AttendanceSnapshot(
        id=_str_or_none(row.id),
        guard_id=str(row.guard_id),
        shift_id=str(row.shift_id),
        date=row.date,
        status=row.status or STATUS_ABSENT,
        check_in_time=row.check_in_time,
        check_out_time=row.check_out_time,
        checkpoint_id=_str_or_none(row.checkpoint_id),
        check_in_lat=row.check_in_lat,
        check_in_lng=row.check_in_lng,
        check_out_lat=row.check_out_lat,
        check_out_lng=row.check_out_lng,
        scheduled_check_in=row.scheduled_check_in,
        scheduled_check_out=row.scheduled_check_out,
        late_minutes=row.late_minutes or 0,
        early_checkout_minutes=row.early_checkout_minutes or 0,
        total_minutes=row.total_minutes,
        notes=row.notes,
        modified_by=_str_or_none(row.modified_by),
    )


_UUID_FIELDS = {"checkpoint_id", "modified_by"}
_INSTANT_FIELDS = {"check_in_time", "check_out_time", "scheduled_check_in", "scheduled_check_out"}
_SKIP_FIELDS = {"id", "guard_id", "shift_id", "date"}


def apply_snapshot(row: Attendance, snapshot: AttendanceSnapshot) -> None:
    """Copy mutable snapshot fields onto the row; instants are stored as UTC."""
    for f in fields(snapshot):
        if f.name in _SKIP_FIELDS:
            continue
        value = getattr(snapshot, f.name)
        if value is not None and f.name in _UUID_FIELDS:
            value = uuid.UUID(value)
        elif value is not None and f.name in _INSTANT_FIELDS:
            value = ensure_utc(value)
        setattr(row, f.name, value)


def _enforce_invariants(snapshot: AttendanceSnapshot) -> None:
    result = check_invariants(snapshot)
    if not result.ok:
        raise ConflictError(
            "Attendance record would be inconsistent",
            code="INVARIANT_VIOLATION",
            details={"errors": list(result.errors)},
        )


def serialize_attendance(row: Attendance) -> dict:
    return {
        "id": str(row.id),
        "guardId": str(row.guard_id),
        "guardName": row.guard.name if row.guard else None,
        "shiftId": str(row.shift_id),
        "shift": row.shift.name if row.shift else None,
        "date": row.date.isoformat(),
        "status": row.status,
        "checkInTime": to_iso(row.check_in_time),
        "checkOutTime": to_iso(row.check_out_time),
        "checkpointId": _str_or_none(row.checkpoint_id),
        "scheduledCheckIn": to_iso(row.scheduled_check_in),
        "scheduledCheckOut": to_iso(row.scheduled_check_out),
        "lateMinutes": row.late_minutes or 0,
        "earlyCheckoutMinutes": row.early_checkout_minutes or 0,
        "totalMinutes": row.total_minutes,
        "totalHours": worked_hours(row.total_minutes) if row.total_minutes is not None else None,
        "notes": row.notes,
    }


# -- lookups --

def parse_id(value, what: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {what} id", code="INVALID_ID", details={"field": f"{what}_id"})


def window_for(shift: Shift) -> ShiftWindow:
    return window_from_shift(shift, settings.tz_default)


def active_shift_windows(db: Session) -> List[Tuple[Shift, ShiftWindow]]:
    shifts = db.query(Shift).filter(Shift.is_active.is_(True)).order_by(Shift.start_time).all()
    return [(s, window_for(s)) for s in shifts]


def current_shift(db: Session, now: datetime) -> Optional[Tuple[Shift, ShiftWindow]]:
    pairs = active_shift_windows(db)
    window = find_current_window([w for _, w in pairs], now)
    if window is None:
        return None
    for shift, w in pairs:
        if w is window:
            return shift, w
    return None


def resolve_shift(db: Session, now: datetime, shift_id=None) -> Tuple[Shift, ShiftWindow]:
    if shift_id is not None:
        shift = db.query(Shift).filter(Shift.id == parse_id(shift_id, "shift")).first()
        if shift is None or not shift.is_active:
            raise NotFoundError("Shift not found or inactive", code="SHIFT_NOT_FOUND")
        return shift, window_for(shift)
    found = current_shift(db, now)
    if found is None:
        raise NotFoundError("No active shift covers the current time", code="NO_ACTIVE_SHIFT")
    return found


def _resolve_checkpoint(db: Session, latitude: float, longitude: float, now: datetime, checkpoint_id=None) -> Optional[Checkpoint]:
    if checkpoint_id is not None:
        cp = db.query(Checkpoint).filter(Checkpoint.id == parse_id(checkpoint_id, "checkpoint")).first()
        if cp is None or not cp.is_active:
            raise NotFoundError("Checkpoint not found or inactive", code="CHECKPOINT_NOT_FOUND")
        return cp
    rows = db.query(Checkpoint).filter(Checkpoint.is_active.is_(True)).order_by(Checkpoint.name).all()
    picked = select_checkpoint_for_check_in(latitude, longitude, [checkpoint_snapshot(r) for r in rows], now)
    if picked is None:
        return None
    by_id = {str(r.id): r for r in rows}
    return by_id[picked[0].id]


def _flush(db: Session, event: str, conflict: Optional[ConflictError] = None, **log_fields) -> None:
    """Flush pending rows; a (guard, date, shift) collision with another writer becomes a 409."""
    try:
        db.flush()
    except IntegrityError as e:
        db.rollback()
        logger.info(f"{event}_conflict", **log_fields)
        raise (conflict or _duplicate_attendance()) from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception(f"{event}_failed", error=str(e), **log_fields)
        raise DependencyFailure("Could not save attendance", code="STORE_FAILURE") from e


def _duplicate_attendance() -> ConflictError:
    return ConflictError("Attendance record already exists for this guard, shift and date", code="DUPLICATE_ATTENDANCE")


def _commit(db: Session, event: str, **log_fields) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise _duplicate_attendance() from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception(f"{event}_failed", error=str(e), **log_fields)
        raise DependencyFailure("Could not save attendance", code="STORE_FAILURE") from e


# -- guard operations --

def check_in(
    db: Session,
    guard: User,
    latitude: float,
    longitude: float,
    now: datetime,
    checkpoint_id=None,
    shift_id=None,
    cache: Optional[CheckpointCache] = None,
) -> dict:
    latitude, longitude = validate_coordinates(latitude, longitude)
    shift, window = resolve_shift(db, now, shift_id)
    shift_date = window.shift_date_for(now)

    checkpoint = _resolve_checkpoint(db, latitude, longitude, now, checkpoint_id)
    distance = None
    if checkpoint is not None:
        distance = validate_check_in_location(latitude, longitude, checkpoint_snapshot(checkpoint))

    row = (
        db.query(Attendance)
        .filter(Attendance.guard_id == guard.id, Attendance.date == shift_date, Attendance.shift_id == shift.id)
        .first()
    )
    if row is None:
        row = Attendance(guard_id=guard.id, shift_id=shift.id, date=shift_date, status=STATUS_ABSENT)
        db.add(row)
        current = AttendanceSnapshot(guard_id=str(guard.id), shift_id=str(shift.id), date=shift_date)
    else:
        current = snapshot_from_row(row)

    updated = on_check_in(
        current, window, shift_date, now, latitude, longitude,
        checkpoint_id=str(checkpoint.id) if checkpoint is not None else None,
    )
    _enforce_invariants(updated)
    apply_snapshot(row, updated)
    row.updated_at = now

    _flush(
        db, "check_in",
        conflict=ConflictError("Already checked in for this shift", code="ALREADY_CHECKED_IN"),
        guard_id=str(guard.id),
    )

    if checkpoint is not None:
        db.add(PatrolLog(
            guard_id=guard.id,
            checkpoint_id=checkpoint.id,
            attendance_id=row.id,
            timestamp=ensure_utc(now),
            latitude=latitude,
            longitude=longitude,
            distance_from_checkpoint=round(distance) if distance is not None else None,
        ))
        checkpoint.last_patrolled = ensure_utc(now)

    create_audit_log(
        db,
        entity_type="attendance",
        entity_id=row.id,
        action="CHECK_IN",
        actor_id=guard.id,
        actor_role=guard.role,
        changes_json={"status": {"before": current.status, "after": updated.status}},
        context={
            "shift_id": str(shift.id),
            "checkpoint_id": _str_or_none(checkpoint.id if checkpoint is not None else None),
            "gps_lat": latitude,
            "gps_lng": longitude,
            "distance_m": round(distance, 2) if distance is not None else None,
        },
    )
    _commit(db, "check_in", guard_id=str(guard.id))
    if checkpoint is not None and cache is not None:
        # last_patrolled changed
        cache.invalidate()

    is_late = window.is_late_check_in(now, shift_date)
    logger.info(
        "check_in",
        guard_id=str(guard.id),
        shift=shift.name,
        status=updated.status,
        late_minutes=updated.late_minutes,
        is_late=is_late,
    )
    return {
        "attendanceId": str(row.id),
        "checkInTime": to_iso(updated.check_in_time),
        "status": updated.status,
        "scheduledCheckIn": to_iso(updated.scheduled_check_in),
        "lateMinutes": updated.late_minutes,
        "isLate": is_late,
        "shift": window.to_dict(),
        "date": shift_date.isoformat(),
        "checkpoint": {
            "id": str(checkpoint.id),
            "name": checkpoint.name,
            "distance": round(distance) if distance is not None else None,
        } if checkpoint is not None else None,
    }


def _open_record(db: Session, guard_id) -> Optional[Attendance]:
    return (
        db.query(Attendance)
        .filter(
            Attendance.guard_id == guard_id,
            Attendance.check_in_time.isnot(None),
            Attendance.check_out_time.is_(None),
        )
        .order_by(Attendance.check_in_time.desc())
        .first()
    )


def check_out(db: Session, guard: User, latitude: float, longitude: float, now: datetime) -> dict:
    latitude, longitude = validate_coordinates(latitude, longitude)
    row = _open_record(db, guard.id)
    if row is None:
        raise ConflictError("No active check-in found", code="NOT_CHECKED_IN")

    window = window_for(row.shift)
    current = snapshot_from_row(row)
    updated = on_check_out(current, window, row.date, now, latitude, longitude)
    _enforce_invariants(updated)
    apply_snapshot(row, updated)
    row.updated_at = now

    worked = updated.total_minutes
    overtime = overtime_minutes(worked, window)
    create_audit_log(
        db,
        entity_type="attendance",
        entity_id=row.id,
        action="CHECK_OUT",
        actor_id=guard.id,
        actor_role=guard.role,
        changes_json={"check_out_time": {"before": None, "after": to_iso(updated.check_out_time)}},
        context={"shift_id": str(row.shift_id), "gps_lat": latitude, "gps_lng": longitude},
    )
    _commit(db, "check_out", guard_id=str(guard.id))

    logger.info(
        "check_out",
        guard_id=str(guard.id),
        total_minutes=worked,
        early_checkout_minutes=updated.early_checkout_minutes,
        overtime_minutes=overtime,
    )
    return {
        "attendanceId": str(row.id),
        "checkOutTime": to_iso(updated.check_out_time),
        "scheduledCheckOut": to_iso(updated.scheduled_check_out),
        "earlyCheckoutMinutes": updated.early_checkout_minutes,
        "totalMinutes": worked,
        "totalHours": worked_hours(worked),
        "overtimeMinutes": overtime,
        "status": updated.status,
    }


def current_status(db: Session, guard: User, now: datetime) -> dict:
    row = _open_record(db, guard.id)
    if row is None:
        today = utc_to_local(now, settings.tz_default).date()
        row = (
            db.query(Attendance)
            .filter(Attendance.guard_id == guard.id, Attendance.date == today)
            .order_by(Attendance.created_at.desc())
            .first()
        )
        if row is None:
            return {"status": NOT_CHECKED_IN, "date": today.isoformat(), "attendance": None}
    body = serialize_attendance(row)
    if row.check_in_time is not None and row.check_out_time is None:
        body["minutesOnDuty"] = max(0, minutes_between(ensure_utc(row.check_in_time), ensure_utc(now)))
    return {"status": row.status, "date": row.date.isoformat(), "attendance": body}


def history(
    db: Session,
    guard_id,
    page: int = 1,
    limit: int = 30,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> dict:
    limit = min(max(1, limit), 100)
    page = max(1, page)
    offset = (page - 1) * limit

    query = db.query(Attendance).filter(Attendance.guard_id == guard_id)
    if start_date:
        query = query.filter(Attendance.date >= start_date)
    if end_date:
        query = query.filter(Attendance.date <= end_date)

    total_count = query.count()
    rows = (
        query.order_by(Attendance.date.desc(), Attendance.check_in_time.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return {
        "items": [serialize_attendance(r) for r in rows],
        "total": total_count,
        "page": page,
        "limit": limit,
        "total_pages": (total_count + limit - 1) // limit if limit > 0 else 0,
    }


# -- admin operations --

def _mark(db: Session, row: Attendance, actor: User, status: str, reason: Optional[str], now: datetime) -> Attendance:
    before = snapshot_from_row(row)
    if status == STATUS_OFF:
        updated = mark_off(before, modified_by=str(actor.id), note=reason)
    else:
        updated = mark_absent(before, modified_by=str(actor.id))
    _enforce_invariants(updated)
    apply_snapshot(row, updated)
    row.updated_at = now
    _flush(db, "mark_attendance", guard_id=str(row.guard_id))
    create_audit_log(
        db,
        entity_type="attendance",
        entity_id=row.id,
        action="MARK_OFF" if status == STATUS_OFF else "MARK_ABSENT",
        actor_id=actor.id,
        actor_role=actor.role,
        changes_json={"status": {"before": before.status, "after": updated.status}},
        context={"reason": reason, "shift_id": str(row.shift_id)},
    )
    return row


def mark_record(db: Session, attendance_id, actor: User, status: str, now: datetime, reason: Optional[str] = None) -> dict:
    """Force an existing record to Absent or Off; repeating the call is a no-op."""
    row = db.query(Attendance).filter(Attendance.id == parse_id(attendance_id, "attendance")).first()
    if row is None:
        raise NotFoundError("Attendance record not found", code="ATTENDANCE_NOT_FOUND")
    _mark(db, row, actor, status, reason, now)
    _commit(db, "mark_attendance", attendance_id=str(row.id))
    logger.info("attendance_marked", attendance_id=str(row.id), status=status, actor_id=str(actor.id))
    return serialize_attendance(row)


def _require_guard(db: Session, guard_id) -> User:
    guard = db.query(User).filter(User.id == parse_id(guard_id, "guard")).first()
    if guard is None:
        raise NotFoundError("Guard not found", code="GUARD_NOT_FOUND")
    if guard.role != ROLE_GUARD:
        raise ValidationError("User is not a guard", code="NOT_A_GUARD")
    return guard


def mark_guard_off(db: Session, guard_id, actor: User, now: datetime, shift_id=None, reason: Optional[str] = None) -> dict:
    """Mark a guard off-duty for the current (or given) shift, creating the record when missing."""
    guard = _require_guard(db, guard_id)
    shift, window = resolve_shift(db, now, shift_id)
    shift_date = window.shift_date_for(now)

    row = (
        db.query(Attendance)
        .filter(Attendance.guard_id == guard.id, Attendance.date == shift_date, Attendance.shift_id == shift.id)
        .first()
    )
    if row is None:
        row = Attendance(guard_id=guard.id, shift_id=shift.id, date=shift_date, status=STATUS_ABSENT)
        db.add(row)
    _mark(db, row, actor, STATUS_OFF, reason or "Marked off by admin", now)
    _commit(db, "mark_off", guard_id=str(guard.id))
    logger.info("guard_marked_off", guard_id=str(guard.id), shift=shift.name, date=shift_date.isoformat())
    return {
        "attendanceId": str(row.id),
        "guardId": str(guard.id),
        "status": STATUS_OFF,
        "date": shift_date.isoformat(),
        "shift": shift.name,
        "reason": reason,
    }


def auto_mark_absent(db: Session, actor: User, now: datetime) -> dict:
    """Create Absent records for active guards with no record for the current shift."""
    shift, window = resolve_shift(db, now)
    shift_date = window.shift_date_for(now)

    recorded = {
        gid for (gid,) in db.query(Attendance.guard_id)
        .filter(Attendance.shift_id == shift.id, Attendance.date == shift_date)
        .all()
    }
    guards = (
        db.query(User)
        .filter(User.role == ROLE_GUARD, User.is_active.is_(True))
        .order_by(User.username)
        .all()
    )

    absent = []
    for guard in guards:
        if guard.id in recorded:
            continue
        row = Attendance(
            guard_id=guard.id,
            shift_id=shift.id,
            date=shift_date,
            status=STATUS_ABSENT,
            modified_by=actor.id,
            updated_at=now,
        )
        db.add(row)
        _flush(db, "auto_mark_absent", guard_id=str(guard.id))
        create_audit_log(
            db,
            entity_type="attendance",
            entity_id=row.id,
            action="MARK_ABSENT",
            actor_id=actor.id,
            actor_role=actor.role,
            context={"shift_id": str(shift.id), "reason": "auto"},
        )
        absent.append({
            "attendanceId": str(row.id),
            "guard": {"id": str(guard.id), "name": guard.name, "badgeNumber": guard.badge_number},
        })
    _commit(db, "auto_mark_absent", shift_id=str(shift.id))

    logger.info("auto_mark_absent", shift=shift.name, date=shift_date.isoformat(), absent_count=len(absent))
    return {
        "absentCount": len(absent),
        "shift": shift.name,
        "date": shift_date.isoformat(),
        "markedAt": to_iso(now),
        "absentGuards": absent,
    }


def active_guards(db: Session, now: datetime) -> List[dict]:
    rows = (
        db.query(Attendance)
        .filter(Attendance.check_in_time.isnot(None), Attendance.check_out_time.is_(None))
        .order_by(Attendance.check_in_time.asc())
        .all()
    )
    out = []
    for row in rows:
        minutes = max(0, minutes_between(ensure_utc(row.check_in_time), ensure_utc(now)))
        out.append({
            "attendanceId": str(row.id),
            "guard": {
                "id": str(row.guard.id),
                "name": row.guard.name,
                "email": row.guard.email,
                "badgeNumber": row.guard.badge_number,
            },
            "shift": row.shift.name,
            "checkInTime": to_iso(row.check_in_time),
            "hoursOnDuty": worked_hours(minutes),
            "status": row.status,
        })
    return out


def _empty_totals() -> dict:
    return {"present": 0, "late": 0, "absent": 0, "off": 0, "total": 0}


_STATUS_KEYS = {STATUS_PRESENT: "present", STATUS_LATE: "late", STATUS_ABSENT: "absent", STATUS_OFF: "off"}


def daily_report(db: Session, report_date: date) -> dict:
    """Status totals per shift for the given shift date."""
    rows = (
        db.query(Attendance)
        .join(Shift, Shift.id == Attendance.shift_id)
        .filter(Attendance.date == report_date)
        .order_by(Shift.start_time, Attendance.check_in_time)
        .all()
    )
    shifts = {}
    totals = _empty_totals()
    for row in rows:
        bucket = shifts.setdefault(row.shift.name, {**_empty_totals(), "guards": []})
        key = _STATUS_KEYS.get(row.status)
        if key:
            bucket[key] += 1
            totals[key] += 1
        bucket["total"] += 1
        totals["total"] += 1
        bucket["guards"].append({
            "id": str(row.guard_id),
            "name": row.guard.name if row.guard else None,
            "badgeNumber": row.guard.badge_number if row.guard else None,
            "status": row.status,
            "checkInTime": to_iso(row.check_in_time),
            "checkOutTime": to_iso(row.check_out_time),
            "totalHours": worked_hours(row.total_minutes) if row.total_minutes is not None else 0,
        })
    return {"date": report_date.isoformat(), "shifts": shifts, "totals": totals}


def shift_stats(db: Session, shift: Shift, start_date: Optional[date] = None, end_date: Optional[date] = None) -> dict:
    query = db.query(Attendance).filter(Attendance.shift_id == shift.id)
    if start_date:
        query = query.filter(Attendance.date >= start_date)
    if end_date:
        query = query.filter(Attendance.date <= end_date)
    rows = query.all()

    totals = _empty_totals()
    late_total = 0
    worked = [r.total_minutes for r in rows if r.total_minutes is not None]
    for row in rows:
        key = _STATUS_KEYS.get(row.status)
        if key:
            totals[key] += 1
        totals["total"] += 1
        late_total += row.late_minutes or 0
    attended = totals["present"] + totals["late"]
    return {
        "shiftId": str(shift.id),
        "shift": shift.name,
        "startDate": start_date.isoformat() if start_date else None,
        "endDate": end_date.isoformat() if end_date else None,
        "totals": totals,
        "attendanceRate": round(attended / totals["total"] * 100, 2) if totals["total"] else 0.0,
        "averageLateMinutes": round(late_total / totals["late"], 2) if totals["late"] else 0.0,
        "averageWorkedHours": worked_hours(sum(worked) // len(worked)) if worked else 0.0,
    }
