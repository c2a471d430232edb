from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import Attendance, PatrolLog, Shift, User, ROLE_ADMIN
from ..auth.security import get_current_user, require_roles
from ..schemas.shifts import ShiftCreate, ShiftUpdate
from ..services.attendance import current_shift, parse_id, shift_stats, window_for
from ..services.audit import compute_diff, create_audit_log
from ..services.errors import ConflictError, DependencyFailure, NotFoundError
from ..services.shift_window import DEFAULT_SHIFTS, ShiftWindow, parse_time_of_day
from ..services.time_rules import to_iso, utc_now
from ..logging import structlog


router = APIRouter(prefix="/shifts", tags=["shifts"])
logger = structlog.get_logger(__name__)

_EDITABLE = (
    "name", "start_time", "end_time", "is_active", "break_duration",
    "grace_period", "overtime_threshold", "color_code", "description",
)


def _shift_to_dict(s: Shift) -> dict:
    body = window_for(s).to_dict()
    body.update({
        "color_code": s.color_code,
        "description": s.description,
        "created_at": to_iso(s.created_at),
        "updated_at": to_iso(s.updated_at),
    })
    return body


def _shift_state(s: Shift) -> dict:
    return {
        k: (getattr(s, k).isoformat() if k in ("start_time", "end_time") else getattr(s, k))
        for k in _EDITABLE
    }


def _validate_window(values: dict) -> ShiftWindow:
    """Raises ValidationError for bad times, zero-length windows and out-of-range minutes."""
    return ShiftWindow(
        name=values["name"],
        start_time=values["start_time"],
        end_time=values["end_time"],
        break_duration_minutes=values["break_duration"],
        grace_period_minutes=values["grace_period"],
        overtime_threshold_minutes=values["overtime_threshold"],
    )


def _get_shift(db: Session, shift_id: str) -> Shift:
    s = db.query(Shift).filter(Shift.id == parse_id(shift_id, "shift")).first()
    if not s:
        raise NotFoundError("Shift not found", code="SHIFT_NOT_FOUND")
    return s


def _ensure_unique_name(db: Session, name: str, exclude_id=None) -> None:
    q = db.query(Shift).filter(Shift.name == name)
    if exclude_id is not None:
        q = q.filter(Shift.id != exclude_id)
    if q.first():
        raise ConflictError(f"Shift '{name}' already exists", code="DUPLICATE_SHIFT_NAME")


def _commit(db: Session, event: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception(f"{event}_failed", error=str(e))
        raise DependencyFailure("Could not save shift", code="STORE_FAILURE") from e


@router.get("")
def list_shifts(
    active: Optional[bool] = None,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    q = db.query(Shift)
    if active is not None:
        q = q.filter(Shift.is_active.is_(active))
    return [_shift_to_dict(s) for s in q.order_by(Shift.start_time).all()]


@router.get("/current")
def get_current_shift(
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    _=Depends(get_current_user),
):
    found = current_shift(db, now)
    if found is None:
        raise NotFoundError("No active shift covers the current time", code="NO_ACTIVE_SHIFT")
    shift, window = found
    body = _shift_to_dict(shift)
    body["shiftDate"] = window.shift_date_for(now).isoformat()
    return body


@router.post("/setup-defaults")
def setup_default_shifts(
    db: Session = Depends(get_db),
    admin: User = Depends(require_roles(ROLE_ADMIN)),
):
    created, existing = [], []
    for default in DEFAULT_SHIFTS:
        s = db.query(Shift).filter(Shift.name == default["name"]).first()
        if s:
            existing.append(s)
            continue
        s = Shift(
            name=default["name"],
            start_time=parse_time_of_day(default["start_time"], "start_time"),
            end_time=parse_time_of_day(default["end_time"], "end_time"),
            color_code=default["color_code"],
            description=default["description"],
            is_active=True,
        )
        db.add(s)
        db.flush()
        create_audit_log(db, "shift", s.id, "CREATE", actor_id=admin.id, actor_role=admin.role, changes_json=_shift_state(s))
        created.append(s)
    _commit(db, "setup_default_shifts")
    logger.info("default_shifts_setup", created=len(created), existing=len(existing))
    return {
        "created": [_shift_to_dict(s) for s in created],
        "existing": [_shift_to_dict(s) for s in existing],
    }


@router.get("/{shift_id}")
def get_shift(shift_id: str, db: Session = Depends(get_db), _=Depends(get_current_user)):
    return _shift_to_dict(_get_shift(db, shift_id))


@router.get("/{shift_id}/stats")
def get_shift_stats(
    shift_id: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    _=Depends(require_roles(ROLE_ADMIN)),
):
    return shift_stats(db, _get_shift(db, shift_id), start_date, end_date)


@router.post("", status_code=201)
def create_shift(
    body: ShiftCreate,
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    admin: User = Depends(require_roles(ROLE_ADMIN)),
):
    values = body.model_dump()
    values["break_duration"] = 30 if body.break_duration is None else body.break_duration
    values["grace_period"] = 15 if body.grace_period is None else body.grace_period
    values["overtime_threshold"] = 480 if body.overtime_threshold is None else body.overtime_threshold
    window = _validate_window(values)
    _ensure_unique_name(db, body.name)

    s = Shift(
        name=body.name,
        start_time=window.start_time,
        end_time=window.end_time,
        is_active=body.is_active,
        break_duration=values["break_duration"],
        grace_period=values["grace_period"],
        overtime_threshold=values["overtime_threshold"],
        color_code=body.color_code,
        description=body.description,
        created_at=now,
    )
    db.add(s)
    db.flush()
    create_audit_log(db, "shift", s.id, "CREATE", actor_id=admin.id, actor_role=admin.role, changes_json=_shift_state(s))
    _commit(db, "create_shift")
    logger.info("shift_created", shift_id=str(s.id), name=s.name, crosses_midnight=window.crosses_midnight())
    return _shift_to_dict(s)


@router.patch("/{shift_id}")
def update_shift(
    shift_id: str,
    body: ShiftUpdate,
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    admin: User = Depends(require_roles(ROLE_ADMIN)),
):
    s = _get_shift(db, shift_id)
    before = _shift_state(s)
    values = dict(before)
    values.update(body.model_dump(exclude_unset=True, exclude_none=True))
    window = _validate_window(values)
    if values["name"] != s.name:
        _ensure_unique_name(db, values["name"], exclude_id=s.id)

    for k in _EDITABLE:
        setattr(s, k, values[k])
    s.start_time = window.start_time
    s.end_time = window.end_time
    s.updated_at = now

    diff = compute_diff(before, _shift_state(s))
    if diff:
        create_audit_log(db, "shift", s.id, "UPDATE", actor_id=admin.id, actor_role=admin.role, changes_json=diff)
    _commit(db, "update_shift")
    return _shift_to_dict(s)


@router.delete("/{shift_id}")
def delete_shift(
    shift_id: str,
    force: bool = False,
    db: Session = Depends(get_db),
    admin: User = Depends(require_roles(ROLE_ADMIN)),
):
    s = _get_shift(db, shift_id)
    attendance_q = db.query(Attendance).filter(Attendance.shift_id == s.id)
    attendance_count = attendance_q.count()
    if attendance_count and not force:
        raise ConflictError(
            f"Shift has {attendance_count} attendance records; pass force=true to delete them too",
            code="SHIFT_HAS_ATTENDANCE",
            details={"attendance_count": attendance_count},
        )

    if attendance_count:
        ids = [a.id for a in attendance_q.with_entities(Attendance.id).all()]
        db.query(PatrolLog).filter(PatrolLog.attendance_id.in_(ids)).delete(synchronize_session=False)
        attendance_q.delete(synchronize_session=False)
    create_audit_log(
        db, "shift", s.id, "DELETE", actor_id=admin.id, actor_role=admin.role,
        changes_json=_shift_state(s), context={"force": force, "attendance_deleted": attendance_count},
    )
    db.delete(s)
    _commit(db, "delete_shift")
    logger.info("shift_deleted", shift_id=shift_id, attendance_deleted=attendance_count)
    return {"deleted": True, "attendanceDeleted": attendance_count}
