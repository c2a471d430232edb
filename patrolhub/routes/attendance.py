from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models.models import User, ROLE_ADMIN, ROLE_GUARD
from ..auth.security import require_roles
from ..schemas.attendance import CheckInRequest, CheckOutRequest, MarkOffRequest, MarkRequest
from ..services import attendance as svc
from ..services.attendance_status import STATUS_ABSENT, STATUS_OFF
from ..services.cache import CheckpointCache, get_checkpoint_cache
from ..services.time_rules import utc_now, utc_to_local


router = APIRouter(prefix="/attendance", tags=["attendance"])


# Guard endpoints

@router.post("/check-in")
def check_in(
    body: CheckInRequest,
    db: Session = Depends(get_db),
    cache: CheckpointCache = Depends(get_checkpoint_cache),
    now: datetime = Depends(utc_now),
    guard: User = Depends(require_roles(ROLE_GUARD)),
):
    return svc.check_in(
        db, guard, body.latitude, body.longitude, now,
        checkpoint_id=body.checkpoint_id, shift_id=body.shift_id, cache=cache,
    )


@router.post("/check-out")
def check_out(
    body: CheckOutRequest,
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    guard: User = Depends(require_roles(ROLE_GUARD)),
):
    return svc.check_out(db, guard, body.latitude, body.longitude, now)


@router.get("/status")
def my_status(
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    guard: User = Depends(require_roles(ROLE_GUARD)),
):
    return svc.current_status(db, guard, now)


@router.get("/history")
def my_history(
    page: int = 1,
    limit: int = 30,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    guard: User = Depends(require_roles(ROLE_GUARD)),
):
    return svc.history(db, guard.id, page=page, limit=limit, start_date=start_date, end_date=end_date)


# Admin endpoints

@router.get("/active-guards")
def active_guards(
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    _=Depends(require_roles(ROLE_ADMIN)),
):
    guards = svc.active_guards(db, now)
    return {"items": guards, "count": len(guards)}


@router.get("/daily-report")
def daily_report(
    report_date: Optional[date] = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    _=Depends(require_roles(ROLE_ADMIN)),
):
    if report_date is None:
        report_date = utc_to_local(now, settings.tz_default).date()
    return svc.daily_report(db, report_date)


@router.post("/auto-mark-absent")
def auto_mark_absent(
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    admin: User = Depends(require_roles(ROLE_ADMIN)),
):
    return svc.auto_mark_absent(db, admin, now)


@router.post("/mark-off")
def mark_guard_off(
    body: MarkOffRequest,
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    admin: User = Depends(require_roles(ROLE_ADMIN)),
):
    return svc.mark_guard_off(db, body.guard_id, admin, now, shift_id=body.shift_id, reason=body.reason)


@router.get("/guards/{guard_id}/history")
def guard_history(
    guard_id: str,
    page: int = 1,
    limit: int = 30,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    _=Depends(require_roles(ROLE_ADMIN)),
):
    return svc.history(
        db, svc.parse_id(guard_id, "guard"), page=page, limit=limit, start_date=start_date, end_date=end_date,
    )


@router.post("/{attendance_id}/mark-absent")
def mark_absent(
    attendance_id: str,
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    admin: User = Depends(require_roles(ROLE_ADMIN)),
):
    return svc.mark_record(db, attendance_id, admin, STATUS_ABSENT, now)


@router.post("/{attendance_id}/mark-off")
def mark_off(
    attendance_id: str,
    body: Optional[MarkRequest] = Body(default=None),
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    admin: User = Depends(require_roles(ROLE_ADMIN)),
):
    return svc.mark_record(db, attendance_id, admin, STATUS_OFF, now, reason=body.reason if body else None)
