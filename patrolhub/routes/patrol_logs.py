from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import User, ROLE_ADMIN
from ..auth.security import ensure_self_or_admin, get_current_user, require_roles
from ..services import patrol_reports as svc
from ..services.attendance import parse_id
from ..services.time_rules import utc_now


router = APIRouter(prefix="/patrol-logs", tags=["patrol-logs"])


@router.get("")
def list_patrol_logs(
    guard_id: Optional[str] = None,
    checkpoint_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 1,
    limit: int = 20,
    db: Session = Depends(get_db),
    _=Depends(require_roles(ROLE_ADMIN)),
):
    """
    List checkpoint visits, newest first

    Args:
        guard_id: Only visits by this guard
        checkpoint_id: Only visits to this checkpoint
        start_date / end_date: Local calendar days, inclusive
        page: Page number (1-indexed)
        limit: Number of items per page (default 20, max 100)
    """
    return svc.list_patrol_logs(
        db, guard_id=guard_id, checkpoint_id=checkpoint_id,
        start_date=start_date, end_date=end_date, page=page, limit=limit,
    )


@router.get("/stats")
def patrol_stats(
    guard_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    _=Depends(require_roles(ROLE_ADMIN)),
):
    return svc.patrol_stats(db, now, guard_id=guard_id, start_date=start_date, end_date=end_date)


@router.get("/overdue")
def overdue_checkpoints(
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    _=Depends(require_roles(ROLE_ADMIN)),
):
    items = svc.overdue_checkpoints(db, now)
    return {"items": items, "count": len(items), "checkedAt": now.isoformat()}


@router.get("/guard/{guard_id}")
def guard_patrol_logs(
    guard_id: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 1,
    limit: int = 20,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    ensure_self_or_admin(user, parse_id(guard_id, "guard"))
    return svc.list_patrol_logs(db, guard_id=guard_id, start_date=start_date, end_date=end_date, page=page, limit=limit)


@router.get("/checkpoint/{checkpoint_id}")
def checkpoint_patrol_logs(
    checkpoint_id: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 1,
    limit: int = 20,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    return svc.list_patrol_logs(
        db, checkpoint_id=checkpoint_id, start_date=start_date, end_date=end_date, page=page, limit=limit,
    )


@router.get("/{log_id}")
def get_patrol_log(log_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    log = svc.get_patrol_log(db, log_id)
    ensure_self_or_admin(user, log.guard_id)
    return svc.serialize_patrol_log(log)
