from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models.models import User, ROLE_ADMIN
from ..auth.security import ensure_self_or_admin, get_current_user, require_roles
from ..services import patrol_reports as svc
from ..services.attendance import parse_id
from ..services.time_rules import utc_now, utc_to_local


router = APIRouter(prefix="/reports", tags=["reports"])


def report_period(
    report_date: Optional[date] = Query(default=None, alias="date"),
    shift_id: Optional[str] = None,
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
) -> svc.ReportPeriod:
    """?date=YYYY-MM-DD (default: today, local) and optional ?shift_id."""
    if report_date is None:
        report_date = utc_to_local(now, settings.tz_default).date()
    return svc.report_period(db, report_date, shift_id)


@router.get("/checkpoints")
def checkpoint_report(
    _=Depends(require_roles(ROLE_ADMIN)),
    period: svc.ReportPeriod = Depends(report_period),
    db: Session = Depends(get_db),
):
    return svc.checkpoint_report(db, period)


@router.get("/guards")
def guard_report(
    _=Depends(require_roles(ROLE_ADMIN)),
    period: svc.ReportPeriod = Depends(report_period),
    db: Session = Depends(get_db),
):
    return svc.guard_report(db, period)


@router.get("/summary")
def summary_report(
    _=Depends(require_roles(ROLE_ADMIN)),
    period: svc.ReportPeriod = Depends(report_period),
    db: Session = Depends(get_db),
):
    return svc.summary_report(db, period)


@router.get("/missed")
def missed_visits_report(
    _=Depends(require_roles(ROLE_ADMIN)),
    period: svc.ReportPeriod = Depends(report_period),
    db: Session = Depends(get_db),
):
    return svc.missed_visits_report(db, period)


@router.get("/guards/{guard_id}")
def guard_detail_report(
    guard_id: str,
    user: User = Depends(get_current_user),
    period: svc.ReportPeriod = Depends(report_period),
    db: Session = Depends(get_db),
):
    ensure_self_or_admin(user, parse_id(guard_id, "guard"))
    return svc.guard_detail_report(db, guard_id, period)
