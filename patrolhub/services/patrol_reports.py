"""
Patrol log queries and visit-coverage reports.

Every PatrolLog row is one checkpoint visit. A checkpoint is expected to be
visited once per patrol_frequency minutes of the reporting period, which is
either one local calendar day or one scheduled shift on that day.
"""
import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Checkpoint, PatrolLog, Shift, User, ROLE_GUARD
from .attendance import parse_id, window_for
from .checkpoint_assignment import checkpoint_snapshot
from .errors import NotFoundError, ValidationError
from .time_rules import ensure_utc, local_day_bounds, minutes_between, to_iso

logger = structlog.get_logger(__name__)

RECENT_ACTIVITY_DAYS = 7
MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class ReportPeriod:
    day: date
    start: datetime  # UTC, inclusive
    end: datetime  # UTC, exclusive
    minutes: int
    shift: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "date": self.day.isoformat(),
            "shift": self.shift or "all",
            "from": to_iso(self.start),
            "to": to_iso(self.end),
        }


def report_period(db: Session, day: date, shift_id=None) -> ReportPeriod:
    if shift_id is None:
        start, end = local_day_bounds(day, settings.tz_default)
        return ReportPeriod(day=day, start=start, end=end, minutes=MINUTES_PER_DAY)
    shift = db.query(Shift).filter(Shift.id == parse_id(shift_id, "shift")).first()
    if shift is None:
        raise NotFoundError("Shift not found", code="SHIFT_NOT_FOUND")
    window = window_for(shift)
    return ReportPeriod(
        day=day,
        start=ensure_utc(window.scheduled_check_in(day)),
        end=ensure_utc(window.scheduled_check_out(day)),
        minutes=window.duration_minutes(),
        shift=shift.name,
    )


def expected_visits(checkpoint: Checkpoint, period_minutes: int) -> int:
    return period_minutes // (checkpoint.patrol_frequency or 60)


def completion_rate(completed: int, expected: int) -> int:
    """Percentage rounded half up; 0 when nothing was expected."""
    if expected <= 0:
        return 0
    return math.floor(completed * 100 / expected + 0.5)


def _coverage(name_fields: dict, expected: int, completed: int) -> dict:
    return {
        **name_fields,
        "expected": expected,
        "completed": completed,
        "missed": max(expected - completed, 0),
        "completionRate": completion_rate(completed, expected),
    }


# -- log listings --

def serialize_patrol_log(log: PatrolLog) -> dict:
    return {
        "id": str(log.id),
        "timestamp": to_iso(log.timestamp),
        "guard": {
            "id": str(log.guard_id),
            "name": log.guard.name if log.guard else None,
            "badgeNumber": log.guard.badge_number if log.guard else None,
        },
        "checkpoint": {
            "id": str(log.checkpoint_id),
            "name": log.checkpoint.name if log.checkpoint else None,
            "location": log.checkpoint.location if log.checkpoint else None,
        },
        "attendanceId": str(log.attendance_id) if log.attendance_id else None,
        "latitude": log.latitude,
        "longitude": log.longitude,
        "distanceFromCheckpoint": log.distance_from_checkpoint,
    }


def _filtered_logs(db: Session, guard_id=None, checkpoint_id=None, start_date: Optional[date] = None, end_date: Optional[date] = None):
    if start_date and end_date and start_date > end_date:
        raise ValidationError("start_date must not be after end_date", code="INVALID_DATE_RANGE")
    query = db.query(PatrolLog)
    if guard_id is not None:
        query = query.filter(PatrolLog.guard_id == parse_id(guard_id, "guard"))
    if checkpoint_id is not None:
        query = query.filter(PatrolLog.checkpoint_id == parse_id(checkpoint_id, "checkpoint"))
    if start_date:
        query = query.filter(PatrolLog.timestamp >= local_day_bounds(start_date, settings.tz_default)[0])
    if end_date:
        query = query.filter(PatrolLog.timestamp < local_day_bounds(end_date, settings.tz_default)[1])
    return query


def list_patrol_logs(
    db: Session,
    guard_id=None,
    checkpoint_id=None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    limit = min(max(1, limit), 100)
    page = max(1, page)
    offset = (page - 1) * limit

    query = _filtered_logs(db, guard_id, checkpoint_id, start_date, end_date)
    total_count = query.count()
    rows = query.order_by(PatrolLog.timestamp.desc()).offset(offset).limit(limit).all()
    return {
        "items": [serialize_patrol_log(r) for r in rows],
        "total": total_count,
        "page": page,
        "limit": limit,
        "total_pages": (total_count + limit - 1) // limit if limit > 0 else 0,
    }


def get_patrol_log(db: Session, log_id) -> PatrolLog:
    log = db.query(PatrolLog).filter(PatrolLog.id == parse_id(log_id, "patrol_log")).first()
    if log is None:
        raise NotFoundError("Patrol log not found", code="PATROL_LOG_NOT_FOUND")
    return log


def patrol_stats(
    db: Session,
    now: datetime,
    guard_id=None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> dict:
    query = _filtered_logs(db, guard_id=guard_id, start_date=start_date, end_date=end_date)
    total = query.count()
    unique_guards = query.with_entities(func.count(func.distinct(PatrolLog.guard_id))).scalar() or 0
    unique_checkpoints = query.with_entities(func.count(func.distinct(PatrolLog.checkpoint_id))).scalar() or 0
    avg_distance = query.with_entities(func.avg(PatrolLog.distance_from_checkpoint)).scalar()
    recent = query.filter(PatrolLog.timestamp >= ensure_utc(now) - timedelta(days=RECENT_ACTIVITY_DAYS)).count()
    return {
        "totalLogs": total,
        "uniqueGuards": unique_guards,
        "uniqueCheckpoints": unique_checkpoints,
        "recentActivityCount": recent,
        "averageDistanceMeters": round(float(avg_distance)) if avg_distance is not None else None,
        "period": {
            "startDate": start_date.isoformat() if start_date else "All time",
            "endDate": end_date.isoformat() if end_date else "Present",
        },
    }


def overdue_checkpoints(db: Session, now: datetime) -> List[dict]:
    """Active checkpoints not visited within their patrol frequency, never-visited first."""
    out = []
    for cp in db.query(Checkpoint).filter(Checkpoint.is_active.is_(True)).order_by(Checkpoint.name).all():
        if not checkpoint_snapshot(cp).is_overdue(now):
            continue
        minutes_since = (
            minutes_between(ensure_utc(cp.last_patrolled), ensure_utc(now)) if cp.last_patrolled else None
        )
        out.append({
            "checkpointId": str(cp.id),
            "checkpointName": cp.name,
            "location": cp.location,
            "priority": cp.priority,
            "patrolFrequency": cp.patrol_frequency,
            "lastPatrolled": to_iso(cp.last_patrolled),
            "minutesSinceLastPatrol": minutes_since,
            "minutesOverdue": minutes_since - cp.patrol_frequency if minutes_since is not None else None,
        })
    out.sort(key=lambda item: (item["minutesOverdue"] is not None, -(item["minutesOverdue"] or 0)))
    return out


# -- coverage reports --

def _visit_counts(db: Session, period: ReportPeriod, column, **filters) -> Dict[uuid.UUID, int]:
    query = (
        db.query(column, func.count(PatrolLog.id))
        .filter(PatrolLog.timestamp >= period.start, PatrolLog.timestamp < period.end)
    )
    for name, value in filters.items():
        query = query.filter(getattr(PatrolLog, name) == value)
    return dict(query.group_by(column).all())


def _active_checkpoints(db: Session) -> List[Checkpoint]:
    return db.query(Checkpoint).filter(Checkpoint.is_active.is_(True)).order_by(Checkpoint.name).all()


def _active_guards(db: Session) -> List[User]:
    return (
        db.query(User)
        .filter(User.role == ROLE_GUARD, User.is_active.is_(True))
        .order_by(User.name, User.username)
        .all()
    )


def _checkpoint_fields(cp: Checkpoint) -> dict:
    return {"checkpointId": str(cp.id), "checkpointName": cp.name, "location": cp.location}


def _total_expected(checkpoints: Iterable[Checkpoint], period: ReportPeriod) -> int:
    return sum(expected_visits(cp, period.minutes) for cp in checkpoints)


def checkpoint_report(db: Session, period: ReportPeriod) -> dict:
    counts = _visit_counts(db, period, PatrolLog.checkpoint_id)
    rows = [
        _coverage(_checkpoint_fields(cp), expected_visits(cp, period.minutes), counts.get(cp.id, 0))
        for cp in _active_checkpoints(db)
    ]
    return {**period.to_dict(), "totalCheckpoints": len(rows), "items": rows}


def guard_report(db: Session, period: ReportPeriod) -> dict:
    """Each guard is measured against every active checkpoint's expected visits."""
    expected = _total_expected(_active_checkpoints(db), period)
    counts = _visit_counts(db, period, PatrolLog.guard_id)
    rows = [
        _coverage(
            {"guardId": str(g.id), "guardName": g.name, "badgeNumber": g.badge_number},
            expected,
            counts.get(g.id, 0),
        )
        for g in _active_guards(db)
    ]
    return {**period.to_dict(), "totalGuards": len(rows), "items": rows}


def summary_report(db: Session, period: ReportPeriod) -> dict:
    checkpoints = _active_checkpoints(db)
    expected = _total_expected(checkpoints, period)
    completed = sum(_visit_counts(db, period, PatrolLog.checkpoint_id).values())
    return {
        **period.to_dict(),
        "summary": {
            "totalCheckpoints": len(checkpoints),
            "totalGuards": len(_active_guards(db)),
            "totalExpected": expected,
            "totalCompleted": completed,
            "totalMissed": max(expected - completed, 0),
            "completionRate": completion_rate(completed, expected),
        },
    }


def _last_visit_before(db: Session, checkpoint_id: uuid.UUID, before: datetime) -> Optional[datetime]:
    return (
        db.query(func.max(PatrolLog.timestamp))
        .filter(PatrolLog.checkpoint_id == checkpoint_id, PatrolLog.timestamp < before)
        .scalar()
    )


def missed_visits_report(db: Session, period: ReportPeriod) -> dict:
    counts = _visit_counts(db, period, PatrolLog.checkpoint_id)
    missed = []
    for cp in _active_checkpoints(db):
        expected = expected_visits(cp, period.minutes)
        completed = counts.get(cp.id, 0)
        if completed >= expected:
            continue
        row = _coverage(_checkpoint_fields(cp), expected, completed)
        row["lastVisit"] = to_iso(_last_visit_before(db, cp.id, period.start))
        missed.append(row)
    logger.info("missed_visits_report", date=period.day.isoformat(), shift=period.shift, missed=len(missed))
    return {**period.to_dict(), "totalMissedCheckpoints": len(missed), "items": missed}


def guard_detail_report(db: Session, guard_id, period: ReportPeriod) -> dict:
    guard = db.query(User).filter(User.id == parse_id(guard_id, "guard")).first()
    if guard is None or guard.role != ROLE_GUARD:
        raise NotFoundError("Guard not found", code="GUARD_NOT_FOUND")

    visits = (
        db.query(PatrolLog)
        .filter(
            PatrolLog.guard_id == guard.id,
            PatrolLog.timestamp >= period.start,
            PatrolLog.timestamp < period.end,
        )
        .order_by(PatrolLog.timestamp.asc())
        .all()
    )
    by_checkpoint: Dict[uuid.UUID, list] = {}
    for v in visits:
        by_checkpoint.setdefault(v.checkpoint_id, []).append(
            {"timestamp": to_iso(v.timestamp), "distanceFromCheckpoint": v.distance_from_checkpoint}
        )

    rows = []
    totals = {"expected": 0, "completed": 0, "missed": 0}
    for cp in _active_checkpoints(db):
        cp_visits = by_checkpoint.get(cp.id, [])
        row = _coverage(_checkpoint_fields(cp), expected_visits(cp, period.minutes), len(cp_visits))
        row["visits"] = cp_visits
        rows.append(row)
        for key in totals:
            totals[key] += row[key]
    totals["completionRate"] = completion_rate(totals["completed"], totals["expected"])
    return {
        **period.to_dict(),
        "guardId": str(guard.id),
        "guardName": guard.name,
        "badgeNumber": guard.badge_number,
        "totals": totals,
        "checkpoints": rows,
    }
