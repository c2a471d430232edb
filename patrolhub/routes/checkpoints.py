from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import get_db
from ..config import settings
from ..models.models import Checkpoint, User, ROLE_ADMIN, ROLE_GUARD
from ..auth.security import get_current_user, require_roles
from ..schemas.checkpoints import BulkAssignRequest, BulkUnassignRequest, CheckpointCreate, CheckpointUpdate
from ..services.attendance import parse_id
from ..services.audit import compute_diff, create_audit_log
from ..services.cache import CheckpointCache, get_checkpoint_cache
from ..services.checkpoint_assignment import (
    AssignmentRequest,
    bulk_assign,
    bulk_unassign,
    checkpoint_snapshot,
)
from ..services.errors import ConflictError, DependencyFailure, NotFoundError, ValidationError
from ..services.geofence import haversine_distance
from ..services.time_rules import to_iso, utc_now
from ..logging import structlog


router = APIRouter(prefix="/checkpoints", tags=["checkpoints"])
logger = structlog.get_logger(__name__)

ACTIVE_LIST_KEY = "checkpoints:active"

_EDITABLE = (
    "name", "location", "description", "latitude", "longitude", "is_active", "priority",
    "checkpoint_type", "geofence_radius", "is_geofence_enabled", "max_assigned_guards", "patrol_frequency",
)


def _checkpoint_to_dict(cp: Checkpoint, assigned_count: Optional[int] = None, now: Optional[datetime] = None) -> dict:
    body = {
        "id": str(cp.id),
        "name": cp.name,
        "location": cp.location,
        "description": cp.description,
        "latitude": cp.latitude,
        "longitude": cp.longitude,
        "is_active": cp.is_active,
        "priority": cp.priority,
        "checkpoint_type": cp.checkpoint_type,
        "geofence_radius": cp.geofence_radius,
        "is_geofence_enabled": cp.is_geofence_enabled,
        "max_assigned_guards": cp.max_assigned_guards,
        "patrol_frequency": cp.patrol_frequency,
        "last_patrolled": to_iso(cp.last_patrolled),
        "created_at": to_iso(cp.created_at),
    }
    if assigned_count is not None:
        body["assigned_guards"] = assigned_count
        body["can_assign_more"] = assigned_count < (cp.max_assigned_guards or 1)
    if now is not None:
        body["is_overdue"] = checkpoint_snapshot(cp).is_overdue(now)
    return body


def _state(cp: Checkpoint) -> dict:
    return {k: getattr(cp, k) for k in _EDITABLE}


def _assigned_counts(db: Session) -> dict:
    rows = (
        db.query(User.assigned_checkpoint_id, func.count(User.id))
        .filter(User.assigned_checkpoint_id.isnot(None), User.role == ROLE_GUARD, User.is_active.is_(True))
        .group_by(User.assigned_checkpoint_id)
        .all()
    )
    return {cp_id: count for cp_id, count in rows}


def _get_checkpoint(db: Session, checkpoint_id: str) -> Checkpoint:
    cp = db.query(Checkpoint).filter(Checkpoint.id == parse_id(checkpoint_id, "checkpoint")).first()
    if not cp:
        raise NotFoundError("Checkpoint not found", code="CHECKPOINT_NOT_FOUND")
    return cp


def _ensure_unique_name(db: Session, name: str, exclude_id=None) -> None:
    q = db.query(Checkpoint).filter(Checkpoint.name == name)
    if exclude_id is not None:
        q = q.filter(Checkpoint.id != exclude_id)
    if q.first():
        raise ConflictError(f"Checkpoint '{name}' already exists", code="DUPLICATE_CHECKPOINT_NAME")


def _commit(db: Session, cache: CheckpointCache, event: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception(f"{event}_failed", error=str(e))
        raise DependencyFailure("Could not save checkpoint", code="STORE_FAILURE") from e
    cache.invalidate()


@router.get("")
def list_checkpoints(
    db: Session = Depends(get_db),
    cache: CheckpointCache = Depends(get_checkpoint_cache),
    _=Depends(get_current_user),
):
    """Active checkpoints with assignment counts; served from the TTL cache."""
    def _load():
        counts = _assigned_counts(db)
        rows = db.query(Checkpoint).filter(Checkpoint.is_active.is_(True)).order_by(Checkpoint.name).all()
        return [_checkpoint_to_dict(cp, counts.get(cp.id, 0)) for cp in rows]

    return cache.get_or_set(ACTIVE_LIST_KEY, _load)


@router.get("/nearby")
def nearby_checkpoints(
    latitude: float = Query(ge=-90, le=90),
    longitude: float = Query(ge=-180, le=180),
    radius: int = Query(default=1000, ge=1, le=50000),
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    _=Depends(get_current_user),
):
    rows = (
        db.query(Checkpoint)
        .filter(Checkpoint.is_active.is_(True), Checkpoint.latitude.isnot(None), Checkpoint.longitude.isnot(None))
        .all()
    )
    out = []
    for cp in rows:
        distance = haversine_distance(latitude, longitude, cp.latitude, cp.longitude)
        if distance <= radius:
            body = _checkpoint_to_dict(cp, now=now)
            body["distance"] = round(distance)
            body["within_geofence"] = distance <= (cp.geofence_radius or settings.geofence_radius_m_default)
            out.append(body)
    out.sort(key=lambda b: b["distance"])
    return out


@router.get("/assigned")
def my_assigned_checkpoint(
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    user: User = Depends(require_roles(ROLE_GUARD)),
):
    if not user.assigned_checkpoint_id:
        return {"checkpoint": None}
    cp = db.query(Checkpoint).filter(Checkpoint.id == user.assigned_checkpoint_id).first()
    return {"checkpoint": _checkpoint_to_dict(cp, now=now) if cp else None}


@router.post("/bulk-assign")
def bulk_assign_guards(
    body: BulkAssignRequest,
    db: Session = Depends(get_db),
    cache: CheckpointCache = Depends(get_checkpoint_cache),
    admin: User = Depends(require_roles(ROLE_ADMIN)),
):
    items = [AssignmentRequest(checkpoint_id=a.checkpoint_id, guard_id=a.guard_id) for a in body.assignments]
    return bulk_assign(db, items, admin, cache).to_dict()


@router.post("/bulk-unassign")
def bulk_unassign_guards(
    body: BulkUnassignRequest,
    db: Session = Depends(get_db),
    cache: CheckpointCache = Depends(get_checkpoint_cache),
    admin: User = Depends(require_roles(ROLE_ADMIN)),
):
    return bulk_unassign(db, body.guard_ids, admin, cache).to_dict()


@router.get("/{checkpoint_id}")
def get_checkpoint(
    checkpoint_id: str,
    db: Session = Depends(get_db),
    now: datetime = Depends(utc_now),
    _=Depends(get_current_user),
):
    cp = _get_checkpoint(db, checkpoint_id)
    body = _checkpoint_to_dict(cp, _assigned_counts(db).get(cp.id, 0), now=now)
    body["guards"] = [
        {"id": str(g.id), "name": g.name, "badge_number": g.badge_number}
        for g in cp.assigned_guards
        if g.is_active
    ]
    return body


@router.post("", status_code=201)
def create_checkpoint(
    body: CheckpointCreate,
    db: Session = Depends(get_db),
    cache: CheckpointCache = Depends(get_checkpoint_cache),
    now: datetime = Depends(utc_now),
    admin: User = Depends(require_roles(ROLE_ADMIN)),
):
    _ensure_unique_name(db, body.name)
    values = body.model_dump(exclude_none=True)
    values.setdefault("geofence_radius", settings.geofence_radius_m_default)
    for k in ("priority", "checkpoint_type"):
        if k in values:
            values[k] = values[k].value
    cp = Checkpoint(**values, created_by=admin.id, created_at=now)
    db.add(cp)
    db.flush()
    create_audit_log(db, "checkpoint", cp.id, "CREATE", actor_id=admin.id, actor_role=admin.role, changes_json=_state(cp))
    _commit(db, cache, "create_checkpoint")
    logger.info("checkpoint_created", checkpoint_id=str(cp.id), name=cp.name)
    return _checkpoint_to_dict(cp, 0)


@router.patch("/{checkpoint_id}")
def update_checkpoint(
    checkpoint_id: str,
    body: CheckpointUpdate,
    db: Session = Depends(get_db),
    cache: CheckpointCache = Depends(get_checkpoint_cache),
    now: datetime = Depends(utc_now),
    admin: User = Depends(require_roles(ROLE_ADMIN)),
):
    cp = _get_checkpoint(db, checkpoint_id)
    before = _state(cp)
    changes = body.model_dump(exclude_unset=True)
    for k in ("priority", "checkpoint_type"):
        if changes.get(k) is not None:
            changes[k] = changes[k].value

    lat = changes.get("latitude", cp.latitude)
    lng = changes.get("longitude", cp.longitude)
    if (lat is None) != (lng is None):
        raise ValidationError("latitude and longitude must be provided together", code="INVALID_COORDINATE")
    if changes.get("name") and changes["name"] != cp.name:
        _ensure_unique_name(db, changes["name"], exclude_id=cp.id)
    if "max_assigned_guards" in changes and changes["max_assigned_guards"] is not None:
        assigned = _assigned_counts(db).get(cp.id, 0)
        if changes["max_assigned_guards"] < assigned:
            raise ConflictError(
                f"Checkpoint already has {assigned} assigned guards",
                code="CAPACITY_BELOW_ASSIGNED",
                details={"assigned": assigned},
            )

    for k, v in changes.items():
        # Nullable fields only: description and the coordinate pair
        if v is None and k not in ("description", "latitude", "longitude"):
            continue
        setattr(cp, k, v)
    cp.updated_at = now

    diff = compute_diff(before, _state(cp))
    if diff:
        create_audit_log(db, "checkpoint", cp.id, "UPDATE", actor_id=admin.id, actor_role=admin.role, changes_json=diff)
    _commit(db, cache, "update_checkpoint")
    return _checkpoint_to_dict(cp, _assigned_counts(db).get(cp.id, 0), now=now)


@router.post("/{checkpoint_id}/toggle")
def toggle_checkpoint(
    checkpoint_id: str,
    db: Session = Depends(get_db),
    cache: CheckpointCache = Depends(get_checkpoint_cache),
    now: datetime = Depends(utc_now),
    admin: User = Depends(require_roles(ROLE_ADMIN)),
):
    cp = _get_checkpoint(db, checkpoint_id)
    cp.is_active = not cp.is_active
    cp.updated_at = now
    create_audit_log(
        db, "checkpoint", cp.id, "UPDATE", actor_id=admin.id, actor_role=admin.role,
        changes_json={"is_active": {"before": not cp.is_active, "after": cp.is_active}},
    )
    _commit(db, cache, "toggle_checkpoint")
    return _checkpoint_to_dict(cp)
