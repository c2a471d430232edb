"""
Bulk guard <-> checkpoint assignment.

Each item is validated on its own and a failing item never blocks the others;
every successful item of a batch is committed in one transaction. Capacity is
counted cumulatively, so assignments applied earlier in the same batch count
against a checkpoint's max_assigned_guards.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Sequence

import structlog
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import Checkpoint, User, ROLE_GUARD
from .audit import create_audit_log
from .cache import CheckpointCache
from .errors import PatrolError, ValidationError, ConflictError, NotFoundError, DependencyFailure
from .geofence import CheckpointSnapshot

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GuardSnapshot:
    id: str
    role: str = ROLE_GUARD
    is_active: bool = True
    assigned_checkpoint_id: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class AssignmentRequest:
    checkpoint_id: str
    guard_id: str


@dataclass
class BulkResult:
    successful: List[dict] = field(default_factory=list)
    failed: List[dict] = field(default_factory=list)

    def summary(self) -> dict:
        return {
            "total": len(self.successful) + len(self.failed),
            "successful": len(self.successful),
            "failed": len(self.failed),
        }

    def to_dict(self) -> dict:
        return {"successful": self.successful, "failed": self.failed, "summary": self.summary()}


def normalize_id(raw) -> str:
    """Canonical string form of a UUID; unparseable ids are returned as given."""
    try:
        return str(uuid.UUID(str(raw)))
    except (ValueError, TypeError, AttributeError):
        return str(raw)


def _failure(index: int, error: PatrolError, **ids) -> dict:
    return {"index": index, **ids, "reason": error.message, "code": error.code, "error": error.kind}


def _validate_assignment(
    item: AssignmentRequest,
    checkpoints: Mapping[str, CheckpointSnapshot],
    guards: Mapping[str, GuardSnapshot],
    guard_assignment: Mapping[str, Optional[str]],
    counts: Mapping[str, int],
) -> None:
    checkpoint = checkpoints.get(item.checkpoint_id)
    if checkpoint is None:
        raise NotFoundError("Checkpoint not found", code="CHECKPOINT_NOT_FOUND")
    if not checkpoint.is_active:
        raise NotFoundError("Checkpoint is inactive", code="CHECKPOINT_INACTIVE")

    guard = guards.get(item.guard_id)
    if guard is None:
        raise NotFoundError("Guard not found", code="GUARD_NOT_FOUND")
    if guard.role != ROLE_GUARD:
        raise ValidationError("User is not a guard", code="NOT_A_GUARD")
    if not guard.is_active:
        raise NotFoundError("Guard is inactive", code="GUARD_INACTIVE")
    if guard_assignment.get(item.guard_id):
        raise ConflictError("Guard is already assigned to a checkpoint", code="GUARD_ALREADY_ASSIGNED")

    if counts.get(item.checkpoint_id, 0) >= checkpoint.max_assigned_guards:
        raise ConflictError(
            f"Checkpoint has reached maximum guard capacity ({checkpoint.max_assigned_guards})",
            code="CHECKPOINT_AT_CAPACITY",
        )


def plan_bulk_assign(
    assignments: Sequence[AssignmentRequest],
    checkpoints: Mapping[str, CheckpointSnapshot],
    guards: Mapping[str, GuardSnapshot],
    assigned_counts: Mapping[str, int],
) -> BulkResult:
    """Decide every item of a batch against the snapshot plus earlier items."""
    result = BulkResult()
    counts: Dict[str, int] = dict(assigned_counts)
    guard_assignment = {gid: g.assigned_checkpoint_id for gid, g in guards.items()}

    for index, item in enumerate(assignments):
        ids = {"checkpointId": item.checkpoint_id, "guardId": item.guard_id}
        try:
            _validate_assignment(item, checkpoints, guards, guard_assignment, counts)
        except PatrolError as e:
            result.failed.append(_failure(index, e, **ids))
            continue
        counts[item.checkpoint_id] = counts.get(item.checkpoint_id, 0) + 1
        guard_assignment[item.guard_id] = item.checkpoint_id
        result.successful.append({
            "index": index,
            **ids,
            "checkpointName": checkpoints[item.checkpoint_id].name,
            "guardName": guards[item.guard_id].name,
        })
    return result


def plan_bulk_unassign(guard_ids: Sequence[str], guards: Mapping[str, GuardSnapshot]) -> BulkResult:
    result = BulkResult()
    guard_assignment = {gid: g.assigned_checkpoint_id for gid, g in guards.items()}

    for index, guard_id in enumerate(guard_ids):
        try:
            guard = guards.get(guard_id)
            if guard is None:
                raise NotFoundError("Guard not found", code="GUARD_NOT_FOUND")
            if guard.role != ROLE_GUARD:
                raise ValidationError("User is not a guard", code="NOT_A_GUARD")
            if not guard_assignment.get(guard_id):
                raise ConflictError("Guard is not assigned to any checkpoint", code="GUARD_NOT_ASSIGNED")
        except PatrolError as e:
            result.failed.append(_failure(index, e, guardId=guard_id))
            continue
        result.successful.append({
            "index": index,
            "guardId": guard_id,
            "previousCheckpointId": guard_assignment[guard_id],
            "guardName": guard.name,
        })
        guard_assignment[guard_id] = None
    return result


# -- persistence --

def checkpoint_snapshot(cp: Checkpoint) -> CheckpointSnapshot:
    return CheckpointSnapshot(
        id=str(cp.id),
        name=cp.name,
        latitude=cp.latitude,
        longitude=cp.longitude,
        is_active=bool(cp.is_active),
        geofence_radius=cp.geofence_radius or 100,
        is_geofence_enabled=bool(cp.is_geofence_enabled),
        max_assigned_guards=cp.max_assigned_guards or 1,
        patrol_frequency=cp.patrol_frequency or 60,
        last_patrolled=cp.last_patrolled,
    )


def guard_snapshot(user: User) -> GuardSnapshot:
    return GuardSnapshot(
        id=str(user.id),
        role=user.role,
        is_active=bool(user.is_active),
        assigned_checkpoint_id=str(user.assigned_checkpoint_id) if user.assigned_checkpoint_id else None,
        name=user.name or user.username,
    )


def _uuids(values) -> List[uuid.UUID]:
    out = []
    for v in values:
        try:
            out.append(uuid.UUID(v))
        except ValueError:
            continue
    return out


def _lock_guards(db: Session, guard_ids) -> Dict[str, User]:
    ids = _uuids(guard_ids)
    if not ids:
        return {}
    rows = (
        db.query(User)
        .filter(User.id.in_(ids))
        .order_by(User.id)
        .with_for_update()
        .all()
    )
    return {str(u.id): u for u in rows}


def bulk_assign(
    db: Session,
    assignments: Sequence[AssignmentRequest],
    actor: User,
    cache: Optional[CheckpointCache] = None,
) -> BulkResult:
    """
    Validate and apply a batch of assignments in one transaction.

    Checkpoint and guard rows are locked (SELECT ... FOR UPDATE) before
    capacity is counted, so concurrent batches cannot both fill the same
    slot.

    Raises:
        DependencyFailure: the store failed; nothing from the batch persisted
    """
    items = [AssignmentRequest(normalize_id(a.checkpoint_id), normalize_id(a.guard_id)) for a in assignments]
    checkpoint_ids = {a.checkpoint_id for a in items}
    guard_ids = {a.guard_id for a in items}

    try:
        cp_uuids = _uuids(checkpoint_ids)
        cp_rows = {}
        if cp_uuids:
            cp_rows = {
                str(cp.id): cp
                for cp in db.query(Checkpoint)
                .filter(Checkpoint.id.in_(cp_uuids))
                .order_by(Checkpoint.id)
                .with_for_update()
                .all()
            }
        guard_rows = _lock_guards(db, guard_ids)

        counts = {}
        if cp_uuids:
            rows = (
                db.query(User.assigned_checkpoint_id, func.count(User.id))
                .filter(
                    User.assigned_checkpoint_id.in_(cp_uuids),
                    User.role == ROLE_GUARD,
                    User.is_active.is_(True),
                )
                .group_by(User.assigned_checkpoint_id)
                .all()
            )
            counts = {str(cp_id): count for cp_id, count in rows}

        result = plan_bulk_assign(
            items,
            {k: checkpoint_snapshot(v) for k, v in cp_rows.items()},
            {k: guard_snapshot(v) for k, v in guard_rows.items()},
            counts,
        )

        now = datetime.now(timezone.utc)
        for entry in result.successful:
            guard = guard_rows[entry["guardId"]]
            checkpoint = cp_rows[entry["checkpointId"]]
            guard.assigned_checkpoint_id = checkpoint.id
            checkpoint.updated_at = now
            create_audit_log(
                db,
                entity_type="user",
                entity_id=guard.id,
                action="ASSIGN",
                actor_id=actor.id,
                actor_role=actor.role,
                changes_json={"assigned_checkpoint_id": {"before": None, "after": str(checkpoint.id)}},
                context={"checkpoint_id": str(checkpoint.id), "batch_index": entry["index"]},
            )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("bulk_assign_failed", error=str(e), items=len(items))
        raise DependencyFailure("Bulk assignment failed; no assignments were saved", code="BULK_ASSIGN_FAILED") from e

    if result.successful and cache is not None:
        cache.invalidate()
    logger.info("bulk_assign", actor_id=str(actor.id), **result.summary())
    return result


def bulk_unassign(
    db: Session,
    guard_ids: Sequence[str],
    actor: User,
    cache: Optional[CheckpointCache] = None,
) -> BulkResult:
    """Clear standing assignments for a batch of guards in one transaction."""
    ids = [normalize_id(g) for g in guard_ids]

    try:
        guard_rows = _lock_guards(db, set(ids))
        result = plan_bulk_unassign(ids, {k: guard_snapshot(v) for k, v in guard_rows.items()})

        for entry in result.successful:
            guard = guard_rows[entry["guardId"]]
            guard.assigned_checkpoint_id = None
            create_audit_log(
                db,
                entity_type="user",
                entity_id=guard.id,
                action="UNASSIGN",
                actor_id=actor.id,
                actor_role=actor.role,
                changes_json={"assigned_checkpoint_id": {"before": entry["previousCheckpointId"], "after": None}},
                context={"batch_index": entry["index"]},
            )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("bulk_unassign_failed", error=str(e), items=len(ids))
        raise DependencyFailure("Bulk unassignment failed; no changes were saved", code="BULK_UNASSIGN_FAILED") from e

    if result.successful and cache is not None:
        cache.invalidate()
    logger.info("bulk_unassign", actor_id=str(actor.id), **result.summary())
    return result
