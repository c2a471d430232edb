"""
Audit logging service.
Append-only audit log with integrity hashing. Entries are added to the
caller's session and commit together with the change they describe.
"""
import hashlib
import json
import uuid
from datetime import datetime
from typing import Optional, Dict
from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id,
    action: str,
    actor_id=None,
    actor_role: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None
) -> AuditLog:
    """
    Add an append-only audit log entry to the session (no commit).

    Args:
        db: Database session
        entity_type: Type of entity (shift|attendance|checkpoint|user)
        entity_id: Entity ID
        action: Action performed (CREATE|UPDATE|DELETE|CHECK_IN|CHECK_OUT|MARK_ABSENT|MARK_OFF|ASSIGN|UNASSIGN)
        actor_id: User ID who performed the action
        actor_role: Role of the actor (admin|guard|system)
        changes_json: Before/after diff
        context: Additional context (shift_id, checkpoint_id, GPS data, etc.)
        integrity_secret: Secret for integrity hash (defaults to JWT_SECRET)

    Returns:
        Pending AuditLog object
    """
    timestamp_utc = datetime.utcnow().replace(tzinfo=None)

    integrity_hash = None
    if integrity_secret is None:
        integrity_secret = settings.jwt_secret

    if integrity_secret:
        canonical_data = {
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "action": action,
            "actor_id": str(actor_id) if actor_id else None,
            "actor_role": actor_role,
            "timestamp_utc": timestamp_utc.isoformat(),
            "changes": changes_json,
            "context": context,
        }

        # Remove None values and sort keys for consistency
        canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
        canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)

        hash_input = f"{canonical_json}:{integrity_secret}"
        integrity_hash = hashlib.sha256(hash_input.encode()).hexdigest()

    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=_as_uuid(entity_id),
        action=action,
        actor_id=_as_uuid(actor_id) if actor_id else None,
        actor_role=actor_role or "system",
        changes_json=_jsonable(changes_json),
        timestamp_utc=timestamp_utc,
        context=_jsonable(context),
        integrity_hash=integrity_hash,
    )

    db.add(audit_log)
    return audit_log


def _jsonable(value: Optional[Dict]) -> Optional[Dict]:
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def compute_diff(before: Dict, after: Dict) -> Dict:
    """
    Compute a diff between two dictionaries.

    Returns:
        Dict with before/after values for changed fields
    """
    diff = {}
    all_keys = set(before.keys()) | set(after.keys())

    for key in all_keys:
        before_val = before.get(key)
        after_val = after.get(key)

        if before_val != after_val:
            diff[key] = {
                "before": before_val,
                "after": after_val,
            }

    return diff


def _as_uuid(value) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))
