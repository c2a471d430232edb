from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import User, ROLE_ADMIN
from ..auth.security import get_password_hash, require_roles
from ..schemas.auth import UserCreate
from ..services.audit import create_audit_log
from ..services.errors import ConflictError, DependencyFailure
from ..services.time_rules import to_iso
from ..logging import structlog


router = APIRouter(prefix="/users", tags=["users"])
logger = structlog.get_logger(__name__)


def _user_to_dict(u: User) -> dict:
    return {
        "id": str(u.id),
        "username": u.username,
        "email": u.email,
        "name": u.name,
        "badge_number": u.badge_number,
        "role": u.role,
        "is_active": u.is_active,
        "assigned_checkpoint_id": str(u.assigned_checkpoint_id) if u.assigned_checkpoint_id else None,
        "last_login_at": to_iso(u.last_login_at),
    }


@router.get("")
def list_users(
    role: Optional[str] = None,
    q: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db),
    _=Depends(require_roles(ROLE_ADMIN)),
):
    """
    List users with pagination

    Args:
        role: admin or guard
        q: Search query (username, email, name or badge number)
        page: Page number (1-indexed)
        limit: Number of items per page (default 50, max 200)
    """
    limit = min(max(1, limit), 200)
    page = max(1, page)
    offset = (page - 1) * limit

    query = db.query(User)
    if role:
        query = query.filter(User.role == role)
    if q:
        like = f"%{q}%"
        query = query.filter(
            (User.username.ilike(like))
            | (User.email.ilike(like))
            | (User.name.ilike(like))
            | (User.badge_number.ilike(like))
        )

    total_count = query.count()
    rows = query.order_by(User.created_at.desc()).offset(offset).limit(limit).all()

    return {
        "items": [_user_to_dict(u) for u in rows],
        "total": total_count,
        "page": page,
        "limit": limit,
        "total_pages": (total_count + limit - 1) // limit if limit > 0 else 0,
    }


@router.post("", status_code=201)
def create_user(
    body: UserCreate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_roles(ROLE_ADMIN)),
):
    taken = (User.username == body.username) | (User.email == body.email)
    if body.badge_number:
        taken = taken | (User.badge_number == body.badge_number)
    if db.query(User).filter(taken).first():
        raise ConflictError("Username, email or badge number already in use", code="DUPLICATE_USER")

    u = User(
        username=body.username,
        email=body.email,
        name=body.name,
        badge_number=body.badge_number,
        role=body.role,
        password_hash=get_password_hash(body.password),
        is_active=True,
    )
    db.add(u)
    try:
        db.flush()
        create_audit_log(
            db, "user", u.id, "CREATE", actor_id=admin.id, actor_role=admin.role,
            changes_json={"username": u.username, "role": u.role},
        )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError("Username, email or badge number already in use", code="DUPLICATE_USER") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("create_user_failed", error=str(e))
        raise DependencyFailure("Could not save user", code="STORE_FAILURE") from e
    logger.info("user_created", user_id=str(u.id), role=u.role)
    return _user_to_dict(u)
