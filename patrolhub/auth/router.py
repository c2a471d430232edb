import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import User
from ..schemas.auth import LoginRequest, RefreshRequest, TokenResponse, MeResponse
from .security import (
    verify_password,
    create_access_token,
    create_refresh_token,
    decode_token,
    get_current_user,
)
from ..logging import structlog


router = APIRouter(prefix="/auth", tags=["auth"])
logger = structlog.get_logger(__name__)


@router.post("/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    q = db.query(User).filter(
        (User.username == req.identifier)
        | (User.email == req.identifier)
        | (User.badge_number == req.identifier)
    )
    user = q.first()
    if not user or not user.is_active or not verify_password(req.password, user.password_hash):
        logger.info("login_failed", identifier=req.identifier)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    access = create_access_token(str(user.id), roles=[user.role])
    refresh = create_refresh_token(str(user.id))
    user.last_login_at = datetime.now(timezone.utc)
    db.commit()
    return TokenResponse(access_token=access, refresh_token=refresh)


@router.post("/refresh", response_model=TokenResponse)
def refresh(req: RefreshRequest, db: Session = Depends(get_db)):
    # Refresh tokens are not persisted or rotated server side
    payload = decode_token(req.refresh_token)
    if payload.get("type") != "refresh":
        raise HTTPException(status_code=400, detail="Invalid refresh token")
    user = db.query(User).filter(User.id == _subject(payload)).first()
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="User not active")
    access = create_access_token(str(user.id), roles=[user.role])
    refresh_token = create_refresh_token(str(user.id))
    return TokenResponse(access_token=access, refresh_token=refresh_token)


@router.get("/me", response_model=MeResponse)
def me(user: User = Depends(get_current_user)):
    return MeResponse(
        id=str(user.id),
        username=user.username,
        email=user.email,
        name=user.name,
        badge_number=user.badge_number,
        role=user.role,
        assigned_checkpoint_id=str(user.assigned_checkpoint_id) if user.assigned_checkpoint_id else None,
    )


def _subject(payload: dict):
    try:
        return uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid subject")
