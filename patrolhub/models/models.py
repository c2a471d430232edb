import uuid
from datetime import datetime, date as date_type, time
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Time,
    Boolean,
    ForeignKey,
    Integer,
    Float,
    JSON,
    UniqueConstraint,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


ROLE_ADMIN = "admin"
ROLE_GUARD = "guard"


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    badge_number: Mapped[Optional[str]] = mapped_column(String(50), unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=ROLE_GUARD, index=True)  # admin|guard
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Standing assignment; at most one checkpoint per guard
    assigned_checkpoint_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("checkpoints.id", ondelete="SET NULL"), index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    assigned_checkpoint = relationship("Checkpoint", foreign_keys=[assigned_checkpoint_id], back_populates="assigned_guards")


class Checkpoint(Base):
    """Patrol checkpoint with optional geofence"""
    __tablename__ = "checkpoints"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    location: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    priority: Mapped[str] = mapped_column(String(20), default="medium")  # low|medium|high|critical
    checkpoint_type: Mapped[str] = mapped_column(String(20), default="perimeter")  # entrance|exit|perimeter|internal|emergency
    geofence_radius: Mapped[int] = mapped_column(Integer, default=100)  # meters
    is_geofence_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    max_assigned_guards: Mapped[int] = mapped_column(Integer, default=1)
    patrol_frequency: Mapped[int] = mapped_column(Integer, default=60)  # minutes
    last_patrolled: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL", use_alter=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    assigned_guards = relationship(
        "User", foreign_keys="User.assigned_checkpoint_id", back_populates="assigned_checkpoint"
    )

    __table_args__ = (
        Index('idx_checkpoints_lat_lng', 'latitude', 'longitude'),
    )


class Shift(Base):
    """Named shift window (e.g. Day Shift 06:00-18:00), may cross midnight"""
    __tablename__ = "shifts"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    start_time: Mapped[time] = mapped_column(Time(timezone=False), nullable=False)  # Local time
    end_time: Mapped[time] = mapped_column(Time(timezone=False), nullable=False)  # Local time
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    break_duration: Mapped[int] = mapped_column(Integer, default=30, nullable=False)  # minutes
    grace_period: Mapped[int] = mapped_column(Integer, default=15, nullable=False)  # minutes
    overtime_threshold: Mapped[int] = mapped_column(Integer, default=480, nullable=False)  # minutes
    color_code: Mapped[Optional[str]] = mapped_column(String(7))
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_shifts_time_range', 'start_time', 'end_time'),
    )


class Attendance(Base):
    """One attendance record per guard, shift and shift date"""
    __tablename__ = "attendance"

    id: Mapped[uuid.UUID] = uuid_pk()
    guard_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    shift_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("shifts.id", ondelete="RESTRICT"), nullable=False, index=True)
    date: Mapped[date_type] = mapped_column(Date, nullable=False, index=True)  # Local date the shift started on
    check_in_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    check_out_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="Absent")  # Present|Late|Absent|Off
    checkpoint_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("checkpoints.id", ondelete="SET NULL"), index=True)
    check_in_lat: Mapped[Optional[float]] = mapped_column(Float)
    check_in_lng: Mapped[Optional[float]] = mapped_column(Float)
    check_out_lat: Mapped[Optional[float]] = mapped_column(Float)
    check_out_lng: Mapped[Optional[float]] = mapped_column(Float)
    scheduled_check_in: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    scheduled_check_out: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    late_minutes: Mapped[int] = mapped_column(Integer, default=0)
    early_checkout_minutes: Mapped[int] = mapped_column(Integer, default=0)
    total_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    modified_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    guard = relationship("User", foreign_keys=[guard_id])
    shift = relationship("Shift")
    checkpoint = relationship("Checkpoint")

    __table_args__ = (
        UniqueConstraint('guard_id', 'date', 'shift_id', name='uq_attendance_guard_date_shift'),
        Index('idx_attendance_guard_status', 'guard_id', 'status'),
    )


class PatrolLog(Base):
    """Checkpoint visit recorded when a guard checks in at a checkpoint"""
    __tablename__ = "patrol_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    guard_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    checkpoint_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("checkpoints.id", ondelete="CASCADE"), nullable=False, index=True)
    attendance_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("attendance.id", ondelete="CASCADE"), index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    distance_from_checkpoint: Mapped[Optional[int]] = mapped_column(Integer)  # meters, rounded

    guard = relationship("User")
    checkpoint = relationship("Checkpoint")

    __table_args__ = (
        Index('idx_patrol_logs_checkpoint_ts', 'checkpoint_id', 'timestamp'),
    )


class AuditLog(Base):
    """Append-only audit log for attendance, shift and assignment actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # shift|attendance|checkpoint|user
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|UPDATE|DELETE|CHECK_IN|CHECK_OUT|MARK_ABSENT|MARK_OFF|ASSIGN|UNASSIGN
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))  # admin|guard|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)  # {shift_id, checkpoint_id, gps_lat, gps_lng, distance_m, reason}
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_actor', 'actor_id', 'timestamp_utc'),
    )
