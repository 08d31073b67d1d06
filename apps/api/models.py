from sqlalchemy import Column, Integer, Boolean, CheckConstraint, Date, DateTime, ForeignKey, Text, Index, UniqueConstraint, Uuid
from sqlalchemy.sql import func
from core.database import Base
import uuid


WORKOUT_STATUSES = ("planned", "completed", "skipped", "postponed")
SYNC_TYPES = ("manual", "scheduled")


class Profile(Base):
    __tablename__ = "profile"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    email = Column(Text, unique=True, nullable=True)
    display_name = Column(Text, nullable=True)
    avatar_url = Column(Text, nullable=True)
    timezone = Column(Text, nullable=True)  # IANA timezone (e.g. "America/New_York")

    # --- PELOTON LINK ---
    peloton_user_id = Column(Text, unique=True, nullable=True)
    peloton_username = Column(Text, nullable=True)
    current_ftp = Column(Integer, nullable=True)
    estimated_ftp = Column(Integer, nullable=True)


class PelotonToken(Base):
    """
    Encrypted Peloton credential (one row per user).

    Both token columns hold versioned ciphertext ("v1.<iv>.<ct>.<tag>");
    rows written before encryption was introduced may still hold plaintext.
    """
    __tablename__ = "peloton_token"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("profile.id", ondelete="CASCADE"), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=False, default="")
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)


class PlannedWorkout(Base):
    __tablename__ = "planned_workout"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("profile.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    peloton_class_id = Column(Text, nullable=True)  # 32-char hex ride id
    ride_title = Column(Text, nullable=False, default="")
    ride_image_url = Column(Text, nullable=True)
    instructor_name = Column(Text, nullable=True)
    duration_seconds = Column(Integer, nullable=False, default=0)
    discipline = Column(Text, nullable=False, default="cycling")
    scheduled_date = Column(Date, nullable=False)
    sort_order = Column(Integer, nullable=False, default=0)  # intra-day position, ascending
    status = Column(Text, nullable=False, default="planned")
    pushed_to_stack = Column(Boolean, nullable=False, default=False)
    pushed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('planned', 'completed', 'skipped', 'postponed')",
            name="ck_planned_workout_status",
        ),
        Index("ix_planned_workout_user_date", "user_id", "scheduled_date"),
        Index("ix_planned_workout_user_status", "user_id", "status"),
    )


class FtpRecord(Base):
    __tablename__ = "ftp_record"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("profile.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    workout_id = Column(Text, nullable=False)
    workout_date = Column(DateTime(timezone=True), nullable=False)
    ride_title = Column(Text, nullable=True)
    avg_output = Column(Integer, nullable=False)
    calculated_ftp = Column(Integer, nullable=False)
    baseline_ftp = Column(Integer, nullable=False, default=0)
    source = Column(Text, nullable=True)  # e.g. "ftp_workout_source", "ftp_manual_source"

    __table_args__ = (
        UniqueConstraint("user_id", "workout_id", name="uq_ftp_record_user_workout"),
        Index("ix_ftp_record_user_date", "user_id", "workout_date"),
    )


class StackSyncLog(Base):
    """Append-only audit row, one per synchronization attempt."""
    __tablename__ = "stack_sync_log"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("profile.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    sync_type = Column(Text, nullable=False)  # 'manual' | 'scheduled'
    workouts_pushed = Column(Integer, nullable=False, default=0)
    success = Column(Boolean, nullable=False)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("sync_type IN ('manual', 'scheduled')", name="ck_stack_sync_log_type"),
        Index("ix_stack_sync_log_user_created", "user_id", "created_at"),
    )
