"""
Record store queries for the Peloton integration.

Simple keyed reads/writes over the relational store. Callers own the
transaction: functions here flush but do not commit, except where noted.
"""
import logging
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from models import FtpRecord, PelotonToken, PlannedWorkout, Profile, StackSyncLog

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_profile(db: Session, user_id: UUID) -> Optional[Profile]:
    return db.query(Profile).filter(Profile.id == user_id).first()


def get_credential(db: Session, user_id: UUID) -> Optional[PelotonToken]:
    return db.query(PelotonToken).filter(PelotonToken.user_id == user_id).first()


def save_credential(
    db: Session,
    user_id: UUID,
    access_token_encrypted: str,
    refresh_token_encrypted: str,
    expires_at: datetime,
) -> PelotonToken:
    """Insert or rotate a user's credential. All three fields change together."""
    token = get_credential(db, user_id)
    if token is None:
        token = PelotonToken(user_id=user_id)
        db.add(token)
    token.access_token_encrypted = access_token_encrypted
    token.refresh_token_encrypted = refresh_token_encrypted
    token.expires_at = expires_at
    db.flush()
    return token


def list_unexpired_credentials(db: Session, now: Optional[datetime] = None) -> List[PelotonToken]:
    now = now or _utcnow()
    return (
        db.query(PelotonToken)
        .filter(PelotonToken.expires_at > now)
        .order_by(PelotonToken.user_id)
        .all()
    )


def get_planned_workouts(
    db: Session,
    user_id: UUID,
    scheduled_date: date,
    unpushed_only: bool = False,
) -> List[PlannedWorkout]:
    """Planned (status='planned') workouts for one day, ordered by sort_order."""
    q = db.query(PlannedWorkout).filter(
        PlannedWorkout.user_id == user_id,
        PlannedWorkout.scheduled_date == scheduled_date,
        PlannedWorkout.status == "planned",
    )
    if unpushed_only:
        q = q.filter(PlannedWorkout.pushed_to_stack.is_(False))
    return q.order_by(PlannedWorkout.sort_order.asc(), PlannedWorkout.created_at.asc()).all()


def mark_pushed(db: Session, workout_ids: Iterable[UUID], pushed_at: Optional[datetime] = None) -> int:
    ids = list(workout_ids)
    if not ids:
        return 0
    pushed_at = pushed_at or _utcnow()
    updated = (
        db.query(PlannedWorkout)
        .filter(PlannedWorkout.id.in_(ids))
        .update(
            {PlannedWorkout.pushed_to_stack: True, PlannedWorkout.pushed_at: pushed_at},
            synchronize_session="fetch",
        )
    )
    db.flush()
    return updated


def append_sync_log(
    db: Session,
    user_id: UUID,
    sync_type: str,
    workouts_pushed: int,
    success: bool,
    error_message: Optional[str] = None,
) -> StackSyncLog:
    log = StackSyncLog(
        user_id=user_id,
        sync_type=sync_type,
        workouts_pushed=workouts_pushed,
        success=success,
        error_message=error_message,
    )
    db.add(log)
    db.flush()
    return log


def recent_sync_logs(db: Session, user_id: UUID, limit: int = 5) -> List[StackSyncLog]:
    return (
        db.query(StackSyncLog)
        .filter(StackSyncLog.user_id == user_id)
        .order_by(StackSyncLog.created_at.desc())
        .limit(limit)
        .all()
    )


def upsert_ftp_records(db: Session, user_id: UUID, results) -> int:
    """
    Store FTP test results that have a calculated FTP and a test date.

    Keyed on (user_id, workout_id); existing rows are updated in place.
    Returns the number of records written.
    """
    written = 0
    for result in results:
        if result.calculated_ftp is None or result.avg_output is None:
            continue
        if result.date is None:
            logger.warning(f"Skipping FTP record {result.workout_id} for user {user_id}: no test date")
            continue
        record = (
            db.query(FtpRecord)
            .filter(FtpRecord.user_id == user_id, FtpRecord.workout_id == result.workout_id)
            .first()
        )
        if record is None:
            record = FtpRecord(user_id=user_id, workout_id=result.workout_id)
            db.add(record)
        record.workout_date = result.date
        record.ride_title = result.ride_title
        record.avg_output = int(round(result.avg_output))
        record.calculated_ftp = result.calculated_ftp
        record.baseline_ftp = result.baseline_ftp or 0
        record.source = result.source
        written += 1
    db.flush()
    return written


def list_ftp_records(db: Session, user_id: UUID) -> List[FtpRecord]:
    return (
        db.query(FtpRecord)
        .filter(FtpRecord.user_id == user_id)
        .order_by(FtpRecord.workout_date.desc())
        .all()
    )


def update_profile_ftp(db: Session, profile: Profile, peloton_user: dict) -> None:
    profile.current_ftp = peloton_user.get("cycling_ftp") or None
    profile.estimated_ftp = peloton_user.get("estimated_cycling_ftp") or None
    db.flush()
