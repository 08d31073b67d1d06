"""
Scheduled stack push (all users).

Runs once a day: for every user whose stored Peloton credential has not
expired, appends tomorrow's (UTC) unpushed planned workouts to their
stack, marks the added workouts as pushed, and writes one 'scheduled'
sync log row. Each user is processed in isolation; a failure for one
user becomes one log row and one error string, never an aborted batch.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from core.config import settings
from services import peloton_store
from services.peloton_client import PelotonAuthError, PelotonClient, PelotonError, is_valid_class_id
from services.peloton_session import PelotonNotConnectedError, TokenRefreshError, call_with_token_refresh
from services.stack_sync_lock import stack_sync_lock
from services.token_encryption import DecryptionError

logger = logging.getLogger(__name__)


@dataclass
class ScheduledPushSummary:
    target_date: date
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "message": f"Processed {self.processed} users",
            "processed": self.processed,
            "success": self.succeeded,
            "failed": self.failed,
            "errors": self.errors,
            "targetDate": self.target_date.isoformat(),
        }


@dataclass
class _UserPushOutcome:
    pushed_ids: List[UUID] = field(default_factory=list)
    failed_ids: List[UUID] = field(default_factory=list)


def _push_user_workouts(
    db: Session,
    user_id: UUID,
    workouts,
    deadline: float,
    outcome: _UserPushOutcome,
) -> _UserPushOutcome:
    """
    Append each workout's class to the stack in sort_order, recording into `outcome`.

    A per-class API failure is recorded and the loop continues. Auth errors
    propagate with `outcome` still holding the classes added so far;
    workouts already added before a refresh are not re-added on the
    retried call.
    """
    pending = list(workouts)

    def add_remaining(client: PelotonClient) -> _UserPushOutcome:
        while pending:
            workout = pending[0]
            if time.monotonic() >= deadline:
                logger.warning(f"Scheduled push deadline reached for user {user_id}")
                outcome.failed_ids.extend(w.id for w in pending)
                pending.clear()
                break
            try:
                client.add_class_to_stack(workout.peloton_class_id)
                outcome.pushed_ids.append(workout.id)
            except PelotonAuthError:
                raise
            except PelotonError as e:
                logger.warning(f"Failed to add class {workout.peloton_class_id} for user {user_id}: {e}")
                outcome.failed_ids.append(workout.id)
            pending.pop(0)
        return outcome

    return call_with_token_refresh(db, user_id, add_remaining)


def _process_user(
    db: Session,
    user_id: UUID,
    target_date: date,
    pushed_at: datetime,
    outcome: _UserPushOutcome,
) -> None:
    """
    Push one user's workouts and write their log row.

    Raises on any user-level failure; the caller turns that into a failed
    row and still marks whatever `outcome.pushed_ids` holds.
    """
    workouts = [
        w for w in peloton_store.get_planned_workouts(db, user_id, target_date, unpushed_only=True)
        if w.peloton_class_id
    ]
    invalid = [w for w in workouts if not is_valid_class_id(w.peloton_class_id)]
    workouts = [w for w in workouts if is_valid_class_id(w.peloton_class_id)]

    if not workouts and not invalid:
        peloton_store.append_sync_log(db, user_id, "scheduled", 0, True)
        db.commit()
        return

    deadline = time.monotonic() + settings.STACK_SYNC_LOCK_TTL_S
    if workouts:
        _push_user_workouts(db, user_id, workouts, deadline, outcome)
    failed_count = len(outcome.failed_ids) + len(invalid)

    peloton_store.mark_pushed(db, outcome.pushed_ids, pushed_at=pushed_at)
    peloton_store.append_sync_log(
        db,
        user_id,
        "scheduled",
        len(outcome.pushed_ids),
        failed_count == 0,
        f"Failed to push {failed_count} workout(s)" if failed_count else None,
    )
    db.commit()


def _user_error_message(user_id: UUID, error: Exception) -> str:
    if isinstance(error, TokenRefreshError) and not error.needs_reconnect:
        return f"Token refresh failed for user {user_id}: {error.result.error}"
    if isinstance(error, PelotonAuthError):
        return f"Auth error for user {user_id}"
    if isinstance(error, DecryptionError):
        return f"Credential error for user {user_id}: {error}"
    return f"Error for user {user_id}: {error}"


def _record_user_failure(
    db: Session,
    user_id: UUID,
    outcome: _UserPushOutcome,
    message: str,
    pushed_at: datetime,
) -> None:
    """
    Failed log row for one user; classes already on the stack stay marked pushed.

    Never raises, so one bad write cannot stop the batch.
    """
    try:
        peloton_store.mark_pushed(db, outcome.pushed_ids, pushed_at=pushed_at)
        peloton_store.append_sync_log(db, user_id, "scheduled", len(outcome.pushed_ids), False, message)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to record scheduled push failure for user {user_id}: {e}", exc_info=True)


def run_scheduled_stack_push(
    db: Session,
    target_date: Optional[date] = None,
    now: Optional[datetime] = None,
) -> ScheduledPushSummary:
    """
    Push tomorrow's (or `target_date`'s) workouts for every connected user.

    Args:
        db: session; committed once per user
        target_date: explicit day to push; defaults to tomorrow in UTC
        now: reference time for expiry filtering and the default date
    """
    now = now or datetime.now(timezone.utc)
    target_date = target_date or (now + timedelta(days=1)).date()
    summary = ScheduledPushSummary(target_date=target_date)

    user_ids = [t.user_id for t in peloton_store.list_unexpired_credentials(db, now)]
    logger.info(f"Scheduled stack push for {target_date}: {len(user_ids)} user(s)")

    for user_id in user_ids:
        summary.processed += 1
        outcome = _UserPushOutcome()
        try:
            with stack_sync_lock(user_id) as acquired:
                if not acquired:
                    raise RuntimeError("Stack sync already in progress")
                _process_user(db, user_id, target_date, now, outcome)
            summary.succeeded += 1
        except Exception as e:
            db.rollback()
            message = _user_error_message(user_id, e)
            expected = isinstance(e, (PelotonError, PelotonNotConnectedError, DecryptionError, RuntimeError))
            if expected:
                logger.warning(message)
            else:
                logger.error(message, exc_info=True)
            summary.failed += 1
            summary.errors.append(message)
            _record_user_failure(db, user_id, outcome, message, now)

    logger.info(
        f"Scheduled stack push done: processed={summary.processed} "
        f"succeeded={summary.succeeded} failed={summary.failed}"
    )
    return summary
