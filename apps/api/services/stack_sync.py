"""
Stack Synchronizer

Makes the user's remote Peloton stack match the day's planned workouts.
The local planner is the source of truth: the remote stack is always
cleared and rebuilt, so a class removed on the bike is pushed back on the
next sync.

Per attempt:
1. Collect planned workouts for the target day (user's timezone), by sort_order
2. None qualify -> clear the stack, success with 0/0
3. Keep the first MAX_STACK_SIZE class ids (truncation is a warning, not a failure)
4. Clear the stack (ModifyStack []); failure here aborts immediately
5. Add classes one by one (AddClassToStack), stopping at the first failure
6. Compare the reported count with the expected count (logged, flagged)
7. Non-auth failure in 4-6 -> exponential backoff, clear again, retry
8. Retries exhausted -> failure with the last error

PelotonAuthError is never retried here; it propagates so the caller can
refresh the credential and rerun the whole sync once.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from core.config import settings
from services import peloton_store
from services.peloton_client import (
    MAX_STACK_SIZE,
    PelotonAuthError,
    PelotonClient,
    PelotonError,
    StackMutationResult,
    is_valid_class_id,
)
from services.peloton_session import TokenRefreshError, call_with_token_refresh

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 1.0
    multiplier: float = 2.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.STACK_SYNC_MAX_ATTEMPTS,
            base_delay_s=settings.STACK_SYNC_BASE_DELAY_S,
            multiplier=settings.STACK_SYNC_BACKOFF_MULTIPLIER,
        )

    def delay_for(self, retry_number: int) -> float:
        """Delay before the Nth retry (1-based): base, base*m, base*m^2, ..."""
        return self.base_delay_s * (self.multiplier ** (retry_number - 1))


@dataclass
class StackSyncResult:
    success: bool
    pushed: int
    expected: int
    class_ids: List[str] = field(default_factory=list)
    # Fatal error on failure; truncation warning on success.
    error: Optional[str] = None
    # Remote count after populate differed from the expected count.
    count_mismatch: bool = False


def resolve_target_date(timezone_name: Optional[str] = None, now: Optional[datetime] = None) -> date:
    """
    Today's date in the user's timezone.

    Falls back to server local time when the timezone is missing or invalid.
    """
    import zoneinfo

    if timezone_name:
        try:
            tz = zoneinfo.ZoneInfo(timezone_name)
            return (now or datetime.now(tz)).astimezone(tz).date()
        except (zoneinfo.ZoneInfoNotFoundError, ValueError) as e:
            logger.warning(f"Invalid timezone '{timezone_name}', using server time: {e}")
    if now is None:
        return datetime.now().date()
    return now.astimezone().date() if now.tzinfo else now.date()


def collect_class_ids(db: Session, user_id: UUID, target_date: date) -> List[str]:
    """Class ids of the day's planned workouts, in sort_order, invalid ids dropped."""
    class_ids = []
    for workout in peloton_store.get_planned_workouts(db, user_id, target_date):
        if workout.peloton_class_id is None:
            continue
        if not is_valid_class_id(workout.peloton_class_id):
            logger.warning(f"Skipping planned workout {workout.id}: invalid class id")
            continue
        class_ids.append(workout.peloton_class_id)
    return class_ids


def _populate(client: PelotonClient, class_ids: List[str]) -> StackMutationResult:
    result = StackMutationResult(num_classes=0)
    for class_id in class_ids:
        result = client.add_class_to_stack(class_id)
    return result


def push_class_ids(
    client: PelotonClient,
    class_ids: List[str],
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep,
    deadline: Optional[float] = None,
) -> StackSyncResult:
    """
    Replace the remote stack with `class_ids` (already ordered).

    Raises:
        PelotonAuthError: at any step; never retried here
    """
    policy = policy or RetryPolicy.from_settings()

    if not class_ids:
        try:
            client.modify_stack([])
        except PelotonAuthError:
            raise
        except PelotonError as e:
            return StackSyncResult(success=False, pushed=0, expected=0, error=f"Failed to clear stack: {e}")
        return StackSyncResult(success=True, pushed=0, expected=0)

    selected = class_ids[:MAX_STACK_SIZE]
    expected = len(selected)
    warning = None
    if len(class_ids) > MAX_STACK_SIZE:
        warning = f"Only first {MAX_STACK_SIZE} of {len(class_ids)} classes were pushed (Peloton limit)"

    try:
        client.modify_stack([])
    except PelotonAuthError:
        raise
    except PelotonError as e:
        return StackSyncResult(success=False, pushed=0, expected=expected, error=f"Failed to clear stack: {e}")

    last_error = None
    for attempt in range(policy.max_attempts):
        if attempt > 0:
            delay = policy.delay_for(attempt)
            if deadline is not None and time.monotonic() + delay >= deadline:
                last_error = f"Stack sync deadline exceeded after {attempt} attempt(s): {last_error}"
                break
            logger.warning(f"Stack sync retry {attempt}/{policy.max_attempts - 1} in {delay:.1f}s after: {last_error}")
            sleep(delay)

            # Clear before retry to avoid duplicates from a partial add sequence
            try:
                client.modify_stack([])
            except PelotonAuthError:
                raise
            except PelotonError as e:
                last_error = f"Failed to clear stack before retry: {e}"
                continue

        try:
            result = _populate(client, selected)
        except PelotonAuthError:
            raise
        except PelotonError as e:
            last_error = str(e)
            continue

        mismatch = result.num_classes != expected
        if mismatch:
            logger.warning(f"Stack count mismatch: sent {expected}, got {result.num_classes}")

        return StackSyncResult(
            success=True,
            pushed=result.num_classes,
            expected=expected,
            class_ids=result.class_ids,
            error=warning,
            count_mismatch=mismatch,
        )

    return StackSyncResult(
        success=False,
        pushed=0,
        expected=expected,
        error=last_error or "Max retries exceeded",
    )


def sync_day_to_stack(
    db: Session,
    user_id: UUID,
    client: PelotonClient,
    target_date: Optional[date] = None,
    timezone_name: Optional[str] = None,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep,
    deadline: Optional[float] = None,
) -> StackSyncResult:
    """Sync one user's planned workouts for `target_date` (default: today in their timezone)."""
    target_date = target_date or resolve_target_date(timezone_name)
    class_ids = collect_class_ids(db, user_id, target_date)
    logger.info(f"Stack sync for user {user_id} on {target_date}: {len(class_ids)} class(es)")
    return push_class_ids(client, class_ids, policy=policy, sleep=sleep, deadline=deadline)


def run_manual_stack_sync(
    db: Session,
    user_id: UUID,
    timezone_name: Optional[str] = None,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> StackSyncResult:
    """
    User-triggered sync of today's plan, with one credential refresh on 401.

    Always appends one 'manual' sync log row and commits it.

    Raises:
        TokenRefreshError: the refresh failed (log row carries its reason)
        PelotonAuthError: still rejected after the refresh (log row written first)
    """
    deadline = time.monotonic() + settings.STACK_SYNC_LOCK_TTL_S
    target_date = resolve_target_date(timezone_name)

    try:
        result = call_with_token_refresh(
            db,
            user_id,
            lambda client: sync_day_to_stack(
                db, user_id, client,
                target_date=target_date,
                policy=policy,
                sleep=sleep,
                deadline=deadline,
            ),
        )
    except TokenRefreshError as e:
        peloton_store.append_sync_log(db, user_id, "manual", 0, False, e.result.error or "Token refresh failed")
        db.commit()
        raise
    except PelotonAuthError:
        peloton_store.append_sync_log(
            db, user_id, "manual", 0, False,
            "Peloton authentication failed. Please reconnect.",
        )
        db.commit()
        raise

    peloton_store.append_sync_log(db, user_id, "manual", result.pushed, result.success, result.error)
    db.commit()
    return result


def get_stack_status(client: PelotonClient) -> dict:
    """
    Current remote stack for display.

    A failed fetch is reported with fetchFailed=True rather than as an
    empty stack. PelotonAuthError propagates.
    """
    try:
        stack = client.view_user_stack()
    except PelotonAuthError:
        raise
    except PelotonError as e:
        logger.warning(f"Unable to fetch stack status: {e}")
        return {
            "numClasses": 0,
            "classes": [],
            "error": "Unable to fetch stack status from Peloton",
            "fetchFailed": True,
        }

    classes = []
    for item in (stack.get("userStack") or {}).get("stackedClassList") or []:
        pc = item.get("pelotonClass") or {}
        classes.append({
            "classId": pc.get("classId"),
            "title": pc.get("title"),
            "duration": pc.get("duration"),
            "discipline": (pc.get("fitnessDiscipline") or {}).get("displayName"),
            "instructor": (pc.get("instructor") or {}).get("name"),
            "order": item.get("playOrder"),
        })
    return {
        "numClasses": stack.get("numClasses") or 0,
        "totalTime": stack.get("totalTime"),
        "classes": classes,
    }
