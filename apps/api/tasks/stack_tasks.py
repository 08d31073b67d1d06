"""
Stack Push Tasks

Daily batch push of planned workouts to Peloton stacks (Celery Beat), and
an on-demand single-user sync that the API can enqueue.
"""

from datetime import date
from typing import Dict, Optional
from uuid import UUID
from celery import Task
from sqlalchemy.orm import Session
from core.database import get_db_sync
from tasks import celery_app
from services.peloton_client import PelotonAuthError
from services.peloton_session import PelotonNotConnectedError, TokenRefreshError
from services.scheduled_stack_push import run_scheduled_stack_push
from services.stack_sync import run_manual_stack_sync
from services.stack_sync_lock import stack_sync_lock
from services.token_encryption import DecryptionError
import logging

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.push_scheduled_stacks", bind=True)
def push_scheduled_stacks_task(self: Task, target_date: Optional[str] = None) -> Dict:
    """
    Push tomorrow's planned workouts for every user with a live credential.

    Args:
        target_date: optional ISO date (YYYY-MM-DD) overriding "tomorrow"

    Returns:
        Runner summary: processed / success / failed / errors / targetDate
    """
    db: Session = get_db_sync()
    try:
        day = date.fromisoformat(target_date) if target_date else None
        summary = run_scheduled_stack_push(db, target_date=day)
        return {"status": "success", **summary.to_dict()}
    except Exception as e:
        logger.error(f"Error in push_scheduled_stacks_task: {str(e)}", exc_info=True)
        return {"status": "error", "message": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.sync_user_stack", bind=True)
def sync_user_stack_task(self: Task, user_id: str, timezone_name: Optional[str] = None) -> Dict:
    """
    Rebuild one user's stack from today's plan (same path as POST /v1/stack/push).
    """
    db: Session = get_db_sync()
    try:
        uid = UUID(user_id)
        with stack_sync_lock(uid) as acquired:
            if not acquired:
                return {"status": "skipped", "message": "Stack sync already in progress"}
            result = run_manual_stack_sync(db, uid, timezone_name=timezone_name)
        return {
            "status": "success" if result.success else "error",
            "pushed": result.pushed,
            "expected": result.expected,
            "error": result.error,
        }
    except TokenRefreshError as e:
        logger.warning(f"Stack sync for user {user_id} stopped, token refresh failed: {e.result.error}")
        return {
            "status": "error",
            "message": e.result.error,
            "needs_reconnect": e.result.needs_reconnect,
            "retryable": e.result.retryable,
        }
    except (PelotonAuthError, PelotonNotConnectedError, DecryptionError) as e:
        logger.info(f"Stack sync for user {user_id} needs reconnect: {e}")
        return {"status": "error", "message": str(e), "needs_reconnect": True}
    except Exception as e:
        logger.error(f"Error in sync_user_stack_task for user {user_id}: {str(e)}", exc_info=True)
        return {"status": "error", "message": str(e)}
    finally:
        db.close()
