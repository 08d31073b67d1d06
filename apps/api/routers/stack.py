"""
Stack Router

Manual push of today's plan to the Peloton stack, and the current stack
status with recent sync history.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.database import get_db
from core.exceptions import ConflictError
from models import Profile
from routers.peloton import peloton_errors
from services import peloton_store
from services.peloton_session import call_with_token_refresh
from services.stack_sync import get_stack_status, run_manual_stack_sync
from services.stack_sync_lock import stack_sync_lock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/stack", tags=["stack"])


class PushRequest(BaseModel):
    timezone: Optional[str] = None


def _sync_log_dict(log) -> dict:
    return {
        "id": str(log.id),
        "created_at": log.created_at.isoformat() if log.created_at else None,
        "sync_type": log.sync_type,
        "workouts_pushed": log.workouts_pushed,
        "success": log.success,
        "error_message": log.error_message,
    }


@router.post("/push")
def push_stack(
    body: Optional[PushRequest] = None,
    current_user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Replace the Peloton stack with today's planned classes.

    The user's timezone (body, else profile) decides what "today" is.
    """
    tz_name = (body.timezone if body else None) or current_user.timezone

    with stack_sync_lock(current_user.id) as acquired:
        if not acquired:
            raise ConflictError("A stack sync is already in progress")
        with peloton_errors("sync stack"):
            result = run_manual_stack_sync(db, current_user.id, timezone_name=tz_name)

    if not result.success:
        return JSONResponse(
            status_code=502,
            content={
                "error": {"code": "STACK_SYNC_FAILED", "message": result.error or "Sync failed"},
                "pushed": result.pushed,
                "expected": result.expected,
            },
        )

    return {
        "message": (
            f"Synced {result.pushed} workout(s) to stack"
            if result.pushed > 0
            else "Stack cleared (no workouts for today)"
        ),
        "pushed": result.pushed,
        "expected": result.expected,
        "warning": result.error,
        "countMismatch": result.count_mismatch,
    }


@router.get("/status")
def stack_status(
    current_user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    with peloton_errors("fetch stack status"):
        stack = call_with_token_refresh(db, current_user.id, get_stack_status)

    logs = peloton_store.recent_sync_logs(db, current_user.id, limit=5)
    return {
        "stack": stack,
        "recentSyncs": [_sync_log_dict(log) for log in logs],
    }
