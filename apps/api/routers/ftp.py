"""
FTP Router

Re-imports the user's FTP test history from Peloton and serves the stored
records.
"""
import logging
import time

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.config import settings
from core.database import get_db
from models import Profile
from routers.peloton import PelotonNotConnected, peloton_errors
from services import peloton_store
from services.ftp_history import get_ftp_history
from services.peloton_client import PelotonClient
from services.peloton_session import call_with_token_refresh

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/ftp", tags=["ftp"])


@router.post("/sync")
def sync_ftp(
    current_user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Refresh current/estimated FTP from /api/me, then walk and store the test history.
    """
    if not current_user.peloton_user_id:
        raise PelotonNotConnected("Peloton profile not found")

    deadline = time.monotonic() + settings.EXTERNAL_API_TIMEOUT * 4

    def fetch(client: PelotonClient):
        me = client.get_me()
        return me, get_ftp_history(client, me.get("cycling_ftp_workout_id"), deadline=deadline)

    with peloton_errors("fetch from Peloton"):
        peloton_user, history = call_with_token_refresh(db, current_user.id, fetch)

    peloton_store.update_profile_ftp(db, current_user, peloton_user)
    synced = peloton_store.upsert_ftp_records(db, current_user.id, history)
    db.commit()

    logger.info(f"FTP sync for user {current_user.id}: {synced} records")
    if not peloton_user.get("cycling_ftp_workout_id"):
        return {"success": True, "syncedRecords": 0, "message": "No FTP test history found"}
    return {
        "success": True,
        "syncedRecords": synced,
        "currentFtp": peloton_user.get("cycling_ftp"),
    }


@router.get("/history")
def ftp_history(
    current_user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    records = peloton_store.list_ftp_records(db, current_user.id)
    return {
        "records": [
            {
                "workout_id": r.workout_id,
                "workout_date": r.workout_date.isoformat() if r.workout_date else None,
                "ride_title": r.ride_title,
                "avg_output": r.avg_output,
                "calculated_ftp": r.calculated_ftp,
                "baseline_ftp": r.baseline_ftp,
                "source": r.source,
            }
            for r in records
        ]
    }
