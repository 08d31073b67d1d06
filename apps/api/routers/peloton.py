"""
Peloton Integration Router

Account linking, connection status, credential refresh and class search.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.config import settings
from core.database import get_db
from core.exceptions import APIException, ServiceUnavailableError, UnauthorizedError
from models import Profile
from services import peloton_store
from services.ftp_history import get_ftp_history
from services.peloton_client import PelotonApiError, PelotonAuthError, PelotonClient, PelotonError
from services.peloton_refresh import refresh_peloton_token
from services.peloton_session import PelotonNotConnectedError, TokenRefreshError, call_with_token_refresh
from services.token_encryption import (
    DecryptionError,
    EncryptionError,
    TokenEncryptionConfigError,
    decrypt_token,
    encrypt_token,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/peloton", tags=["peloton"])

RECONNECT_MESSAGE = "Token expired. Please reconnect your Peloton account."
CONFIG_ERROR_MESSAGE = "Server configuration error. Please contact support."


class PelotonNotConnected(APIException):
    def __init__(self, detail: str = "Peloton not connected"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code="PELOTON_NOT_CONNECTED",
        )


@contextmanager
def peloton_errors(action: str):
    """Translate integration failures raised inside the block into API errors."""
    try:
        yield
    except TokenRefreshError as e:
        if e.result.needs_reconnect:
            raise UnauthorizedError(RECONNECT_MESSAGE, needs_reconnect=True)
        if e.result.retryable:
            raise ServiceUnavailableError("Peloton is temporarily unavailable. Please try again.", 503)
        logger.critical(f"Peloton token refresh failed locally while trying to {action}: {e.result.error}")
        raise ServiceUnavailableError(CONFIG_ERROR_MESSAGE, 500)
    except PelotonAuthError:
        raise UnauthorizedError(RECONNECT_MESSAGE, needs_reconnect=True)
    except PelotonNotConnectedError:
        raise PelotonNotConnected()
    except DecryptionError as e:
        raise UnauthorizedError(str(e), needs_reconnect=True)
    except (EncryptionError, TokenEncryptionConfigError) as e:
        logger.critical(f"Token cipher misconfigured while trying to {action}: {e}")
        raise ServiceUnavailableError(CONFIG_ERROR_MESSAGE, 500)
    except PelotonApiError as e:
        logger.error(f"Peloton API error while trying to {action}: {e}")
        raise ServiceUnavailableError(f"Failed to {action}. Please try again later.")


class ConnectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken", min_length=1)
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")


def _sync_ftp_records(db: Session, user_id, client: PelotonClient, ftp_workout_id: Optional[str]) -> int:
    if not ftp_workout_id:
        return 0
    history = get_ftp_history(client, ftp_workout_id)
    return peloton_store.upsert_ftp_records(db, user_id, history)


@router.post("/connect")
def connect_peloton(
    body: ConnectRequest,
    current_user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Link a Peloton account from a session token captured by the browser extension.

    FTP history is imported on a best-effort basis; its failure never fails the link.
    """
    client = PelotonClient(body.access_token)
    try:
        peloton_user = client.get_me()
    except PelotonAuthError:
        raise UnauthorizedError("Invalid or expired Peloton token")
    except PelotonError as e:
        logger.error(f"Peloton connect validation failed for user {current_user.id}: {e}")
        raise ServiceUnavailableError("Failed to connect Peloton account")

    current_user.peloton_user_id = peloton_user.get("id")
    current_user.peloton_username = peloton_user.get("username")
    current_user.display_name = peloton_user.get("name") or peloton_user.get("username")
    current_user.avatar_url = peloton_user.get("image_url")
    peloton_store.update_profile_ftp(db, current_user, peloton_user)

    expires_at = datetime.now(timezone.utc) + timedelta(seconds=settings.PELOTON_DEFAULT_TOKEN_LIFETIME_S)
    with peloton_errors("connect Peloton account"):
        peloton_store.save_credential(
            db,
            current_user.id,
            access_token_encrypted=encrypt_token(body.access_token),
            refresh_token_encrypted=encrypt_token(body.refresh_token) if body.refresh_token else "",
            expires_at=expires_at,
        )
    db.commit()

    synced = 0
    try:
        synced = _sync_ftp_records(db, current_user.id, client, peloton_user.get("cycling_ftp_workout_id"))
        db.commit()
    except PelotonError as e:
        db.rollback()
        logger.warning(f"FTP history import failed during connect for user {current_user.id}: {e}")

    logger.info(f"Peloton connected for user {current_user.id} ({synced} FTP records)")
    return {
        "success": True,
        "pelotonUser": {
            "id": peloton_user.get("id"),
            "username": peloton_user.get("username"),
            "name": peloton_user.get("name"),
        },
        "ftpRecordsSynced": synced,
    }


@router.get("/status")
def get_peloton_status(
    current_user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Connection status; the stored expiry is checked before calling Peloton."""
    if not current_user.peloton_user_id:
        return {"connected": False, "tokenValid": False, "message": "Peloton not connected"}

    token = peloton_store.get_credential(db, current_user.id)
    if token is None or not token.access_token_encrypted:
        return {"connected": True, "tokenValid": False, "message": "No token stored"}

    expires_at = token.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at < datetime.now(timezone.utc):
        return {
            "connected": True,
            "tokenValid": False,
            "message": "Token expired",
            "expiresAt": expires_at.isoformat(),
        }

    with peloton_errors("check Peloton status"):
        client = PelotonClient(decrypt_token(token.access_token_encrypted))
        try:
            peloton_user = client.get_me()
        except PelotonAuthError:
            return {"connected": True, "tokenValid": False, "message": "Token rejected by Peloton"}

    return {
        "connected": True,
        "tokenValid": True,
        "pelotonUsername": peloton_user.get("username"),
        "expiresAt": expires_at.isoformat(),
    }


@router.post("/refresh")
def refresh_peloton_credential(
    current_user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Rotate the stored credential using the stored refresh token."""
    token = peloton_store.get_credential(db, current_user.id)
    if token is None or not token.refresh_token_encrypted:
        raise APIException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No refresh token available",
            error_code="NO_REFRESH_TOKEN",
            extra={"needsReconnect": True},
        )

    with peloton_errors("refresh Peloton token"):
        result = refresh_peloton_token(db, current_user.id, decrypt_token(token.refresh_token_encrypted))

    if result.success:
        return {"success": True, "expiresAt": result.expires_at.isoformat()}
    if result.needs_reconnect:
        raise UnauthorizedError(result.error or "Token refresh failed", needs_reconnect=True)
    if result.retryable:
        raise ServiceUnavailableError(result.error or "Token refresh failed", 503)
    raise ServiceUnavailableError(result.error or "Failed to refresh token", 500)


def _class_summary(ride: dict, instructors: dict) -> dict:
    instructor = ride.get("instructor") or {}
    return {
        "id": ride.get("id"),
        "title": ride.get("title"),
        "description": ride.get("description"),
        "duration": ride.get("duration"),
        "difficulty_estimate": ride.get("difficulty_estimate"),
        "image_url": ride.get("image_url"),
        "instructor_name": instructor.get("name") or instructors.get(ride.get("instructor_id")),
        "fitness_discipline": ride.get("fitness_discipline"),
        "fitness_discipline_display_name": ride.get("fitness_discipline_display_name"),
    }


@router.get("/search")
def search_classes(
    discipline: Optional[str] = Query(None, description="Browse category, e.g. cycling"),
    duration: Optional[int] = Query(None, gt=0, description="Class length in minutes"),
    page: Optional[int] = Query(None, ge=0),
    limit: int = Query(20, ge=1, le=100),
    current_user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Search on-demand classes. Refreshes the credential once on a 401."""
    def search(client: PelotonClient) -> dict:
        return client.search_rides(
            browse_category=discipline,
            content_format="video",
            sort_by="original_air_time",
            page=page,
            limit=limit,
            duration=[duration * 60] if duration else None,
        )

    with peloton_errors("search classes"):
        results = call_with_token_refresh(db, current_user.id, search)

    instructors = {i.get("id"): i.get("name") for i in results.get("instructors") or []}
    return {
        "classes": [_class_summary(ride, instructors) for ride in results.get("data") or []],
        "page": results.get("page"),
        "page_count": results.get("page_count"),
        "total": results.get("total"),
    }
