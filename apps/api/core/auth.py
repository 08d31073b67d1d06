"""
Authentication dependencies.

Provides FastAPI dependencies for:
- Getting the current authenticated profile (user session)
- Verifying the scheduler's shared secret (cron trigger)
"""
import hmac
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID

from core.config import settings
from core.database import get_db
from core.exceptions import UnauthorizedError
from core.security import decode_access_token
from models import Profile

# Use auto_error=False to handle missing credentials manually and return 401 (not 403)
security = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> Profile:
    """
    Get the current authenticated profile from the session JWT.

    Raises UnauthorizedError if the token is invalid or the profile is unknown.
    """
    if not credentials:
        raise UnauthorizedError("Not authenticated")

    payload = decode_access_token(credentials.credentials)
    if not payload:
        raise UnauthorizedError("Invalid authentication credentials")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid token payload")

    try:
        user_id_uuid = UUID(user_id)
    except ValueError:
        raise UnauthorizedError("Invalid user ID format")

    user = db.query(Profile).filter(Profile.id == user_id_uuid).first()
    if not user:
        raise UnauthorizedError("User not found")

    return user


def verify_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """
    Require `Authorization: Bearer <CRON_SECRET>`.

    Constant-time comparison. With no CRON_SECRET configured every request
    is rejected.
    """
    expected = settings.CRON_SECRET
    if not expected or not credentials:
        raise UnauthorizedError("Unauthorized")
    if not hmac.compare_digest(credentials.credentials.encode("utf-8"), expected.encode("utf-8")):
        raise UnauthorizedError("Unauthorized")
