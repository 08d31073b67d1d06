"""
Peloton credential refresh.

Exchanges a refresh token at Peloton's Auth0 token endpoint, validates the
new access token with /api/me, then re-encrypts and stores both tokens
together with the new expiry.

Outcomes:
- success
- retryable: network error, 429 or 5xx from the identity provider
- needs_reconnect: the provider rejected the refresh token, returned no
  access token, or issued a token that fails validation
- configuration/storage failure: neither retryable nor a reconnect case;
  logged at CRITICAL so operators see it
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import requests
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from services import peloton_store
from services.peloton_client import PelotonClient, PelotonError
from services.token_encryption import EncryptionError, encrypt_token

logger = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    success: bool
    expires_at: Optional[datetime] = None
    error: Optional[str] = None
    needs_reconnect: bool = False
    retryable: bool = False


def request_token_refresh(refresh_token: str) -> requests.Response:
    """POST the refresh grant. Returns the raw response."""
    return requests.post(
        settings.PELOTON_AUTH_TOKEN_URL,
        json={
            "grant_type": "refresh_token",
            "client_id": settings.PELOTON_CLIENT_ID,
            "refresh_token": refresh_token,
        },
        timeout=settings.EXTERNAL_API_TIMEOUT,
    )


def refresh_peloton_token(
    db: Session,
    user_id: UUID,
    refresh_token: str,
    now: Optional[datetime] = None,
) -> RefreshResult:
    """
    Refresh a user's Peloton credential and persist the rotated pair.

    Args:
        db: session; committed on success
        user_id: profile id owning the credential
        refresh_token: plaintext (already decrypted) refresh token
    """
    try:
        r = request_token_refresh(refresh_token)
    except requests.RequestException as e:
        logger.warning(f"Peloton token refresh transport error for user {user_id}: {e}")
        return RefreshResult(success=False, error="Failed to reach Peloton", retryable=True)

    if r.status_code >= 500 or r.status_code == 429:
        logger.warning(f"Peloton token refresh failed for user {user_id}: provider status {r.status_code}")
        return RefreshResult(success=False, error="Token refresh failed", retryable=True)

    if not 200 <= r.status_code < 300:
        logger.warning(f"Peloton token refresh rejected for user {user_id}: status {r.status_code}")
        return RefreshResult(success=False, error="Token refresh failed", needs_reconnect=True)

    try:
        tokens = r.json()
    except ValueError:
        return RefreshResult(success=False, error="Invalid refresh response", retryable=True)

    new_access_token = tokens.get("access_token")
    # Auth0 may rotate the refresh token; keep the old one otherwise.
    new_refresh_token = tokens.get("refresh_token") or refresh_token

    if not new_access_token:
        return RefreshResult(success=False, error="No access token in refresh response", needs_reconnect=True)

    try:
        PelotonClient(new_access_token).get_me()
    except PelotonError as e:
        logger.warning(f"Refreshed Peloton token failed validation for user {user_id}: {e}")
        return RefreshResult(success=False, error="Refreshed token is invalid", needs_reconnect=True)

    lifetime_s = tokens.get("expires_in") or settings.PELOTON_DEFAULT_TOKEN_LIFETIME_S
    expires_at = (now or datetime.now(timezone.utc)) + timedelta(seconds=int(lifetime_s))

    try:
        peloton_store.save_credential(
            db,
            user_id,
            access_token_encrypted=encrypt_token(new_access_token),
            refresh_token_encrypted=encrypt_token(new_refresh_token),
            expires_at=expires_at,
        )
        db.commit()
    except EncryptionError:
        db.rollback()
        logger.critical(f"Token encryption failed during refresh for user {user_id} - check PELOTON_TOKEN_ENCRYPTION_KEY")
        return RefreshResult(success=False, error="Server configuration error. Please contact support.")
    except SQLAlchemyError as e:
        db.rollback()
        logger.critical(f"Failed to store refreshed Peloton tokens for user {user_id}: {e}")
        return RefreshResult(success=False, error="Failed to store refreshed tokens")

    logger.info(f"Peloton token refreshed for user {user_id}")
    return RefreshResult(success=True, expires_at=expires_at)
