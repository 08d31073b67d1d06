"""
Peloton session keep-alive.

Builds a client from a user's stored (encrypted) credential and retries an
operation exactly once after a credential refresh when Peloton answers 401.
"""
import logging
from typing import Callable, Optional, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from services import peloton_store
from services.peloton_client import PelotonAuthError, PelotonClient
from services.peloton_refresh import RefreshResult, refresh_peloton_token
from services.token_encryption import decrypt_token

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PelotonNotConnectedError(Exception):
    """User has no stored Peloton credential."""


class TokenRefreshError(PelotonAuthError):
    """Access token was rejected and the refresh attempt did not succeed."""

    def __init__(self, result: RefreshResult):
        super().__init__(result.error or "Token refresh failed")
        self.result = result

    @property
    def needs_reconnect(self) -> bool:
        return self.result.needs_reconnect


def client_for_user(db: Session, user_id: UUID) -> PelotonClient:
    """
    Client bound to the user's current access token.

    Raises:
        PelotonNotConnectedError: no credential stored
        DecryptionError: stored token is corrupt or encrypted with another key
    """
    token = peloton_store.get_credential(db, user_id)
    if token is None or not token.access_token_encrypted:
        raise PelotonNotConnectedError("Peloton not connected")
    return PelotonClient(decrypt_token(token.access_token_encrypted))


def call_with_token_refresh(
    db: Session,
    user_id: UUID,
    operation: Callable[[PelotonClient], T],
    client: Optional[PelotonClient] = None,
) -> T:
    """
    Run `operation(client)`; on PelotonAuthError refresh once and retry once.

    A second PelotonAuthError from the retried call propagates unchanged.

    Raises:
        TokenRefreshError: the refresh itself failed (inspect .result)
        PelotonAuthError: no refresh token stored, or the retry was rejected
    """
    client = client or client_for_user(db, user_id)
    try:
        return operation(client)
    except PelotonAuthError:
        token = peloton_store.get_credential(db, user_id)
        if token is None or not token.refresh_token_encrypted:
            logger.info(f"Peloton token rejected for user {user_id} and no refresh token stored")
            raise

        logger.info(f"Peloton token rejected for user {user_id}; refreshing")
        result = refresh_peloton_token(db, user_id, decrypt_token(token.refresh_token_encrypted))
        if not result.success:
            raise TokenRefreshError(result)

    return operation(client_for_user(db, user_id))
