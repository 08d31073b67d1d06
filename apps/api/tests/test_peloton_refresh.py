"""
Tests for Peloton credential refresh (Auth0 refresh grant).

Covers:
- success: both tokens re-encrypted and stored with the new expiry
- refresh token rotation vs reuse
- default 48h lifetime when expires_in is missing
- rejected / invalid responses -> needs_reconnect
- transport errors, 429 and 5xx -> retryable
- storage and encryption failures
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests
from sqlalchemy.exc import SQLAlchemyError

from conftest import make_credential
from services.peloton_client import PelotonAuthError
from services.peloton_refresh import refresh_peloton_token
from services.token_encryption import EncryptionError, decrypt_token, is_encrypted
from services import peloton_store

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _auth0_response(status_code=200, payload=None):
    r = MagicMock()
    r.status_code = status_code
    r.json.return_value = payload or {}
    return r


@pytest.fixture
def valid_me():
    with patch("services.peloton_refresh.PelotonClient") as client_cls:
        client_cls.return_value.get_me.return_value = {"id": "pel-user-1"}
        yield client_cls


class TestRefreshSuccess:
    def test_stores_rotated_tokens_encrypted(self, db_session, profile, valid_me):
        make_credential(db_session, profile, access_token="old-access", refresh_token="old-refresh")
        payload = {"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 3600}

        with patch("services.peloton_refresh.requests.post", return_value=_auth0_response(200, payload)) as post:
            result = refresh_peloton_token(db_session, profile.id, "old-refresh", now=NOW)

        assert result.success is True
        assert result.expires_at == NOW + timedelta(seconds=3600)

        sent = post.call_args.kwargs["json"]
        assert sent["grant_type"] == "refresh_token"
        assert sent["refresh_token"] == "old-refresh"
        assert sent["client_id"]

        token = peloton_store.get_credential(db_session, profile.id)
        assert is_encrypted(token.access_token_encrypted)
        assert is_encrypted(token.refresh_token_encrypted)
        assert decrypt_token(token.access_token_encrypted) == "new-access"
        assert decrypt_token(token.refresh_token_encrypted) == "new-refresh"
        valid_me.assert_called_once_with("new-access")

    def test_keeps_old_refresh_token_when_not_rotated(self, db_session, profile, valid_me):
        make_credential(db_session, profile, refresh_token="old-refresh")
        with patch("services.peloton_refresh.requests.post",
                   return_value=_auth0_response(200, {"access_token": "new-access"})):
            result = refresh_peloton_token(db_session, profile.id, "old-refresh", now=NOW)

        assert result.success is True
        token = peloton_store.get_credential(db_session, profile.id)
        assert decrypt_token(token.refresh_token_encrypted) == "old-refresh"

    def test_default_lifetime_is_48_hours(self, db_session, profile, valid_me):
        make_credential(db_session, profile)
        with patch("services.peloton_refresh.requests.post",
                   return_value=_auth0_response(200, {"access_token": "new-access"})):
            result = refresh_peloton_token(db_session, profile.id, "refresh-1", now=NOW)
        assert result.expires_at == NOW + timedelta(hours=48)


class TestRefreshFailure:
    def test_rejected_refresh_token_needs_reconnect(self, db_session, profile, valid_me):
        make_credential(db_session, profile, access_token="old-access")
        with patch("services.peloton_refresh.requests.post",
                   return_value=_auth0_response(403, {"error": "invalid_grant"})):
            result = refresh_peloton_token(db_session, profile.id, "refresh-1", now=NOW)

        assert result.success is False
        assert result.needs_reconnect is True
        assert result.retryable is False
        token = peloton_store.get_credential(db_session, profile.id)
        assert decrypt_token(token.access_token_encrypted) == "old-access"

    def test_missing_access_token_needs_reconnect(self, db_session, profile, valid_me):
        with patch("services.peloton_refresh.requests.post", return_value=_auth0_response(200, {})):
            result = refresh_peloton_token(db_session, profile.id, "refresh-1", now=NOW)
        assert result.needs_reconnect is True
        assert result.error == "No access token in refresh response"

    def test_new_token_failing_validation_needs_reconnect(self, db_session, profile):
        make_credential(db_session, profile, access_token="old-access")
        with patch("services.peloton_refresh.requests.post",
                   return_value=_auth0_response(200, {"access_token": "bad"})), \
                patch("services.peloton_refresh.PelotonClient") as client_cls:
            client_cls.return_value.get_me.side_effect = PelotonAuthError("nope")
            result = refresh_peloton_token(db_session, profile.id, "refresh-1", now=NOW)

        assert result.success is False
        assert result.needs_reconnect is True
        assert result.error == "Refreshed token is invalid"
        token = peloton_store.get_credential(db_session, profile.id)
        assert decrypt_token(token.access_token_encrypted) == "old-access"

    def test_network_error_is_retryable(self, db_session, profile):
        with patch("services.peloton_refresh.requests.post", side_effect=requests.ConnectionError("down")):
            result = refresh_peloton_token(db_session, profile.id, "refresh-1", now=NOW)
        assert result.success is False
        assert result.retryable is True
        assert result.needs_reconnect is False

    def test_provider_5xx_is_retryable(self, db_session, profile):
        with patch("services.peloton_refresh.requests.post", return_value=_auth0_response(502)):
            result = refresh_peloton_token(db_session, profile.id, "refresh-1", now=NOW)
        assert result.retryable is True

    def test_encryption_failure_is_configuration_error(self, db_session, profile, valid_me):
        with patch("services.peloton_refresh.requests.post",
                   return_value=_auth0_response(200, {"access_token": "new"})), \
                patch("services.peloton_refresh.encrypt_token", side_effect=EncryptionError()):
            result = refresh_peloton_token(db_session, profile.id, "refresh-1", now=NOW)
        assert result.success is False
        assert result.error == "Server configuration error. Please contact support."
        assert result.needs_reconnect is False
        assert result.retryable is False

    def test_storage_failure_reported(self, db_session, profile, valid_me):
        with patch("services.peloton_refresh.requests.post",
                   return_value=_auth0_response(200, {"access_token": "new"})), \
                patch("services.peloton_refresh.peloton_store.save_credential",
                      side_effect=SQLAlchemyError("db down")):
            result = refresh_peloton_token(db_session, profile.id, "refresh-1", now=NOW)
        assert result.success is False
        assert result.error == "Failed to store refreshed tokens"

    def test_rate_limited_is_retryable(self, db_session, profile):
        make_credential(db_session, profile, access_token="old-access")
        with patch("services.peloton_refresh.requests.post", return_value=_auth0_response(429)):
            result = refresh_peloton_token(db_session, profile.id, "refresh-1", now=NOW)
        assert result.success is False
        assert result.retryable is True
        assert result.needs_reconnect is False
        token = peloton_store.get_credential(db_session, profile.id)
        assert decrypt_token(token.access_token_encrypted) == "old-access"

    def test_any_2xx_response_accepted(self, db_session, profile, valid_me):
        make_credential(db_session, profile)
        with patch("services.peloton_refresh.requests.post",
                   return_value=_auth0_response(201, {"access_token": "new-access"})):
            result = refresh_peloton_token(db_session, profile.id, "refresh-1", now=NOW)
        assert result.success is True
        token = peloton_store.get_credential(db_session, profile.id)
        assert decrypt_token(token.access_token_encrypted) == "new-access"
