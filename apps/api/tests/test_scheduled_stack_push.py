"""
Tests for the daily multi-user stack push.

Each user's Peloton client is a MagicMock selected by access token, so
per-user failures can be scripted independently.
"""
from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from conftest import class_id, make_credential, make_workout
from models import PlannedWorkout, Profile, StackSyncLog
from services import peloton_store
from services.peloton_client import PelotonApiError, PelotonAuthError
from services.peloton_refresh import RefreshResult
from services.scheduled_stack_push import run_scheduled_stack_push
from services.stack_sync_lock import _lock_key
from services.token_encryption import encrypt_token

NOW = datetime(2026, 3, 1, 20, 0, tzinfo=timezone.utc)
TOMORROW = date(2026, 3, 2)


def _user(db, n):
    user = Profile(email=f"rider{n}@example.com", peloton_user_id=f"pel-{n}")
    db.add(user)
    db.commit()
    return user


def _clients_by_token(clients):
    """Patch target for services.peloton_session.PelotonClient."""
    def build(access_token, *args, **kwargs):
        return clients[access_token]
    return build


def _logs(db, user):
    return db.query(StackSyncLog).filter(StackSyncLog.user_id == user.id).all()


@pytest.fixture
def users(db_session):
    u1, u2, u3 = (_user(db_session, n) for n in range(3))
    for n, u in enumerate((u1, u2, u3)):
        make_credential(db_session, u, access_token=f"access-{n}", refresh_token=None,
                        expires_in=timedelta(days=30))
    return u1, u2, u3


class TestScheduledStackPush:
    def test_pushes_unpushed_workouts_and_marks_them(self, db_session, users):
        u1, _, _ = users
        w_b = make_workout(db_session, u1, class_id(2), TOMORROW, sort_order=1)
        w_a = make_workout(db_session, u1, class_id(1), TOMORROW, sort_order=0)
        make_workout(db_session, u1, class_id(3), TOMORROW, sort_order=2, pushed=True)
        make_workout(db_session, u1, class_id(4), NOW.date(), sort_order=0)

        clients = {f"access-{n}": MagicMock() for n in range(3)}
        with patch("services.peloton_session.PelotonClient", side_effect=_clients_by_token(clients)):
            summary = run_scheduled_stack_push(db_session, now=NOW)

        added = [c.args[0] for c in clients["access-0"].add_class_to_stack.call_args_list]
        assert added == [class_id(1), class_id(2)]
        clients["access-0"].modify_stack.assert_not_called()

        db_session.expire_all()
        assert db_session.get(PlannedWorkout, w_a.id).pushed_to_stack is True
        assert db_session.get(PlannedWorkout, w_b.id).pushed_to_stack is True
        assert db_session.get(PlannedWorkout, w_a.id).pushed_at is not None

        assert summary.target_date == TOMORROW
        assert (summary.processed, summary.succeeded, summary.failed) == (3, 3, 0)
        log = _logs(db_session, u1)[0]
        assert log.sync_type == "scheduled"
        assert log.workouts_pushed == 2
        assert log.success is True

    def test_one_user_failure_does_not_abort_batch(self, db_session, users):
        u1, u2, u3 = users
        for u in users:
            make_workout(db_session, u, class_id(7), TOMORROW)

        clients = {f"access-{n}": MagicMock() for n in range(3)}
        clients["access-1"].add_class_to_stack.side_effect = PelotonAuthError("expired")

        with patch("services.peloton_session.PelotonClient", side_effect=_clients_by_token(clients)):
            summary = run_scheduled_stack_push(db_session, now=NOW)

        assert summary.processed == 3
        assert summary.succeeded == 2
        assert summary.failed == 1
        assert summary.errors == [f"Auth error for user {u2.id}"]

        failed_log = _logs(db_session, u2)[0]
        assert failed_log.success is False
        assert failed_log.workouts_pushed == 0
        assert failed_log.error_message == f"Auth error for user {u2.id}"
        assert _logs(db_session, u3)[0].success is True

    def test_decryption_failure_isolated(self, db_session, users):
        u1, u2, _ = users
        cred = peloton_store.get_credential(db_session, u1.id)
        cred.access_token_encrypted = "v1.AAAA.BBBB.CCCC"
        db_session.commit()
        make_workout(db_session, u1, class_id(1), TOMORROW)

        clients = {f"access-{n}": MagicMock() for n in range(3)}
        with patch("services.peloton_session.PelotonClient", side_effect=_clients_by_token(clients)):
            summary = run_scheduled_stack_push(db_session, now=NOW)

        assert summary.failed == 1
        assert summary.succeeded == 2
        assert summary.errors[0].startswith(f"Credential error for user {u1.id}")
        assert _logs(db_session, u1)[0].success is False

    def test_partial_failure_marks_only_added(self, db_session, users):
        u1, _, _ = users
        ok = make_workout(db_session, u1, class_id(1), TOMORROW, sort_order=0)
        bad = make_workout(db_session, u1, class_id(2), TOMORROW, sort_order=1)

        clients = {f"access-{n}": MagicMock() for n in range(3)}
        clients["access-0"].add_class_to_stack.side_effect = [None, PelotonApiError("GraphQL error: gone", 400)]

        with patch("services.peloton_session.PelotonClient", side_effect=_clients_by_token(clients)):
            summary = run_scheduled_stack_push(db_session, now=NOW)

        db_session.expire_all()
        assert db_session.get(PlannedWorkout, ok.id).pushed_to_stack is True
        assert db_session.get(PlannedWorkout, bad.id).pushed_to_stack is False
        log = _logs(db_session, u1)[0]
        assert log.success is False
        assert log.workouts_pushed == 1
        assert log.error_message == "Failed to push 1 workout(s)"
        assert summary.succeeded == 3

    def test_expired_credentials_skipped(self, db_session, users):
        u1, _, _ = users
        peloton_store.get_credential(db_session, u1.id).expires_at = NOW - timedelta(minutes=1)
        db_session.commit()

        with patch("services.peloton_session.PelotonClient", side_effect=_clients_by_token(
                {f"access-{n}": MagicMock() for n in range(3)})):
            summary = run_scheduled_stack_push(db_session, now=NOW)

        assert summary.processed == 2
        assert _logs(db_session, u1) == []

    def test_explicit_target_date(self, db_session, users):
        u1, _, _ = users
        make_workout(db_session, u1, class_id(5), date(2026, 4, 1))
        clients = {f"access-{n}": MagicMock() for n in range(3)}
        with patch("services.peloton_session.PelotonClient", side_effect=_clients_by_token(clients)):
            summary = run_scheduled_stack_push(db_session, target_date=date(2026, 4, 1), now=NOW)

        assert summary.target_date == date(2026, 4, 1)
        clients["access-0"].add_class_to_stack.assert_called_once_with(class_id(5))

    def test_held_lock_counts_as_failed(self, db_session, users, fake_redis):
        u1, _, _ = users
        fake_redis.set(_lock_key(u1.id), "someone-else")

        with patch("services.peloton_session.PelotonClient", side_effect=_clients_by_token(
                {f"access-{n}": MagicMock() for n in range(3)})):
            summary = run_scheduled_stack_push(db_session, now=NOW)

        assert summary.failed == 1
        assert "already in progress" in summary.errors[0]
        assert fake_redis.get(_lock_key(u1.id)) == "someone-else"

    def test_summary_dict(self, db_session):
        summary = run_scheduled_stack_push(db_session, now=NOW)
        assert summary.to_dict() == {
            "message": "Processed 0 users",
            "processed": 0,
            "success": 0,
            "failed": 0,
            "errors": [],
            "targetDate": "2026-03-02",
        }

    def test_failed_refresh_keeps_classes_already_added(self, db_session, users):
        u1, _, _ = users
        peloton_store.get_credential(db_session, u1.id).refresh_token_encrypted = encrypt_token("refresh-0")
        db_session.commit()
        first = make_workout(db_session, u1, class_id(1), TOMORROW, sort_order=0)
        second = make_workout(db_session, u1, class_id(2), TOMORROW, sort_order=1)

        clients = {f"access-{n}": MagicMock() for n in range(3)}
        clients["access-0"].add_class_to_stack.side_effect = [None, PelotonAuthError("expired")]
        rejected = RefreshResult(success=False, error="Token refresh failed", needs_reconnect=True)

        with patch("services.peloton_session.PelotonClient", side_effect=_clients_by_token(clients)), \
                patch("services.peloton_session.refresh_peloton_token", return_value=rejected):
            summary = run_scheduled_stack_push(db_session, now=NOW)

        db_session.expire_all()
        assert db_session.get(PlannedWorkout, first.id).pushed_to_stack is True
        assert db_session.get(PlannedWorkout, second.id).pushed_to_stack is False
        log = _logs(db_session, u1)[0]
        assert log.success is False
        assert log.workouts_pushed == 1
        assert summary.errors == [f"Auth error for user {u1.id}"]

    def test_local_refresh_failure_reported_distinctly(self, db_session, users):
        u1, _, _ = users
        peloton_store.get_credential(db_session, u1.id).refresh_token_encrypted = encrypt_token("refresh-0")
        db_session.commit()
        make_workout(db_session, u1, class_id(1), TOMORROW)

        clients = {f"access-{n}": MagicMock() for n in range(3)}
        clients["access-0"].add_class_to_stack.side_effect = PelotonAuthError("expired")
        broken = RefreshResult(success=False, error="Failed to store refreshed tokens")

        with patch("services.peloton_session.PelotonClient", side_effect=_clients_by_token(clients)), \
                patch("services.peloton_session.refresh_peloton_token", return_value=broken):
            summary = run_scheduled_stack_push(db_session, now=NOW)

        assert summary.errors == [f"Token refresh failed for user {u1.id}: Failed to store refreshed tokens"]

    def test_failure_row_write_error_does_not_abort_batch(self, db_session, users):
        u1, u2, u3 = users
        cred = peloton_store.get_credential(db_session, u1.id)
        cred.access_token_encrypted = "v1.AAAA.BBBB.CCCC"
        db_session.commit()
        real_append = peloton_store.append_sync_log

        def append(db, user_id, sync_type, pushed, success, error_message=None):
            if not success:
                raise RuntimeError("log table unavailable")
            return real_append(db, user_id, sync_type, pushed, success, error_message)

        clients = {f"access-{n}": MagicMock() for n in range(3)}
        with patch("services.peloton_session.PelotonClient", side_effect=_clients_by_token(clients)), \
                patch("services.peloton_store.append_sync_log", side_effect=append):
            summary = run_scheduled_stack_push(db_session, now=NOW)

        assert (summary.processed, summary.succeeded, summary.failed) == (3, 2, 1)
        assert _logs(db_session, u1) == []
        assert _logs(db_session, u2)[0].success is True
        assert _logs(db_session, u3)[0].success is True
