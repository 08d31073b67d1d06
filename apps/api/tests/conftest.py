"""
Pytest configuration and fixtures

Test environment variables are set before any application import so that
`core.config.settings` picks them up. Every test gets a fresh in-memory
SQLite database; nothing touches Postgres, Redis or Peloton.
"""
import base64
import os
import sys
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

TEST_ENCRYPTION_KEY = base64.b64encode(os.urandom(32)).decode("ascii")
TEST_CRON_SECRET = "test-cron-secret-value"

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PELOTON_TOKEN_ENCRYPTION_KEY"] = TEST_ENCRYPTION_KEY
os.environ["SECRET_KEY"] = "test-secret-key-that-is-at-least-32-characters-long"
os.environ["CRON_SECRET"] = TEST_CRON_SECRET
os.environ["LOG_FORMAT"] = "text"
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("SENTRY_DSN", None)

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from core.database import Base  # noqa: E402
from models import PelotonToken, PlannedWorkout, Profile  # noqa: E402
from services.token_encryption import encrypt_token, reset_token_cipher  # noqa: E402


class FakeRedis:
    """Minimal in-memory Redis mock (SET NX EX, GET, DEL and the lock-release script)."""

    def __init__(self):
        self._store: dict = {}
        self._ttls: dict = {}

    def get(self, key):
        return self._store.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self._store:
            return False
        self._store[key] = value
        if ex:
            self._ttls[key] = ex
        return True

    def delete(self, *keys):
        removed = 0
        for k in keys:
            if self._store.pop(k, None) is not None:
                removed += 1
            self._ttls.pop(k, None)
        return removed

    def eval(self, script, numkeys, *args):
        # Only the compare-and-delete release script is used by the app
        key, owner = args[0], args[1]
        if self._store.get(key) == owner:
            return self.delete(key)
        return 0

    def ping(self):
        return True


@pytest.fixture(autouse=True)
def fake_redis():
    """Every test gets an isolated FakeRedis behind the stack sync lock."""
    r = FakeRedis()
    with patch("services.stack_sync_lock.get_redis_client", return_value=r):
        yield r


@pytest.fixture(autouse=True)
def _fresh_token_cipher():
    reset_token_cipher()
    yield
    reset_token_cipher()


@pytest.fixture(scope="function")
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine):
    """Session on a private in-memory database, shared across threads (TestClient)."""
    TestingSession = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)
    session = TestingSession()
    yield session
    session.close()


@pytest.fixture
def profile(db_session):
    user = Profile(
        email="rider@example.com",
        display_name="Rider",
        timezone="America/New_York",
        peloton_user_id="pel-user-1",
        peloton_username="rider1",
    )
    db_session.add(user)
    db_session.commit()
    return user


def make_credential(db, user, access_token="access-1", refresh_token="refresh-1", expires_in=timedelta(hours=24)):
    token = PelotonToken(
        user_id=user.id,
        access_token_encrypted=encrypt_token(access_token),
        refresh_token_encrypted=encrypt_token(refresh_token) if refresh_token else "",
        expires_at=datetime.now(timezone.utc) + expires_in,
    )
    db.add(token)
    db.commit()
    return token


def make_workout(db, user, class_id, scheduled_date: date, sort_order=0, status="planned", pushed=False):
    workout = PlannedWorkout(
        user_id=user.id,
        peloton_class_id=class_id,
        ride_title=f"Ride {sort_order}",
        scheduled_date=scheduled_date,
        sort_order=sort_order,
        status=status,
        pushed_to_stack=pushed,
    )
    db.add(workout)
    db.commit()
    return workout


def class_id(n: int) -> str:
    """Deterministic 32-hex Peloton class id."""
    return f"{n:032x}"
