"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database and an in-memory FakeRedis;
Strava HTTP calls are patched per test. Nothing touches the network.
"""
import fnmatch
import os
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from cryptography.fernet import Fernet

# Must be set before anything imports core.config
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("WORKER_SHARED_SECRET", "test-shared-secret")
os.environ.setdefault("STRAVA_WEBHOOK_VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("ADMIN_API_TOKEN", "test-admin-token")
os.environ.setdefault("STRAVA_CLIENT_ID", "12345")
os.environ.setdefault("STRAVA_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("ENVIRONMENT", "test")

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest  # noqa: E402

from core.database import Base, SessionLocal, engine  # noqa: E402
from models import Member  # noqa: E402
from services.token_encryption import encrypt_token  # noqa: E402
from tests.strava_helpers import strava_response  # noqa: E402


class FakeLock:
    def __init__(self, redis, name):
        self._redis = redis
        self.name = name

    def acquire(self, blocking=True, blocking_timeout=None):
        # Never actually waits: a held lock stays held for the whole test.
        if self.name in self._redis.held_locks:
            return False
        self._redis.held_locks.add(self.name)
        return True

    def release(self):
        self._redis.held_locks.discard(self.name)


class FakeRedis:
    """Minimal in-memory Redis mock for unit tests."""

    def __init__(self):
        self._store: dict = {}
        self._ttls: dict = {}
        self.held_locks: set = set()
        self.deleted: list = []

    def get(self, key):
        return self._store.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self._store:
            return False
        self._store[key] = value
        if ex:
            self._ttls[key] = ex
        return True

    def setex(self, key, ttl, value):
        self._store[key] = value
        self._ttls[key] = ttl
        return True

    def delete(self, *keys):
        count = 0
        for key in keys:
            self.deleted.append(key)
            if key in self._store:
                del self._store[key]
                self._ttls.pop(key, None)
                count += 1
        return count

    def exists(self, key):
        return 1 if key in self._store else 0

    def keys(self, pattern="*"):
        return [k for k in self._store if fnmatch.fnmatch(k, pattern)]

    def ping(self):
        return True

    def lock(self, name, timeout=None):
        return FakeLock(self, name)


@pytest.fixture(autouse=True)
def fake_redis():
    """Every test gets a fresh FakeRedis behind get_redis_client()."""
    fake = FakeRedis()
    with patch("core.cache.get_redis_client", return_value=fake), \
            patch("services.sync_state.get_redis_client", return_value=fake):
        yield fake


@pytest.fixture
def state(fake_redis):
    from services.sync_state import SyncStateStore
    return SyncStateStore(fake_redis)


@pytest.fixture(scope="function")
def db_session():
    """
    Fresh schema per test on the shared in-memory connection.
    Dropped afterwards, so nothing leaks between tests.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def make_member(db_session):
    """Create a connected member. Tokens are stored encrypted like the real flow."""

    def _make(
        athlete_id="1001",
        access_token="access-token",
        refresh_token="refresh-token",
        expires_at=None,
        last_synced_at=None,
        display_name=None,
    ):
        member = Member(
            athlete_id=athlete_id,
            display_name=display_name or f"Swimmer {athlete_id}",
            strava_access_token=encrypt_token(access_token),
            strava_refresh_token=encrypt_token(refresh_token),
            token_expires_at=expires_at or datetime.now(timezone.utc) + timedelta(hours=6),
            last_synced_at=last_synced_at,
            is_authorized=True,
        )
        db_session.add(member)
        db_session.commit()
        return member

    return _make


@pytest.fixture
def activity_payload():
    """Strava activity summary as returned by /athlete/activities."""

    def _build(
        activity_id,
        athlete_id="1001",
        type="Swim",
        visibility="everyone",
        distance=1500.0,
        moving_time=1800,
        start_date="2026-10-15T06:30:00Z",
        name=None,
    ):
        return {
            "id": activity_id,
            "athlete": {"id": int(athlete_id), "resource_state": 1},
            "name": name or f"Morning {type}",
            "type": type,
            "sport_type": type,
            "distance": distance,
            "moving_time": moving_time,
            "start_date": start_date,
            "visibility": visibility,
        }

    return _build


@pytest.fixture
def http_response():
    return strava_response
