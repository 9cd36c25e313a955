"""Shared fixtures: a throwaway SQLite database per test and lightweight fakes for external services."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import Sparrow.models  # noqa: F401
from Sparrow.auth import SessionUser
from Sparrow.database import Base
from Sparrow.rate_limiters.chat_rate_limiter import RateLimitDecision


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class FakeRateLimiter:
    """In-memory stand-in for the Redis sliding window: counts calls per key."""

    def __init__(self):
        self.counts: dict[str, int] = {}
        self.calls: list[tuple[str, int, int]] = []

    async def check(self, key, limit, window_seconds):
        self.calls.append((key, limit, window_seconds))
        count = self.counts.get(key, 0) + 1
        if count > limit:
            return RateLimitDecision(allowed=False, remaining=0, wait_seconds=window_seconds)
        self.counts[key] = count
        return RateLimitDecision(allowed=True, remaining=limit - count)


@pytest.fixture
def fake_limiter():
    return FakeRateLimiter()


@pytest.fixture
def alice():
    return SessionUser(user_id="user-alice", email="alice@example.com", is_anonymous=False)


@pytest.fixture
def bob():
    return SessionUser(user_id="user-bob", email="bob@example.com", is_anonymous=False)


@pytest.fixture
def guest():
    return SessionUser(user_id="user-guest", email="guest-1@https://www.betterindex.io", is_anonymous=True)
