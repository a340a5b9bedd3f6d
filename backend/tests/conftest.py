"""
Pytest fixtures for the Teatime Authority backend.

Provides an in-memory database per test, a fixed tea-time config,
service objects and an authenticated API client.
"""
import os

# Must be set before teatime.database creates its engine
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from teatime.database import Base, get_db
from teatime.models import db_models  # noqa: F401  registers tables
from teatime.services.compliance import (
    FineResolver, MockVerifier, NotificationEmitter, SubmissionService, TeaTimeConfig,
)
from teatime.services.compliance.locks import KeyedLock


USER_ID = "user-1"


class Clock:
    """Mutable 'now' shared by a test and the API dependency override."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def tea_time():
    """17:00 with a 10-minute window."""
    return TeaTimeConfig(hour=17, minute=0, submission_window_minutes=10)


@pytest.fixture
def emitter(db_session):
    return NotificationEmitter(db_session)


@pytest.fixture
def resolver(db_session, emitter):
    return FineResolver(db_session, emitter)


@pytest.fixture
def service(db_session, tea_time, emitter, resolver):
    return SubmissionService(db_session, tea_time=tea_time, emitter=emitter, resolver=resolver, locks=KeyedLock())


@pytest.fixture
def clock():
    return Clock(datetime(2024, 6, 3, 17, 3, 0))


@pytest.fixture
def client(session_factory, tea_time, clock):
    """API client authenticated as USER_ID with a passing, instant verifier."""
    from teatime.auth import get_current_user
    from teatime.main import app
    from teatime.routers.common import get_clock, get_now, get_tea_time

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: USER_ID
    app.dependency_overrides[get_now] = clock
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_tea_time] = lambda: tea_time
    app.state.verifier = MockVerifier(latency=0, outcome=True)

    yield TestClient(app)

    app.dependency_overrides.clear()
    app.state.verifier = None
