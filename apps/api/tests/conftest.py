"""
Test configuration and fixtures.

Provides:
- Fresh schema per test (SQLite in-memory by default)
- A frozen clock injected into services and routes
- Patient/doctor ids with a funded subscription
- HTTPX AsyncClient with the caller id header
"""
import contextlib
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Generator

# Must be set before the app (and its settings) are imported
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ["TESTING"] = "1"
os.environ["DEGRADED_POLL_ENABLED"] = "false"
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["ENFORCE_SESSION_BILLING_GUARDRAIL"] = "false"
os.environ["BILLING_CURRENCY"] = "USD"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from consult_api.core.deps import get_clock, get_db, get_session_factory
from consult_api.db.base import Base
from consult_api.db.models import PatientSubscription
from consult_api.db.session import SessionLocal, engine
from consult_api.main import app


# =============================================================================
# Clock
# =============================================================================


class FrozenClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> datetime:
        self.current = value
        return self.current


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc))


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture(scope="function")
def db_engine():
    return engine


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Database session on a freshly created schema.

    Services commit as they go, so isolation comes from recreating the
    tables for every test rather than from an outer rollback.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


# =============================================================================
# Participants
# =============================================================================


@dataclass
class Participants:
    patient_id: uuid.UUID
    doctor_id: uuid.UUID
    subscription: PatientSubscription


def make_subscription(db: Session, patient_id: uuid.UUID, *, text=3, voice=3, video=3) -> PatientSubscription:
    subscription = PatientSubscription(
        patient_id=patient_id,
        text_sessions_remaining=text,
        voice_calls_remaining=voice,
        video_calls_remaining=video,
    )
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return subscription


@pytest.fixture(scope="function")
def participants(db: Session) -> Participants:
    """A patient with 3 units of every modality, and a doctor."""
    patient_id = uuid.uuid4()
    return Participants(
        patient_id=patient_id,
        doctor_id=uuid.uuid4(),
        subscription=make_subscription(db, patient_id),
    )


# =============================================================================
# Client Fixtures
# =============================================================================


@pytest.fixture(scope="function")
async def client(db: Session, clock: FrozenClock) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient sharing the test session and clock."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_session_factory] = lambda: lambda: contextlib.nullcontext(db)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()

