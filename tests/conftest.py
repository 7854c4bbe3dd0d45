"""
Pytest Configuration and Shared Fixtures
========================================

This module provides shared fixtures for all DoseLedger tests.
Fixtures include database sessions, a controllable clock, recording
notification gateways, the wired services and a test client.
"""

import os
import sys
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Generator, Dict, Any, List, Optional

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Settings, settings
from database import Base
from exceptions import GatewayError
from models import (
    MedicationCommand, FamilyAccess, FamilyAccessStatus, NotificationChannel, NotificationContact,
)
from services.container import build_services
from tools.notification_gateways import NotificationGateway, DeliveryReceipt, OutboundMessage
from jobs.tasks import ScheduledJobs
import api.deps as deps
import api.jobs as jobs_api
from app import app


# Tuesday, before the first dose of the day
BASE_NOW = datetime(2026, 3, 10, 6, 0, tzinfo=timezone.utc)

PATIENT_ID = "patient-1"
FAMILY_ID = "family-1"
VIEWER_ID = "viewer-1"
EMERGENCY_ID = "emergency-1"
STRANGER_ID = "stranger-1"

JOB_TOKEN = "test-job-token"


def at(day: int, hour: int, minute: int = 0, month: int = 3) -> datetime:
    """UTC instant in 2026"""
    return datetime(2026, month, day, hour, minute, tzinfo=timezone.utc)


# ==================== CLOCK & GATEWAYS ====================

class FakeClock:
    """Callable clock the tests move by hand"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingGateway(NotificationGateway):
    """Keeps every message; raises queued failures first"""

    def __init__(self, channel: NotificationChannel, failures: Optional[List[Exception]] = None):
        self.channel = channel
        self.sent: List[OutboundMessage] = []
        self.failures = list(failures or [])

    def fail_next(self, *errors: Exception) -> None:
        self.failures.extend(errors)

    async def send(self, message: OutboundMessage) -> DeliveryReceipt:
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(message)
        return DeliveryReceipt(channel=self.channel, message_id=f"{self.channel.value}-{len(self.sent)}")


def transient_error(channel: str = "push") -> GatewayError:
    return GatewayError(f"{channel} gateway returned 503", transient=True, channel=channel)


def terminal_error(channel: str = "push") -> GatewayError:
    return GatewayError(f"{channel} gateway rejected message: 400", transient=False, channel=channel)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock(BASE_NOW)


@pytest.fixture
def test_settings() -> Settings:
    """Settings with patient-local time equal to UTC unless a test says otherwise"""
    return Settings(
        _env_file=None,
        DEFAULT_TIMEZONE="UTC",
        DEBUG=True,
        JOB_TRIGGER_TOKEN=JOB_TOKEN,
        HOLIDAYS=[],
    )


@pytest.fixture
def gateways() -> Dict[NotificationChannel, RecordingGateway]:
    return {channel: RecordingGateway(channel) for channel in NotificationChannel}


@pytest.fixture
def services(fake_clock, gateways, test_settings):
    return build_services(clock=fake_clock, gateways=gateways, config=test_settings)


# ==================== DATABASE FIXTURES ====================

@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    # Enable foreign keys for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # Create all tables
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """Create a test database session"""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_engine
    )

    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def session_factory(db_session: Session):
    """Job session factory handing out the test session"""

    @contextmanager
    def factory():
        try:
            yield db_session
            db_session.commit()
        except Exception:
            db_session.rollback()
            raise

    return factory


@pytest.fixture
def jobs(services, session_factory) -> ScheduledJobs:
    return ScheduledJobs(services, session_factory=session_factory)


@pytest.fixture(scope="function")
def client(db_session: Session, services, session_factory, test_settings, monkeypatch) -> Generator[TestClient, None, None]:
    """Create a FastAPI test client with database, service and identity overrides"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    # DEBUG with no verify URL: the bearer token is the subject id
    monkeypatch.setattr(deps.identity_verifier, "config", test_settings)
    monkeypatch.setattr(settings, "JOB_TRIGGER_TOKEN", JOB_TOKEN)

    app.dependency_overrides[deps.get_db] = override_get_db
    app.dependency_overrides[deps.get_services] = lambda: services
    app.dependency_overrides[jobs_api.get_jobs] = lambda: ScheduledJobs(services, session_factory=session_factory)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def auth(subject: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {subject}"}


@pytest.fixture
def patient_headers() -> Dict[str, str]:
    return auth(PATIENT_ID)


# ==================== SAMPLE DATA FIXTURES ====================

@pytest.fixture
def sample_medication_data() -> Dict[str, Any]:
    """Three doses a day from the default buckets, push reminders 15 minutes ahead"""
    return {
        "name": "Metformin",
        "generic_name": "metformin hydrochloride",
        "dosage": "500mg",
        "instructions": "Take with meals",
        "schedule": {"frequency": "three_times_daily"},
        "reminders": {"enabled": True, "minutes_before": [15], "channels": ["push"]},
        "grace_period": {"risk_class": "standard"},
    }


@pytest_asyncio.fixture
async def command(db_session: Session, services, sample_medication_data) -> MedicationCommand:
    """Active three-times-daily medication created at BASE_NOW"""
    return await services.commands.create_command(
        db_session, PATIENT_ID, sample_medication_data, actor=PATIENT_ID
    )


@pytest_asyncio.fixture
async def daily_command(db_session: Session, services) -> MedicationCommand:
    """Active once-daily 08:00 medication"""
    return await services.commands.create_command(
        db_session,
        PATIENT_ID,
        {"name": "Lisinopril", "dosage": "10mg", "schedule": {"frequency": "daily"}},
        actor=PATIENT_ID,
    )


@pytest.fixture
def family_access(db_session: Session) -> List[FamilyAccess]:
    """
    family-1: view, edit, notifications
    viewer-1: view and notifications only
    emergency-1: emergency contact that does not get routine notifications
    """
    rows = [
        FamilyAccess(
            patient_id=PATIENT_ID, family_member_id=FAMILY_ID, relationship_label="daughter",
            status=FamilyAccessStatus.ACTIVE, can_view_medications=True,
            can_edit_medications=True, can_receive_notifications=True,
        ),
        FamilyAccess(
            patient_id=PATIENT_ID, family_member_id=VIEWER_ID, relationship_label="son",
            status=FamilyAccessStatus.ACTIVE, can_view_medications=True,
            can_edit_medications=False, can_receive_notifications=True,
        ),
        FamilyAccess(
            patient_id=PATIENT_ID, family_member_id=EMERGENCY_ID, relationship_label="neighbor",
            status=FamilyAccessStatus.ACTIVE, can_view_medications=False,
            can_edit_medications=False, can_receive_notifications=False,
            is_emergency_contact=True,
        ),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return rows


@pytest.fixture
def contacts(db_session: Session) -> List[NotificationContact]:
    rows = [
        NotificationContact(user_id=PATIENT_ID, display_name="Pat", email="pat@example.com", push_token="push-pat"),
        NotificationContact(user_id=FAMILY_ID, display_name="Fran", email="fran@example.com", phone="+15550001"),
        NotificationContact(user_id=VIEWER_ID, display_name="Vic", push_token="push-vic"),
        NotificationContact(user_id=EMERGENCY_ID, display_name="Em", phone="+15550002"),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return rows


# ==================== PYTEST CONFIGURATION ====================

def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "api: mark test as an API test")
    config.addinivalue_line("markers", "database: mark test as requiring database")
