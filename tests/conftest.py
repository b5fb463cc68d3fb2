"""
Shared fixtures for video session tests
"""

import sys
import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from videoconsult.appointments import InMemoryAppointmentDirectory
from videoconsult.storage.sqlite import SQLiteSessionStore
from videoconsult.video.models import Appointment, Caller, CallerRole
from videoconsult.video.provider import LiveKitProvider
from videoconsult.video.service import VideoSessionService

LIVEKIT_KEY = "devkey"
LIVEKIT_SECRET = "livekit-test-secret-0123456789abcdef"
JWT_SECRET = "jwt-test-secret-0123456789abcdef"


class FakeClock:
    """Deterministic clock; every call advances by ``step``."""

    def __init__(self, start: datetime = None, step: timedelta = timedelta(seconds=1)):
        self.now = start or datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


# ============ CALLERS ============

@pytest.fixture
def patient():
    return Caller(caller_id="P1", role=CallerRole.PATIENT)


@pytest.fixture
def doctor():
    return Caller(caller_id="D1", role=CallerRole.DOCTOR)


@pytest.fixture
def other_doctor():
    return Caller(caller_id="D2", role=CallerRole.DOCTOR)


@pytest.fixture
def other_patient():
    return Caller(caller_id="P2", role=CallerRole.PATIENT)


@pytest.fixture
def admin():
    return Caller(caller_id="ADM", role=CallerRole.ADMIN)


# ============ COLLABORATORS ============

@pytest.fixture
def appointment():
    return Appointment(appointment_id="A1", patient_id="P1", doctor_id="D1")


@pytest.fixture
def appointments(appointment):
    return InMemoryAppointmentDirectory([appointment])


@pytest.fixture
def provider():
    return LiveKitProvider(
        url="wss://livekit.test",
        api_key=LIVEKIT_KEY,
        api_secret=LIVEKIT_SECRET,
        ice_servers=[{"urls": ["stun:stun.l.google.com:19302"]}],
        room_prefix="consultation",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def store(tmp_path):
    """SQLite store on a temporary database."""
    s = SQLiteSessionStore(db_path=str(tmp_path / "video.db"))
    yield s
    await s.close()


@pytest.fixture
def service(store, appointments, provider, clock):
    return VideoSessionService(
        store=store,
        appointments=appointments,
        provider=provider,
        clock=clock,
    )
