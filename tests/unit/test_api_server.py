"""
Unit tests for FastAPI web server (videoconsult/web/server.py).

Tests the video session endpoints with FastAPI TestClient. The module-level
service and identity resolver are replaced with ones backed by a temporary
SQLite store, an in-memory appointment directory and test secrets.
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import pytest

from videoconsult.auth import IdentityResolver
from videoconsult.storage.sqlite import SQLiteSessionStore
from videoconsult.video.models import CallerRole, WaitingEntry
from videoconsult.video.service import VideoSessionService

from tests.conftest import JWT_SECRET

BASE = "/api/v1/video"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def resolver():
    return IdentityResolver(JWT_SECRET)


@pytest.fixture
def api_store(tmp_path):
    s = SQLiteSessionStore(db_path=str(tmp_path / "api.db"))
    yield s
    asyncio.run(s.close())


@pytest.fixture
def client(api_store, appointments, provider, resolver):
    """TestClient with the server singletons swapped for test instances."""
    from fastapi.testclient import TestClient
    from videoconsult.web import server

    original_service, original_identity = server.video_service, server.identity
    server.video_service = VideoSessionService(api_store, appointments, provider)
    server.identity = resolver

    c = TestClient(server.app, raise_server_exceptions=False)
    yield c

    server.video_service, server.identity = original_service, original_identity


def _auth(resolver, caller_id, role):
    return {"Authorization": f"Bearer {resolver.issue(caller_id, role)}"}


@pytest.fixture
def as_doctor(resolver):
    return _auth(resolver, "D1", CallerRole.DOCTOR)


@pytest.fixture
def as_patient(resolver):
    return _auth(resolver, "P1", CallerRole.PATIENT)


@pytest.fixture
def as_other_doctor(resolver):
    return _auth(resolver, "D2", CallerRole.DOCTOR)


@pytest.fixture
def created(client, as_doctor):
    resp = client.post(f"{BASE}/session", json={"appointmentId": "A1"}, headers=as_doctor)
    assert resp.status_code == 201
    return resp.json()


# ---------------------------------------------------------------------------
# Service endpoints
# ---------------------------------------------------------------------------


class TestHealthAndHeaders:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_security_headers(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "req-1"})
        assert resp.headers["X-Request-ID"] == "req-1"
        assert resp.headers["Cache-Control"] == "no-store"
        assert resp.headers["X-Frame-Options"] == "DENY"


class TestAuthentication:

    def test_missing_token(self, client):
        resp = client.get(f"{BASE}/session/A1")
        assert resp.status_code == 401
        assert resp.json()["error"] == "unauthorized"

    def test_bad_token(self, client):
        resp = client.get(f"{BASE}/session/A1", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# POST /session, GET /session/{id}
# ---------------------------------------------------------------------------


class TestCreateAndGet:

    def test_create_returns_201_then_200(self, client, as_doctor, as_patient, created):
        again = client.post(f"{BASE}/session", json={"appointment_id": "A1"}, headers=as_patient)
        assert again.status_code == 200
        assert again.json()["session_id"] == created["session_id"]

    def test_create_body_shape(self, created):
        cfg = created["connection_config"]
        assert cfg["waiting_room_enabled"] is True
        assert cfg["third_party_session_id"] == "consultation-A1"
        assert cfg["role"] == 1
        assert cfg["access_token"]
        assert created["participant_tokens"] == {}

    def test_create_unknown_appointment(self, client, as_doctor):
        resp = client.post(f"{BASE}/session", json={"appointmentId": "nope"}, headers=as_doctor)
        assert resp.status_code == 404
        assert resp.json()["resource"] == "appointment"

    def test_create_validation_error(self, client, as_doctor):
        resp = client.post(f"{BASE}/session", json={}, headers=as_doctor)
        assert resp.status_code == 422

    def test_get_before_creation_is_404(self, client, as_patient):
        resp = client.get(f"{BASE}/session/A1", headers=as_patient)
        assert resp.status_code == 404
        body = resp.json()
        assert body["resource"] == "session"
        assert body["error"] == "not_found"

    def test_get_as_patient(self, client, as_patient, created):
        resp = client.get(f"{BASE}/session/A1", headers=as_patient)
        assert resp.status_code == 200
        assert resp.json()["connection_config"]["role"] == 2

    def test_get_forbidden_for_stranger(self, client, as_other_doctor, created):
        resp = client.get(f"{BASE}/session/A1", headers=as_other_doctor)
        assert resp.status_code == 403
        assert resp.json()["error"] == "forbidden"

    def test_stranger_forbidden_before_creation(self, client, as_other_doctor):
        resp = client.get(f"{BASE}/session/A1", headers=as_other_doctor)
        assert resp.status_code == 403
        assert resp.json()["error"] == "forbidden"


# ---------------------------------------------------------------------------
# Waiting room and admission
# ---------------------------------------------------------------------------


class TestWaitingRoomFlow:

    def test_full_admission_flow(self, client, as_doctor, as_patient, created):
        joined = client.post(f"{BASE}/session/A1/waiting-room", json={"displayName": "Pat"}, headers=as_patient)
        assert joined.status_code == 200
        assert joined.json()["admitted"] is False
        assert joined.json()["waiting_entry"]["display_name"] == "Pat"

        listed = client.get(f"{BASE}/session/A1/waiting-room", headers=as_doctor).json()["waiting"]
        assert [e["participant_id"] for e in listed] == ["P1"]
        assert listed[0]["waiting_token"] is None

        admitted = client.post(f"{BASE}/session/A1/admit/current", headers=as_doctor)
        assert admitted.status_code == 200
        assert admitted.json()["waiting_room"] == {}
        assert admitted.json()["connection_config"]["waiting_room_enabled"] is False

        view = client.get(f"{BASE}/session/A1", headers=as_patient).json()
        assert view["connection_config"]["waiting_room_enabled"] is False

        rejoin = client.post(f"{BASE}/session/A1/waiting-room", headers=as_patient)
        assert rejoin.json()["admitted"] is True

    def test_join_without_body(self, client, as_patient, created):
        resp = client.post(f"{BASE}/session/A1/waiting-room", headers=as_patient)
        assert resp.status_code == 200
        assert resp.json()["waiting_entry"]["participant_id"] == "P1"

    def test_admit_forbidden(self, client, as_patient, as_other_doctor, created):
        client.post(f"{BASE}/session/A1/waiting-room", headers=as_patient)
        assert client.post(f"{BASE}/session/A1/admit/current", headers=as_other_doctor).status_code == 403
        assert client.post(f"{BASE}/session/A1/admit/current", headers=as_patient).status_code == 403

    def test_admit_nobody_waiting(self, client, as_doctor, created):
        resp = client.post(f"{BASE}/session/A1/admit/current", headers=as_doctor)
        assert resp.status_code == 404
        assert resp.json()["resource"] == "waiting_entry"

    def test_admit_ambiguous(self, client, api_store, as_doctor, created):
        def _two(s):
            s.waiting_room["P1"] = WaitingEntry(participant_id="P1")
            s.waiting_room["P9"] = WaitingEntry(participant_id="P9")

        asyncio.run(api_store.update_waiting_room("A1", _two))

        resp = client.post(f"{BASE}/session/A1/admit/current", headers=as_doctor)
        assert resp.status_code == 409
        body = resp.json()
        assert body["error"] == "ambiguous"
        assert sorted(body["candidates"]) == ["P1", "P9"]


# ---------------------------------------------------------------------------
# Screen sharing
# ---------------------------------------------------------------------------


class TestScreenSharing:

    def test_toggle_and_conflict(self, client, as_doctor, as_patient, created):
        client.post(f"{BASE}/session/A1/waiting-room", headers=as_patient)
        client.post(f"{BASE}/session/A1/admit/current", headers=as_doctor)

        started = client.post(f"{BASE}/session/A1/screen-sharing", headers=as_doctor)
        assert started.status_code == 200
        assert started.json()["active"] is True
        assert started.json()["share_token"]

        conflict = client.post(f"{BASE}/session/A1/screen-sharing", headers=as_patient)
        assert conflict.status_code == 409
        assert conflict.json()["active_participant_id"] == "D1"

        stopped = client.post(f"{BASE}/session/A1/screen-sharing", headers=as_doctor)
        assert stopped.json()["active"] is False


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------


class TestRecording:

    URL = "https://recordings.example.com/A1.mp4"

    @pytest.fixture
    def recorded_session(self, client, as_doctor):
        from videoconsult.web import server

        server.video_service.recording_enabled = True
        resp = client.post(f"{BASE}/session", json={"appointmentId": "A1"}, headers=as_doctor)
        assert resp.json()["connection_config"]["recording_enabled"] is True
        return resp.json()

    def test_doctor_saves_recording(self, client, as_doctor, as_patient, recorded_session):
        resp = client.post(f"{BASE}/session/A1/recording", json={"recordingUrl": self.URL}, headers=as_doctor)
        assert resp.status_code == 200
        assert resp.json()["recording"]["url"] == self.URL
        assert resp.json()["recording"]["saved_by"] == "D1"

        view = client.get(f"{BASE}/session/A1", headers=as_patient).json()
        assert view["recording"]["url"] == self.URL

    def test_patient_forbidden(self, client, as_patient, recorded_session):
        resp = client.post(f"{BASE}/session/A1/recording", json={"recording_url": self.URL}, headers=as_patient)
        assert resp.status_code == 403

    def test_disabled_recording_forbidden(self, client, as_doctor, created):
        resp = client.post(f"{BASE}/session/A1/recording", json={"recording_url": self.URL}, headers=as_doctor)
        assert resp.status_code == 403
        assert "disabled" in resp.json()["detail"]

    def test_missing_url_rejected(self, client, as_doctor, recorded_session):
        resp = client.post(f"{BASE}/session/A1/recording", json={}, headers=as_doctor)
        assert resp.status_code == 422
