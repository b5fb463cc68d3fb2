"""
Tests for LiveKitProvider token issuing.

Tokens are decoded with the test secret; no LiveKit server is contacted.
"""

import sys
import os
from unittest.mock import AsyncMock, MagicMock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import jwt
import pytest

from videoconsult.video.models import Appointment
from videoconsult.video.provider import SCREEN_SHARE_SOURCES, LiveKitProvider

from tests.conftest import LIVEKIT_KEY, LIVEKIT_SECRET


def _claims(token):
    return jwt.decode(token, LIVEKIT_SECRET, algorithms=["HS256"])


class TestInit:

    def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv("LIVEKIT_API_KEY", raising=False)
        monkeypatch.delenv("LIVEKIT_API_SECRET", raising=False)
        with pytest.raises(ValueError, match="credentials"):
            LiveKitProvider(url="wss://x")

    def test_credentials_from_env(self, monkeypatch):
        monkeypatch.setenv("LIVEKIT_API_KEY", "envkey")
        monkeypatch.setenv("LIVEKIT_API_SECRET", "envsecret")
        provider = LiveKitProvider()
        assert provider.api_key == "envkey"


class TestTokens:

    def test_token_claims(self, provider):
        claims = _claims(provider.create_token("room-1", "D1_doctor", name="Dr. Who"))
        assert claims["iss"] == LIVEKIT_KEY
        assert claims["sub"] == "D1_doctor"
        assert claims["name"] == "Dr. Who"
        assert claims["video"]["room"] == "room-1"
        assert claims["video"]["roomJoin"] is True
        assert claims["exp"] - claims["iat"] == provider.token_ttl

    def test_waiting_token_has_no_media_grants(self, provider):
        video = _claims(provider.create_waiting_token("room-1", "P1"))["video"]
        assert video["roomJoin"] is False
        assert video["canPublish"] is False
        assert video["canSubscribe"] is False

    def test_screen_share_token(self, provider):
        claims = _claims(provider.create_screen_share_token("room-1", "P1"))
        assert claims["sub"] == "P1_screen"
        assert claims["video"]["canSubscribe"] is False
        assert claims["video"]["canPublishSources"] == SCREEN_SHARE_SOURCES

    def test_custom_ttl(self, provider):
        claims = _claims(provider.create_token("room-1", "x", ttl=120))
        assert claims["exp"] - claims["iat"] == 120


class TestCreateSession:

    @pytest.mark.asyncio
    async def test_bundle(self, provider, appointment):
        bundle = await provider.create_session(appointment)
        assert bundle.third_party_session_id == "consultation-A1"
        assert set(bundle.participant_tokens) == {"D1", "P1"}
        assert _claims(bundle.participant_tokens["P1"])["sub"] == "P1_patient"
        assert bundle.ice_servers[0].urls == ["stun:stun.l.google.com:19302"]

    @pytest.mark.asyncio
    async def test_rooms_not_created_by_default(self, provider, appointment):
        with patch("videoconsult.video.provider.LiveKitAPI") as api_cls:
            await provider.create_session(appointment)
        api_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_room_created_when_enabled(self, appointment):
        provider = LiveKitProvider(url="wss://lk", api_key=LIVEKIT_KEY, api_secret=LIVEKIT_SECRET, create_rooms=True)
        lk = MagicMock()
        lk.room.create_room = AsyncMock(return_value=MagicMock(sid="RM_1"))
        lk.aclose = AsyncMock()

        with patch("videoconsult.video.provider.LiveKitAPI", return_value=lk):
            await provider.create_session(appointment)

        request = lk.room.create_room.call_args.args[0]
        assert request.name == "consultation-A1"
        lk.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_room_create_failure_still_issues_tokens(self):
        provider = LiveKitProvider(url="wss://lk", api_key=LIVEKIT_KEY, api_secret=LIVEKIT_SECRET, create_rooms=True)
        lk = MagicMock()
        lk.room.create_room = AsyncMock(side_effect=ConnectionError("refused"))
        lk.aclose = AsyncMock()

        with patch("videoconsult.video.provider.LiveKitAPI", return_value=lk):
            bundle = await provider.create_session(Appointment(appointment_id="A2", patient_id="P", doctor_id="D"))

        assert set(bundle.participant_tokens) == {"P", "D"}
        lk.aclose.assert_awaited_once()
