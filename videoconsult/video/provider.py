"""
LiveKit provider.

Issues the access tokens and configuration a media client needs to join a
consultation room. Media transport itself is LiveKit's business; this
module only signs tokens and, optionally, pre-creates the room.
"""

import os
import time
from typing import Any, Dict, List, Optional

import jwt
import structlog
from livekit.api import CreateRoomRequest, LiveKitAPI

from videoconsult.video.models import Appointment, IceServer, ProviderSession

logger = structlog.get_logger("livekit")

SCREEN_SHARE_SOURCES = ["screen_share", "screen_share_audio"]


class LiveKitProvider:
    """
    Token-issuing client for LiveKit.

    Functions:
    - Access tokens for doctor and patient at session creation
    - Limited waiting-room tokens (no room join)
    - Fresh media token on admission
    - Screen-share tokens with a dedicated identity
    """

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        ice_servers: Optional[List[Dict[str, Any]]] = None,
        token_ttl: int = 3600,
        room_prefix: str = "consultation",
        create_rooms: bool = False,
    ):
        """
        Args:
            url: LiveKit server URL (wss://...)
            api_key: API key, signs tokens as issuer
            api_secret: API secret, HS256 signing key
            ice_servers: ICE server dicts handed to clients as-is
            token_ttl: Lifetime of participant tokens in seconds
            room_prefix: Prefix for room names derived from appointment ids
            create_rooms: Pre-create rooms through the server API
        """
        self.url = url or os.getenv("LIVEKIT_URL", "")
        self.api_key = api_key or os.getenv("LIVEKIT_API_KEY")
        self.api_secret = api_secret or os.getenv("LIVEKIT_API_SECRET")
        self.ice_servers = [IceServer(**s) for s in (ice_servers or [])]
        self.token_ttl = token_ttl
        self.room_prefix = room_prefix
        self.create_rooms = create_rooms

        if not all([self.api_key, self.api_secret]):
            raise ValueError("LiveKit credentials not configured")

    def create_token(
        self,
        room_name: str,
        identity: str,
        ttl: Optional[int] = None,
        room_join: bool = True,
        can_publish: bool = True,
        can_subscribe: bool = True,
        can_publish_sources: Optional[List[str]] = None,
        name: Optional[str] = None,
    ) -> str:
        """
        Create a JWT access token for a room.

        Args:
            room_name: Room name
            identity: Participant identity
            ttl: Lifetime in seconds (defaults to ``token_ttl``)
            room_join: Whether the token may join the room at all
            can_publish: May publish tracks
            can_subscribe: May subscribe to tracks
            can_publish_sources: Restrict publishable track sources
            name: Display name

        Returns:
            JWT token
        """
        now = int(time.time())
        exp = now + (ttl or self.token_ttl)

        video_grants: Dict[str, Any] = {
            "room": room_name,
            "roomJoin": room_join,
            "canPublish": can_publish and room_join,
            "canSubscribe": can_subscribe and room_join,
            "canPublishData": room_join,
        }
        if can_publish_sources:
            video_grants["canPublishSources"] = can_publish_sources

        payload = {
            "iss": self.api_key,
            "sub": identity,
            "iat": now,
            "exp": exp,
            "nbf": now,
            "video": video_grants,
            "metadata": "",
            "name": name or identity,
        }

        return jwt.encode(payload, self.api_secret, algorithm="HS256")

    def room_name_for(self, appointment_id: str) -> str:
        return f"{self.room_prefix}-{appointment_id}"

    async def create_session(self, appointment: Appointment) -> ProviderSession:
        """Issue the token bundle for a new consultation room."""
        room_name = self.room_name_for(appointment.appointment_id)

        if self.create_rooms:
            await self._ensure_room(room_name)

        tokens = {
            appointment.doctor_id: self.create_token(room_name, f"{appointment.doctor_id}_doctor"),
            appointment.patient_id: self.create_token(room_name, f"{appointment.patient_id}_patient"),
        }
        logger.info(
            "provider_session_issued",
            room_name=room_name,
            appointment_id=appointment.appointment_id,
            participants=len(tokens),
        )
        return ProviderSession(
            third_party_session_id=room_name,
            ice_servers=[s.model_copy() for s in self.ice_servers],
            participant_tokens=tokens,
        )

    def create_waiting_token(self, room_name: str, participant_id: str) -> str:
        """Token for presence in the waiting room; cannot join media."""
        return self.create_token(room_name, f"{participant_id}_waiting", room_join=False)

    def create_admission_token(self, room_name: str, participant_id: str) -> str:
        return self.create_token(room_name, f"{participant_id}_patient")

    def create_screen_share_token(self, room_name: str, participant_id: str) -> str:
        return self.create_token(
            room_name,
            f"{participant_id}_screen",
            can_subscribe=False,
            can_publish_sources=SCREEN_SHARE_SOURCES,
        )

    async def _ensure_room(self, room_name: str) -> None:
        """Create the room up front; LiveKit also creates it on first join."""
        lk_api = None
        try:
            lk_api = LiveKitAPI(url=self.url, api_key=self.api_key, api_secret=self.api_secret)
            room = await lk_api.room.create_room(CreateRoomRequest(name=room_name, empty_timeout=300))
            logger.info("room_created", room_name=room_name, room_sid=getattr(room, "sid", "unknown"))
        except Exception as exc:
            logger.warning(
                "room_create_failed",
                room_name=room_name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        finally:
            if lk_api:
                await lk_api.aclose()
