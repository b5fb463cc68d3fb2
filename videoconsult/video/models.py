"""
Pydantic models for video consultation sessions.

VideoSession is the durable record of one consultation's connection state,
keyed by appointment. WaitingEntry and ScreenSharingState are the mutable
sub-parts that patients and doctors write during a call.
"""

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

# Admission request that does not name a participant
ADMIT_SENTINEL = "current"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallerRole(str, Enum):
    """Roles resolved from the caller's bearer credential."""
    ADMIN = "admin"
    DOCTOR = "doctor"
    PATIENT = "patient"


class ParticipantRole(IntEnum):
    """Numeric role carried in the connection config for the media client."""
    ADMIN = 0
    HOST = 1    # doctor
    GUEST = 2   # patient


class SessionState(str, Enum):
    """
    Derived lifecycle state of a session.

    Not persisted: computed from the waiting room and admission records.
    """
    CREATED = "created"     # Nobody waiting, nobody admitted yet
    WAITING = "waiting"     # At least one patient in the waiting room
    ADMITTED = "admitted"   # Waiting room closed after an admission
    ENDED = "ended"         # Appointment finished (implicit, never stored)


class Caller(BaseModel):
    """Resolved identity of the party making a request."""

    caller_id: str
    role: CallerRole

    @property
    def is_admin(self) -> bool:
        return self.role == CallerRole.ADMIN


class IceServer(BaseModel):
    urls: List[str]
    username: Optional[str] = None
    credential: Optional[str] = None


class ConnectionConfig(BaseModel):
    """Bundle needed to bootstrap the media provider's client."""

    third_party_session_id: str = Field(..., description="Provider room name")
    access_token: str = Field(default="", description="Caller-specific media token (empty in stored form)")
    ice_servers: List[IceServer] = Field(default_factory=list)
    role: int = Field(default=int(ParticipantRole.ADMIN), description="Numeric ParticipantRole of the caller")
    screen_sharing_enabled: bool = True
    recording_enabled: bool = False
    waiting_room_enabled: bool = True
    max_bitrate: int = 1_000_000
    max_framerate: int = 30


class WaitingEntry(BaseModel):
    """A patient waiting for admission."""

    participant_id: str
    display_name: str = ""
    waiting_since: datetime = Field(default_factory=utcnow)
    waiting_token: Optional[str] = Field(default=None, description="Limited token without media grants")


class ScreenSharingState(BaseModel):
    active: bool = False
    by_participant_id: Optional[str] = None
    started_at: Optional[datetime] = None
    share_token: Optional[str] = None


class RecordingReference(BaseModel):
    """Where the consultation recording was stored."""

    url: str = Field(..., min_length=1)
    saved_by: str
    saved_at: datetime = Field(default_factory=utcnow)


class VideoSession(BaseModel):
    """
    One video consultation bound to an appointment.

    ``participant_tokens`` holds the media token issued for each participant
    and never leaves the server: callers receive a projection built by
    :meth:`for_caller` with only their own token in ``connection_config``.
    """

    session_id: str
    appointment_id: str
    patient_id: str
    doctor_id: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=1, ge=0, description="Incremented on every persisted write")

    connection_config: ConnectionConfig
    participant_tokens: Dict[str, str] = Field(default_factory=dict)
    waiting_room: Dict[str, WaitingEntry] = Field(default_factory=dict)
    admitted: Dict[str, datetime] = Field(default_factory=dict)
    screen_sharing: Optional[ScreenSharingState] = None
    recording: Optional[RecordingReference] = None

    def is_participant(self, participant_id: str) -> bool:
        return participant_id in (self.patient_id, self.doctor_id)

    def is_admitted(self, participant_id: str) -> bool:
        """The doctor hosts the call and is always in; patients need admission."""
        return participant_id == self.doctor_id or participant_id in self.admitted

    def participant_role(self, caller: Caller) -> ParticipantRole:
        if caller.caller_id == self.doctor_id:
            return ParticipantRole.HOST
        if caller.caller_id == self.patient_id:
            return ParticipantRole.GUEST
        return ParticipantRole.ADMIN

    def for_caller(self, caller: Caller) -> "VideoSession":
        """Return a copy safe to hand to ``caller``."""
        view = self.model_copy(deep=True)
        view.connection_config.access_token = self.participant_tokens.get(caller.caller_id, "")
        view.connection_config.role = int(self.participant_role(caller))
        view.participant_tokens = {}
        for participant_id, entry in view.waiting_room.items():
            if participant_id != caller.caller_id:
                entry.waiting_token = None
        if view.screen_sharing and view.screen_sharing.by_participant_id != caller.caller_id:
            view.screen_sharing.share_token = None
        return view


class Appointment(BaseModel):
    """What the appointment collaborator tells us about an appointment."""

    appointment_id: str
    patient_id: str
    doctor_id: str
    status: str = "scheduled"

    @property
    def is_closed(self) -> bool:
        return self.status in ("cancelled", "completed")


class ProviderSession(BaseModel):
    """Token bundle returned by the communications provider."""

    third_party_session_id: str
    ice_servers: List[IceServer] = Field(default_factory=list)
    participant_tokens: Dict[str, str] = Field(default_factory=dict)
