"""
Video consultation sessions: models, state machine, waiting room and service.
"""

from videoconsult.video.exceptions import (
    AmbiguousAdmissionError,
    AppointmentNotFoundError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    RateLimitedError,
    ScreenShareConflictError,
    SessionNotFoundError,
    StoreContentionError,
    UnauthorizedError,
    VideoSessionError,
    WaitingEntryNotFoundError,
)
from videoconsult.video.models import (
    ADMIT_SENTINEL,
    Appointment,
    Caller,
    CallerRole,
    ConnectionConfig,
    IceServer,
    ParticipantRole,
    RecordingReference,
    ScreenSharingState,
    SessionState,
    VideoSession,
    WaitingEntry,
)
from videoconsult.video.service import VideoSessionService
from videoconsult.video.status import derive_state, validate_transition

__all__ = [
    "ADMIT_SENTINEL",
    "Appointment",
    "Caller",
    "CallerRole",
    "ConnectionConfig",
    "IceServer",
    "ParticipantRole",
    "RecordingReference",
    "ScreenSharingState",
    "SessionState",
    "VideoSession",
    "WaitingEntry",
    "VideoSessionService",
    "derive_state",
    "validate_transition",
    "VideoSessionError",
    "NotFoundError",
    "AppointmentNotFoundError",
    "SessionNotFoundError",
    "WaitingEntryNotFoundError",
    "ForbiddenError",
    "UnauthorizedError",
    "AmbiguousAdmissionError",
    "ScreenShareConflictError",
    "RateLimitedError",
    "StoreContentionError",
    "InvalidTransitionError",
]
