"""
Custom exceptions for video session management.

Every error a caller can observe derives from VideoSessionError and carries
a ``kind`` (stable machine-readable name) and the HTTP ``status_code`` the
API layer answers with.
"""

from typing import List, Optional


class VideoSessionError(Exception):
    """Base exception for the video session subsystem."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str, appointment_id: Optional[str] = None):
        self.message = message
        self.appointment_id = appointment_id
        super().__init__(message)


class NotFoundError(VideoSessionError):
    kind = "not_found"
    status_code = 404
    resource = "resource"


class AppointmentNotFoundError(NotFoundError):
    resource = "appointment"

    def __init__(self, appointment_id: str):
        super().__init__("Appointment not found", appointment_id=appointment_id)


class SessionNotFoundError(NotFoundError):
    """
    No session exists yet for the appointment.

    Expected while the counterpart has not started the call; the client
    cache treats it as a neutral waiting state until the 404 streak
    threshold is crossed.
    """

    resource = "session"

    def __init__(self, appointment_id: str):
        super().__init__("No video session found for this appointment", appointment_id=appointment_id)


class WaitingEntryNotFoundError(NotFoundError):
    resource = "waiting_entry"

    def __init__(self, appointment_id: str, participant_id: Optional[str] = None):
        self.participant_id = participant_id
        detail = "Patient is not in the waiting room" if participant_id else "Nobody is in the waiting room"
        super().__init__(detail, appointment_id=appointment_id)


class ForbiddenError(VideoSessionError):
    kind = "forbidden"
    status_code = 403


class UnauthorizedError(VideoSessionError):
    kind = "unauthorized"
    status_code = 401

    def __init__(self, message: str = "Your session has expired. Please log in again."):
        super().__init__(message)


class AmbiguousAdmissionError(VideoSessionError):
    """Sentinel admission with more than one patient waiting."""

    kind = "ambiguous"
    status_code = 409

    def __init__(self, appointment_id: str, candidates: List[str]):
        self.candidates = candidates
        super().__init__(
            f"{len(candidates)} patients are waiting; specify which participant to admit",
            appointment_id=appointment_id,
        )


class ScreenShareConflictError(VideoSessionError):
    kind = "conflict"
    status_code = 409

    def __init__(self, appointment_id: str, active_participant_id: str):
        self.active_participant_id = active_participant_id
        super().__init__(
            f"Participant {active_participant_id} is already sharing their screen",
            appointment_id=appointment_id,
        )


class RateLimitedError(VideoSessionError):
    """Client-side only: the server was not contacted."""

    kind = "rate_limited"
    status_code = 429

    def __init__(self, retry_after_seconds: float):
        self.retry_after_seconds = retry_after_seconds
        super().__init__("Too many requests. Please try again in a moment.")


class StoreContentionError(VideoSessionError):
    """Optimistic write lost the race too many times in a row."""

    kind = "unavailable"
    status_code = 503

    def __init__(self, appointment_id: str, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"Session update did not settle after {attempts} attempts",
            appointment_id=appointment_id,
        )


class InvalidTransitionError(ValueError):
    """
    Raised when attempting an illegal session state transition.

    Example:
        >>> from videoconsult.video.models import SessionState
        >>> from videoconsult.video.status import validate_transition
        >>> validate_transition(SessionState.ADMITTED, SessionState.CREATED)
        InvalidTransitionError: Invalid transition: admitted -> created
    """
    pass
