"""
Video session state machine.

The state is derived from session content rather than stored, so it can
never disagree with the waiting room. Screen sharing is an overlay and
does not appear here.
"""

from typing import Set

from .exceptions import InvalidTransitionError
from .models import SessionState, VideoSession
from .waiting_room import has_waiting_patients


# State machine: allowed transitions from each state
ALLOWED_TRANSITIONS: dict[SessionState, Set[SessionState]] = {
    SessionState.CREATED: {
        SessionState.WAITING,
        SessionState.ENDED,
    },
    SessionState.WAITING: {
        SessionState.ADMITTED,
        SessionState.ENDED,
    },
    SessionState.ADMITTED: {
        SessionState.ENDED,
    },
    SessionState.ENDED: set(),  # Terminal state
}


def derive_state(session: VideoSession) -> SessionState:
    """Compute the lifecycle state of ``session`` from its content."""
    if has_waiting_patients(session):
        return SessionState.WAITING
    if session.admitted and not session.connection_config.waiting_room_enabled:
        return SessionState.ADMITTED
    return SessionState.CREATED


def validate_transition(from_state: SessionState, to_state: SessionState) -> None:
    """
    Validate that a state change is allowed by the state machine.

    Staying in the same state is always allowed (idempotent retries).

    Raises:
        InvalidTransitionError: If transition is not allowed
    """
    if from_state == to_state:
        return
    allowed = ALLOWED_TRANSITIONS.get(from_state, set())
    if to_state not in allowed:
        raise InvalidTransitionError(
            f"Invalid transition: {from_state.value} -> {to_state.value}"
        )


def is_terminal(state: SessionState) -> bool:
    """True if ``state`` has no outgoing transitions."""
    return len(ALLOWED_TRANSITIONS.get(state, set())) == 0
