"""
Unit tests for the video session state machine.

Tests the SessionState enum, state derivation from session content and
transition validation.
"""

import pytest

from videoconsult.video.exceptions import InvalidTransitionError
from videoconsult.video.models import ConnectionConfig, SessionState, VideoSession, WaitingEntry
from videoconsult.video.status import ALLOWED_TRANSITIONS, derive_state, is_terminal, validate_transition


def _session(**overrides):
    defaults = dict(
        session_id="S1",
        appointment_id="A1",
        patient_id="P1",
        doctor_id="D1",
        connection_config=ConnectionConfig(third_party_session_id="consultation-A1"),
    )
    defaults.update(overrides)
    return VideoSession(**defaults)


class TestSessionStateEnum:

    def test_all_states_defined(self):
        assert SessionState.CREATED.value == "created"
        assert SessionState.WAITING.value == "waiting"
        assert SessionState.ADMITTED.value == "admitted"
        assert SessionState.ENDED.value == "ended"

    def test_enum_count(self):
        assert len(SessionState) == 4


class TestDeriveState:

    def test_new_session_is_created(self):
        assert derive_state(_session()) == SessionState.CREATED

    def test_patient_waiting(self):
        session = _session(waiting_room={"P1": WaitingEntry(participant_id="P1")})
        assert derive_state(session) == SessionState.WAITING

    def test_admitted_when_flag_down(self):
        session = _session(admitted={"P1": "2026-03-01T09:00:00+00:00"})
        session.connection_config.waiting_room_enabled = False
        assert derive_state(session) == SessionState.ADMITTED

    def test_admission_record_with_flag_up_is_not_admitted(self):
        session = _session(admitted={"P1": "2026-03-01T09:00:00+00:00"})
        assert derive_state(session) == SessionState.CREATED

    def test_doctor_entry_is_not_waiting(self):
        session = _session(waiting_room={"D1": WaitingEntry(participant_id="D1")})
        assert derive_state(session) == SessionState.CREATED


class TestStateMachine:

    def test_created_to_waiting_allowed(self):
        validate_transition(SessionState.CREATED, SessionState.WAITING)

    def test_waiting_to_admitted_allowed(self):
        validate_transition(SessionState.WAITING, SessionState.ADMITTED)

    def test_same_state_allowed(self):
        for state in SessionState:
            validate_transition(state, state)

    def test_created_to_admitted_rejected(self):
        with pytest.raises(InvalidTransitionError):
            validate_transition(SessionState.CREATED, SessionState.ADMITTED)

    def test_admitted_back_to_created_rejected(self):
        with pytest.raises(InvalidTransitionError, match="admitted -> created"):
            validate_transition(SessionState.ADMITTED, SessionState.CREATED)

    def test_ended_is_terminal(self):
        assert is_terminal(SessionState.ENDED)
        assert ALLOWED_TRANSITIONS[SessionState.ENDED] == set()
        with pytest.raises(InvalidTransitionError):
            validate_transition(SessionState.ENDED, SessionState.WAITING)

    @pytest.mark.parametrize("state", [SessionState.CREATED, SessionState.WAITING, SessionState.ADMITTED])
    def test_every_live_state_can_end(self, state):
        assert not is_terminal(state)
        validate_transition(state, SessionState.ENDED)

    def test_invalid_transition_is_value_error(self):
        assert issubclass(InvalidTransitionError, ValueError)
