"""
VideoSessionService - server-side operations on video consultation sessions.

Enforces who may do what and which state changes are legal; all writes go
through the session store's atomic mutators so the waiting-room flag is
always recomputed from the stored map.
"""

import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple, Union

import httpx
import structlog

from videoconsult.video import waiting_room
from videoconsult.video.exceptions import (
    AmbiguousAdmissionError,
    AppointmentNotFoundError,
    ForbiddenError,
    ScreenShareConflictError,
    SessionNotFoundError,
    WaitingEntryNotFoundError,
)
from videoconsult.video.models import (
    ADMIT_SENTINEL,
    Appointment,
    Caller,
    CallerRole,
    ConnectionConfig,
    RecordingReference,
    ScreenSharingState,
    VideoSession,
    WaitingEntry,
    utcnow,
)
from videoconsult.video.status import derive_state, validate_transition

logger = structlog.get_logger("session")


class VideoSessionService:
    """
    Create, read and transition video sessions.

    Collaborators:
        store: session store (SQLiteSessionStore / RedisSessionStore)
        appointments: appointment directory with ``async get(appointment_id)``
        provider: LiveKitProvider issuing media tokens
        notifier: NotificationManager, optional
    """

    def __init__(
        self,
        store,
        appointments,
        provider,
        notifier=None,
        screen_sharing_enabled: bool = True,
        recording_enabled: bool = False,
        max_bitrate: int = 1_000_000,
        max_framerate: int = 30,
        session_ttl_hours: float = 24.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.appointments = appointments
        self.provider = provider
        self.notifier = notifier
        self.screen_sharing_enabled = screen_sharing_enabled
        self.recording_enabled = recording_enabled
        self.max_bitrate = max_bitrate
        self.max_framerate = max_framerate
        self.session_ttl = timedelta(hours=session_ttl_hours)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, store, appointments, provider, notifier=None) -> "VideoSessionService":
        return cls(
            store=store,
            appointments=appointments,
            provider=provider,
            notifier=notifier,
            screen_sharing_enabled=settings.screen_sharing_enabled,
            recording_enabled=settings.recording_enabled,
            max_bitrate=settings.max_bitrate,
            max_framerate=settings.max_framerate,
            session_ttl_hours=settings.session_ttl_hours,
        )

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    async def create_session(self, appointment_id: str, caller: Caller) -> VideoSession:
        """Create the session for an appointment, or return the existing one."""
        session, _ = await self.ensure_session(appointment_id, caller)
        return session

    async def ensure_session(self, appointment_id: str, caller: Caller) -> Tuple[VideoSession, bool]:
        """
        Idempotent create.

        Returns:
            (caller's projection of the session, True if this call created it)

        Raises:
            AppointmentNotFoundError: Unknown appointment
            ForbiddenError: Caller is neither participant nor admin
        """
        appointment = await self._authorize(appointment_id, caller)

        try:
            existing = await self.store.get(appointment_id)
            logger.info("session_exists", appointment_id=appointment_id, session_id=existing.session_id)
            return existing.for_caller(caller), False
        except SessionNotFoundError:
            pass

        bundle = await self.provider.create_session(appointment)
        now = self._clock()
        session = VideoSession(
            session_id=str(uuid.uuid4()),
            appointment_id=appointment_id,
            patient_id=appointment.patient_id,
            doctor_id=appointment.doctor_id,
            created_at=now,
            updated_at=now,
            connection_config=ConnectionConfig(
                third_party_session_id=bundle.third_party_session_id,
                ice_servers=bundle.ice_servers,
                screen_sharing_enabled=self.screen_sharing_enabled,
                recording_enabled=self.recording_enabled,
                waiting_room_enabled=True,
                max_bitrate=self.max_bitrate,
                max_framerate=self.max_framerate,
            ),
            participant_tokens=bundle.participant_tokens,
        )

        stored, created = await self.store.insert_if_absent(session)
        if created:
            logger.info(
                "session_created",
                appointment_id=appointment_id,
                session_id=stored.session_id,
                caller_id=caller.caller_id,
                room=stored.connection_config.third_party_session_id,
            )
            self._notify("created", stored)
        else:
            logger.info("session_create_lost_race", appointment_id=appointment_id, session_id=stored.session_id)
        return stored.for_caller(caller), created

    async def get_session(self, appointment_id: str, caller: Caller) -> VideoSession:
        """
        Read the caller's view of a session.

        The caller's right to the appointment is checked before the store is
        read, so only participants ever see SessionNotFoundError. For them
        it is the normal case while the counterpart has not started the call.
        """
        await self._authorize(appointment_id, caller)
        session = await self.store.get(appointment_id)
        self._require_participant(session, caller)
        return session.for_caller(caller)

    # ------------------------------------------------------------------
    # Waiting room
    # ------------------------------------------------------------------

    async def join_waiting_room(
        self,
        appointment_id: str,
        caller: Caller,
        display_name: str = "",
    ) -> Union[WaitingEntry, VideoSession]:
        """
        Put the patient into the waiting room (rejoin resets ``waiting_since``).

        Returns the patient's WaitingEntry, or the session itself when the
        patient has already been admitted (retry after own success).
        """
        if caller.role != CallerRole.PATIENT:
            raise ForbiddenError("Only patients can join the waiting room", appointment_id=appointment_id)

        await self._authorize(appointment_id, caller)
        session = await self.store.get(appointment_id)
        if caller.caller_id != session.patient_id:
            raise ForbiddenError("Not a participant of this session", appointment_id=appointment_id)

        if session.is_admitted(caller.caller_id):
            logger.info("waiting_room_join_already_admitted", appointment_id=appointment_id, participant_id=caller.caller_id)
            return session.for_caller(caller)

        room = session.connection_config.third_party_session_id
        entry = WaitingEntry(
            participant_id=caller.caller_id,
            display_name=display_name or caller.caller_id,
            waiting_since=self._clock(),
            waiting_token=self.provider.create_waiting_token(room, caller.caller_id),
        )

        def _join(s: VideoSession) -> None:
            # Admission may have landed between our read and this write.
            if s.is_admitted(entry.participant_id):
                return
            before = derive_state(s)
            waiting_room.add(s, entry)
            validate_transition(before, derive_state(s))

        updated = await self.store.update_waiting_room(appointment_id, _join)

        if updated.is_admitted(caller.caller_id):
            return updated.for_caller(caller)

        logger.info(
            "waiting_room_joined",
            appointment_id=appointment_id,
            participant_id=caller.caller_id,
            waiting=len(updated.waiting_room),
        )
        return updated.waiting_room[caller.caller_id]

    async def list_waiting(self, appointment_id: str, caller: Caller) -> List[WaitingEntry]:
        """Waiting patients, oldest first, for the session's doctor or an admin."""
        session = await self.store.get(appointment_id)
        self._require_host(session, caller)
        return [
            entry.model_copy(update={"waiting_token": None})
            for entry in waiting_room.waiting_patients(session)
        ]

    async def admit_participant(self, appointment_id: str, participant_id: str, caller: Caller) -> VideoSession:
        """
        Admit a waiting patient.

        ``participant_id`` may be ADMIT_SENTINEL to admit whoever is waiting
        when exactly one patient is.

        Raises:
            ForbiddenError: Caller is not this session's doctor or an admin
            AmbiguousAdmissionError: Sentinel with several patients waiting
            WaitingEntryNotFoundError: Nobody (or not that patient) waiting
        """
        if caller.role not in (CallerRole.DOCTOR, CallerRole.ADMIN):
            raise ForbiddenError("Only doctors can admit participants", appointment_id=appointment_id)

        session = await self.store.get(appointment_id)
        self._require_host(session, caller)

        room = session.connection_config.third_party_session_id
        admitted_ids: List[str] = []

        def _admit(s: VideoSession) -> None:
            if participant_id == ADMIT_SENTINEL:
                resolution = waiting_room.resolve_sentinel(s)
                if resolution.outcome == waiting_room.Resolution.AMBIGUOUS:
                    raise AmbiguousAdmissionError(appointment_id, resolution.candidates)
                if resolution.outcome == waiting_room.Resolution.EMPTY:
                    raise WaitingEntryNotFoundError(appointment_id)
                target = resolution.participant_id
            else:
                target = participant_id
                if target == s.doctor_id or target not in s.waiting_room:
                    raise WaitingEntryNotFoundError(appointment_id, target)

            before = derive_state(s)
            waiting_room.remove(s, target)
            s.admitted[target] = self._clock()
            s.participant_tokens[target] = self.provider.create_admission_token(room, target)
            waiting_room.sync_waiting_flag(s)
            validate_transition(before, derive_state(s))
            admitted_ids.append(target)

        try:
            updated = await self.store.update_waiting_room(appointment_id, _admit)
        except AmbiguousAdmissionError as exc:
            logger.info("admission_ambiguous", appointment_id=appointment_id, candidates=exc.candidates)
            raise

        target = admitted_ids[-1]
        logger.info(
            "participant_admitted",
            appointment_id=appointment_id,
            participant_id=target,
            by=caller.caller_id,
            sentinel=participant_id == ADMIT_SENTINEL,
            waiting_room_enabled=updated.connection_config.waiting_room_enabled,
        )
        self._notify("admitted", updated, participant_id=target)
        return updated.for_caller(caller)

    # ------------------------------------------------------------------
    # Screen sharing
    # ------------------------------------------------------------------

    async def toggle_screen_sharing(self, appointment_id: str, caller: Caller) -> ScreenSharingState:
        """
        Start sharing, or stop if the caller is the current sharer.

        Raises:
            ForbiddenError: Sharing disabled, or caller not admitted
            ScreenShareConflictError: Someone else is sharing
        """
        session = await self.store.get(appointment_id)
        if not session.is_participant(caller.caller_id):
            raise ForbiddenError("Not a participant of this session", appointment_id=appointment_id)
        if not session.connection_config.screen_sharing_enabled:
            raise ForbiddenError("Screen sharing is disabled for this session", appointment_id=appointment_id)

        room = session.connection_config.third_party_session_id
        sharer = caller.caller_id

        def _toggle(s: VideoSession) -> None:
            current = s.screen_sharing
            if current is not None and current.active:
                if current.by_participant_id != sharer:
                    raise ScreenShareConflictError(appointment_id, current.by_participant_id)
                s.screen_sharing = ScreenSharingState(active=False)
                return
            if not s.is_admitted(sharer):
                raise ForbiddenError("Only admitted participants can share their screen", appointment_id=appointment_id)
            s.screen_sharing = ScreenSharingState(
                active=True,
                by_participant_id=sharer,
                started_at=self._clock(),
                share_token=self.provider.create_screen_share_token(room, sharer),
            )

        try:
            updated = await self.store.update_screen_sharing(appointment_id, _toggle)
        except ScreenShareConflictError as exc:
            logger.info(
                "screen_share_conflict",
                appointment_id=appointment_id,
                participant_id=sharer,
                active_participant_id=exc.active_participant_id,
            )
            raise

        state = updated.for_caller(caller).screen_sharing
        logger.info(
            "screen_share_started" if state.active else "screen_share_stopped",
            appointment_id=appointment_id,
            participant_id=sharer,
        )
        return state

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def save_recording(self, appointment_id: str, caller: Caller, recording_url: str) -> VideoSession:
        """
        Attach a recording reference to the session; saving again replaces it.

        Raises:
            ForbiddenError: Caller is not this session's doctor or an admin,
                or recording is disabled for the session
        """
        if caller.role not in (CallerRole.DOCTOR, CallerRole.ADMIN):
            raise ForbiddenError("Only doctors can save recordings", appointment_id=appointment_id)

        await self._authorize(appointment_id, caller)
        session = await self.store.get(appointment_id)
        self._require_host(session, caller)
        if not session.connection_config.recording_enabled:
            raise ForbiddenError("Recording is disabled for this session", appointment_id=appointment_id)

        reference = RecordingReference(url=recording_url, saved_by=caller.caller_id, saved_at=self._clock())

        def _attach(s: VideoSession) -> None:
            s.recording = reference

        updated = await self.store.update_recording(appointment_id, _attach)
        logger.info(
            "recording_saved",
            appointment_id=appointment_id,
            session_id=updated.session_id,
            by=caller.caller_id,
        )
        return updated.for_caller(caller)

    # ------------------------------------------------------------------
    # Reaping
    # ------------------------------------------------------------------

    async def find_reapable(self, now: Optional[datetime] = None) -> List[Tuple[VideoSession, str]]:
        """
        Sessions due for deletion with the reason: appointment gone,
        cancelled or completed, or the session outlived the TTL.
        """
        now = now or self._clock()
        cutoff = now - self.session_ttl
        due: List[Tuple[VideoSession, str]] = []

        for session in await self.store.list_sessions():
            try:
                appointment = await self.appointments.get(session.appointment_id)
            except httpx.HTTPError as exc:
                logger.warning("reap_lookup_failed", appointment_id=session.appointment_id, error=str(exc))
                continue

            if appointment is None:
                due.append((session, "appointment_missing"))
            elif appointment.is_closed:
                due.append((session, f"appointment_{appointment.status}"))
            elif session.created_at < cutoff:
                due.append((session, "expired"))

        return due

    async def reap_sessions(self, now: Optional[datetime] = None) -> List[str]:
        """
        Delete every session :meth:`find_reapable` reports.

        Returns:
            Appointment ids whose sessions were deleted
        """
        reaped: List[str] = []
        for session, reason in await self.find_reapable(now):
            if await self.store.delete(session.appointment_id):
                logger.info(
                    "session_reaped",
                    appointment_id=session.appointment_id,
                    session_id=session.session_id,
                    reason=reason,
                )
                reaped.append(session.appointment_id)
        return reaped

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _authorize(self, appointment_id: str, caller: Caller) -> Appointment:
        """Load the appointment and check the caller may act on it."""
        appointment = await self.appointments.get(appointment_id)
        if appointment is None:
            logger.warning("session_no_appointment", appointment_id=appointment_id)
            raise AppointmentNotFoundError(appointment_id)

        if not caller.is_admin and caller.caller_id not in (appointment.patient_id, appointment.doctor_id):
            logger.warning(
                "appointment_access_forbidden",
                appointment_id=appointment_id,
                caller_id=caller.caller_id,
            )
            raise ForbiddenError("Not authorized to access this appointment", appointment_id=appointment_id)
        return appointment

    @staticmethod
    def _require_participant(session: VideoSession, caller: Caller) -> None:
        if caller.is_admin or session.is_participant(caller.caller_id):
            return
        logger.warning("session_access_forbidden", appointment_id=session.appointment_id, caller_id=caller.caller_id)
        raise ForbiddenError("Not a participant of this session", appointment_id=session.appointment_id)

    @staticmethod
    def _require_host(session: VideoSession, caller: Caller) -> None:
        if caller.is_admin or (caller.role == CallerRole.DOCTOR and caller.caller_id == session.doctor_id):
            return
        logger.warning("session_host_forbidden", appointment_id=session.appointment_id, caller_id=caller.caller_id)
        raise ForbiddenError("Only the session's doctor can manage the waiting room", appointment_id=session.appointment_id)

    def _notify(self, event_type: str, session: VideoSession, **extra) -> None:
        if self.notifier is not None:
            self.notifier.notify(event_type, session, **extra)
