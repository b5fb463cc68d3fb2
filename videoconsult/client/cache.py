"""
Client-side session cache.

SessionObserver watches one appointment's session for one user. It keeps a
single authoritative snapshot and only replaces it with a snapshot of equal
or higher server ``version``, so a slow fetch that started before an
admission can never bring back the pre-admission state. Versions only
order snapshots of the same session: a different ``session_id`` means the
session was deleted and created again, and always replaces the slot.
Clearing the cache (credential expired) bumps an epoch; results of fetches
started before the clear are dropped.

Outcomes are reported as FetchResult rather than exceptions because most
of them (not created yet, rate limited) are normal states a UI shows.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx
import structlog

from videoconsult.client.rate_limiter import FixedWindowRateLimiter
from videoconsult.video.exceptions import SessionNotFoundError, UnauthorizedError, VideoSessionError
from videoconsult.video.models import ADMIT_SENTINEL, VideoSession

logger = structlog.get_logger("client")

RATE_LIMITED_MESSAGE = "Too many requests. Please try again in a moment."
NO_SESSION_MESSAGE = "No video session is available. The doctor may not have started the call yet."
EXPIRED_MESSAGE = "Your session has expired. Please log in again."


class FetchStatus(str, Enum):
    OK = "ok"                       # Fresh or cached session available
    PENDING = "pending"             # Not created yet, keep polling quietly
    RATE_LIMITED = "rate_limited"   # Nothing cached and quota used up
    NO_SESSION = "no_session"       # 404 streak crossed the threshold
    EXPIRED = "expired"             # Credential rejected, cache cleared
    ERROR = "error"                 # Anything else


@dataclass
class FetchResult:
    status: FetchStatus
    session: Optional[VideoSession] = None
    message: Optional[str] = None
    from_cache: bool = False
    retry_after: Optional[float] = None

    @property
    def admitted(self) -> bool:
        """True once the waiting room flag has gone down."""
        return self.session is not None and not self.session.connection_config.waiting_room_enabled


class SessionObserver:
    """
    Cached, throttled view of one appointment's session.

    Usage::

        observer = SessionObserver(api, "apt-1")
        result = await observer.refresh()
        if result.status == FetchStatus.PENDING:
            ...  # show "waiting for the doctor"
    """

    def __init__(
        self,
        api,
        appointment_id: str,
        limiter: Optional[FixedWindowRateLimiter] = None,
        not_found_threshold: int = 3,
        caller_id: Optional[str] = None,
    ):
        """
        Args:
            api: VideoSessionClient (or anything with the same coroutines)
            appointment_id: Appointment being watched
            limiter: Limiter, may be shared; counters are per limiter key
            not_found_threshold: Consecutive 404s before NO_SESSION
            caller_id: User the observer polls for. Observers of the same
                appointment for different users get separate quotas on a
                shared limiter; without it the key is the appointment alone.
        """
        self.api = api
        self.appointment_id = appointment_id
        self.caller_id = caller_id
        self.limiter_key = f"{caller_id}:{appointment_id}" if caller_id else appointment_id
        self.limiter = limiter or FixedWindowRateLimiter()
        self.not_found_threshold = not_found_threshold

        self._session: Optional[VideoSession] = None
        self._not_found_streak = 0
        self._epoch = 0
        self._lock = asyncio.Lock()

    @property
    def session(self) -> Optional[VideoSession]:
        return self._session

    @property
    def not_found_streak(self) -> int:
        return self._not_found_streak

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def refresh(self, force: bool = False) -> FetchResult:
        """
        Fetch the session, subject to the rate limiter.

        ``force`` skips the limiter and does not count against the quota;
        it is reserved for confirming fetches after a write.
        """
        if not force and not await self.limiter.try_acquire(self.limiter_key):
            return self._rate_limited()

        epoch = self._epoch
        try:
            incoming = await self.api.get_session(self.appointment_id)
        except UnauthorizedError:
            return self._expired()
        except SessionNotFoundError:
            return self._not_found()
        except VideoSessionError as exc:
            logger.warning("session_fetch_failed", appointment_id=self.appointment_id, error=exc.kind)
            return FetchResult(FetchStatus.ERROR, session=self._session, message=exc.message, from_cache=True)
        except httpx.HTTPError as exc:
            logger.warning("session_fetch_failed", appointment_id=self.appointment_id, error=str(exc))
            return FetchResult(FetchStatus.ERROR, session=self._session, message=str(exc), from_cache=True)

        self._not_found_streak = 0
        applied = await self._apply(incoming, epoch)
        return FetchResult(FetchStatus.OK, session=self._session, from_cache=not applied)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self) -> FetchResult:
        """Create (or fetch the existing) session; not rate limited."""
        epoch = self._epoch
        try:
            session, _ = await self.api.create_session(self.appointment_id)
        except UnauthorizedError:
            return self._expired()
        self._not_found_streak = 0
        await self._apply(session, epoch)
        return FetchResult(FetchStatus.OK, session=self._session)

    async def admit(self, participant_id: str = ADMIT_SENTINEL) -> FetchResult:
        """
        Admit a waiting patient, then confirm with a re-fetch.

        The cache is updated twice: optimistically from the admission
        response, then from the confirming fetch. AmbiguousAdmissionError
        and other refusals propagate so the caller can ask which patient.
        """
        epoch = self._epoch
        try:
            admitted = await self.api.admit(self.appointment_id, participant_id)
        except UnauthorizedError:
            return self._expired()

        await self._apply_optimistic(admitted, epoch)
        confirmed = await self.refresh(force=True)
        if confirmed.status == FetchStatus.EXPIRED:
            return confirmed
        return FetchResult(FetchStatus.OK, session=self._session, from_cache=confirmed.from_cache)

    def clear(self) -> None:
        """Drop cached state, counters and the rate limit window."""
        self._session = None
        self._not_found_streak = 0
        self._epoch += 1
        self.limiter.reset(self.limiter_key)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _apply(self, incoming: VideoSession, epoch: int) -> bool:
        """Install ``incoming`` unless it is older than the slot or predates a clear."""
        async with self._lock:
            if epoch != self._epoch:
                logger.debug("session_result_dropped", appointment_id=self.appointment_id, reason="cleared")
                return False
            current = self._session
            if current is not None and incoming.session_id != current.session_id:
                logger.info(
                    "session_replaced",
                    appointment_id=self.appointment_id,
                    old_session_id=current.session_id,
                    new_session_id=incoming.session_id,
                )
                self._session = incoming
                return True
            if current is not None and incoming.version < current.version:
                logger.debug(
                    "session_result_dropped",
                    appointment_id=self.appointment_id,
                    reason="stale",
                    incoming_version=incoming.version,
                    current_version=current.version,
                )
                return False
            self._session = incoming
            return True

    async def _apply_optimistic(self, admitted: VideoSession, epoch: int) -> None:
        async with self._lock:
            if epoch != self._epoch:
                return
            base = self._session
            if base is None or base.session_id != admitted.session_id:
                base = admitted
            view = base.model_copy(deep=True)
            view.version = max(base.version, admitted.version)
            view.waiting_room = dict(admitted.waiting_room)
            view.admitted = dict(admitted.admitted)
            view.connection_config.waiting_room_enabled = admitted.connection_config.waiting_room_enabled
            self._session = view
        logger.debug(
            "session_optimistic_admit",
            appointment_id=self.appointment_id,
            version=view.version,
            waiting_room_enabled=view.connection_config.waiting_room_enabled,
        )

    def _rate_limited(self) -> FetchResult:
        retry_after = self.limiter.retry_after(self.limiter_key)
        if self._session is not None:
            return FetchResult(FetchStatus.OK, session=self._session, from_cache=True, retry_after=retry_after)
        return FetchResult(FetchStatus.RATE_LIMITED, message=RATE_LIMITED_MESSAGE, retry_after=retry_after)

    def _not_found(self) -> FetchResult:
        self._not_found_streak += 1
        if self._not_found_streak >= self.not_found_threshold:
            logger.info("session_not_found_escalated", appointment_id=self.appointment_id, streak=self._not_found_streak)
            return FetchResult(FetchStatus.NO_SESSION, session=self._session, message=NO_SESSION_MESSAGE, from_cache=True)
        return FetchResult(FetchStatus.PENDING, session=self._session, from_cache=True)

    def _expired(self) -> FetchResult:
        logger.info("session_credential_expired", appointment_id=self.appointment_id)
        self.clear()
        return FetchResult(FetchStatus.EXPIRED, message=EXPIRED_MESSAGE)
