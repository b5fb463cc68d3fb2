"""
HTTP client for the video session API.

Thin wrapper over httpx.AsyncClient that turns error responses back into
the exceptions the server raised, so callers handle the same taxonomy on
both sides of the wire.
"""

from typing import List, Optional, Tuple, Union

import httpx
import structlog

from videoconsult.video.exceptions import (
    AmbiguousAdmissionError,
    AppointmentNotFoundError,
    ForbiddenError,
    NotFoundError,
    ScreenShareConflictError,
    SessionNotFoundError,
    StoreContentionError,
    UnauthorizedError,
    WaitingEntryNotFoundError,
)
from videoconsult.video.models import ADMIT_SENTINEL, ScreenSharingState, VideoSession, WaitingEntry

logger = structlog.get_logger("client")

API_PREFIX = "/api/v1/video"


class VideoSessionClient:
    """
    Async client for ``/api/v1/video``.

    Usage::

        async with VideoSessionClient("https://api.example.com", token) as api:
            session = await api.get_session("apt-1")
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {token}"},
        )

    async def __aenter__(self) -> "VideoSessionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_session(self, appointment_id: str) -> Tuple[VideoSession, bool]:
        """Returns (session, created)."""
        resp = await self._http.post(f"{API_PREFIX}/session", json={"appointment_id": appointment_id})
        self._raise_for_error(resp, appointment_id)
        return VideoSession.model_validate(resp.json()), resp.status_code == 201

    async def get_session(self, appointment_id: str) -> VideoSession:
        resp = await self._http.get(f"{API_PREFIX}/session/{appointment_id}")
        self._raise_for_error(resp, appointment_id)
        return VideoSession.model_validate(resp.json())

    async def join_waiting_room(self, appointment_id: str, display_name: str = "") -> Union[WaitingEntry, VideoSession]:
        resp = await self._http.post(
            f"{API_PREFIX}/session/{appointment_id}/waiting-room",
            json={"display_name": display_name},
        )
        self._raise_for_error(resp, appointment_id)
        data = resp.json()
        if data.get("admitted"):
            return VideoSession.model_validate(data["session"])
        return WaitingEntry.model_validate(data["waiting_entry"])

    async def list_waiting(self, appointment_id: str) -> List[WaitingEntry]:
        resp = await self._http.get(f"{API_PREFIX}/session/{appointment_id}/waiting-room")
        self._raise_for_error(resp, appointment_id)
        return [WaitingEntry.model_validate(e) for e in resp.json()["waiting"]]

    async def admit(self, appointment_id: str, participant_id: str = ADMIT_SENTINEL) -> VideoSession:
        resp = await self._http.post(f"{API_PREFIX}/session/{appointment_id}/admit/{participant_id}")
        self._raise_for_error(resp, appointment_id)
        return VideoSession.model_validate(resp.json())

    async def toggle_screen_sharing(self, appointment_id: str) -> ScreenSharingState:
        resp = await self._http.post(f"{API_PREFIX}/session/{appointment_id}/screen-sharing")
        self._raise_for_error(resp, appointment_id)
        return ScreenSharingState.model_validate(resp.json())

    async def save_recording(self, appointment_id: str, recording_url: str) -> VideoSession:
        resp = await self._http.post(
            f"{API_PREFIX}/session/{appointment_id}/recording",
            json={"recording_url": recording_url},
        )
        self._raise_for_error(resp, appointment_id)
        return VideoSession.model_validate(resp.json())

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _raise_for_error(resp: httpx.Response, appointment_id: str) -> None:
        if resp.status_code < 400:
            return

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        detail = body.get("detail") if isinstance(body.get("detail"), str) else resp.reason_phrase
        kind = body.get("error")

        logger.debug("api_error_response", status=resp.status_code, error=kind, appointment_id=appointment_id)

        if resp.status_code == 401:
            raise UnauthorizedError()
        if resp.status_code == 403:
            raise ForbiddenError(detail, appointment_id=appointment_id)
        if resp.status_code == 404:
            resource = body.get("resource")
            if resource == "session":
                raise SessionNotFoundError(appointment_id)
            if resource == "appointment":
                raise AppointmentNotFoundError(appointment_id)
            if resource == "waiting_entry":
                raise WaitingEntryNotFoundError(appointment_id)
            raise NotFoundError(detail, appointment_id=appointment_id)
        if resp.status_code == 409 and kind == "ambiguous":
            raise AmbiguousAdmissionError(appointment_id, body.get("candidates", []))
        if resp.status_code == 409 and kind == "conflict":
            raise ScreenShareConflictError(appointment_id, body.get("active_participant_id", ""))
        if resp.status_code == 503 and kind == "unavailable":
            raise StoreContentionError(appointment_id, attempts=0)
        resp.raise_for_status()
