"""
FastAPI web server for video consultation sessions.

Endpoints:
    API - Video sessions (bearer token required):
        POST /api/v1/video/session                                  - Create session (201 new, 200 existing)
        GET  /api/v1/video/session/{appointment_id}                 - Get caller's view of the session
        POST /api/v1/video/session/{appointment_id}/waiting-room    - Patient joins the waiting room
        GET  /api/v1/video/session/{appointment_id}/waiting-room    - Doctor lists waiting patients
        POST /api/v1/video/session/{appointment_id}/admit/{participant_id}
                                                                    - Admit a patient ("current" = whoever waits)
        POST /api/v1/video/session/{appointment_id}/screen-sharing  - Start/stop screen sharing
        POST /api/v1/video/session/{appointment_id}/recording       - Doctor saves a recording reference

    Service:
        GET  /health                                                - Liveness
"""

import asyncio
import uuid as _uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.middleware.base import BaseHTTPMiddleware

from videoconsult.logging_config import setup_logging

setup_logging("server")

import structlog

from videoconsult import __version__
from videoconsult.appointments import create_appointment_directory
from videoconsult.auth import IdentityResolver, parse_bearer
from videoconsult.config import get_settings
from videoconsult.notifications import NotificationManager
from videoconsult.storage import create_session_store
from videoconsult.video.exceptions import (
    AmbiguousAdmissionError,
    NotFoundError,
    ScreenShareConflictError,
    SessionNotFoundError,
    VideoSessionError,
)
from videoconsult.video.models import Caller, VideoSession
from videoconsult.video.provider import LiveKitProvider
from videoconsult.video.service import VideoSessionService

logger = structlog.get_logger("server")

API_PREFIX = "/api/v1/video"

# Singletons; built on first use so tests can swap them in beforehand
video_service: Optional[VideoSessionService] = None
identity: Optional[IdentityResolver] = None

_background_tasks: set = set()


def _track_task(task):
    """Keep a reference to a background task to prevent GC."""
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


def _build_service() -> VideoSessionService:
    settings = get_settings()
    provider = LiveKitProvider(
        url=settings.livekit_url,
        api_key=settings.livekit_api_key,
        api_secret=settings.livekit_api_secret,
        ice_servers=settings.ice_servers,
        token_ttl=settings.token_ttl_seconds,
        room_prefix=settings.room_prefix,
        create_rooms=settings.livekit_create_rooms,
    )
    return VideoSessionService.from_settings(
        settings,
        store=create_session_store(settings),
        appointments=create_appointment_directory(settings),
        provider=provider,
        notifier=NotificationManager(settings.notifications_config),
    )


def get_service() -> VideoSessionService:
    global video_service
    if video_service is None:
        video_service = _build_service()
    return video_service


def get_identity() -> IdentityResolver:
    global identity
    if identity is None:
        settings = get_settings()
        identity = IdentityResolver(settings.jwt_secret, settings.jwt_algorithm)
    return identity


async def current_caller(authorization: Optional[str] = Header(default=None)) -> Caller:
    """Resolve the bearer credential to the calling user."""
    return get_identity().resolve(parse_bearer(authorization))


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(application: FastAPI):
    """Startup/shutdown: build the service and run the reap loop."""
    settings = get_settings()
    service = get_service()
    logger.info("server_starting", store_backend=settings.store_backend, version=__version__)

    async def _cleanup_loop():
        try:
            while True:
                await asyncio.sleep(settings.reap_interval_seconds)
                try:
                    reaped = await service.reap_sessions()
                    if reaped:
                        logger.info("sessions_reaped", count=len(reaped))
                except Exception as exc:
                    logger.error("reap_failed", error=str(exc), error_type=type(exc).__name__)
        except asyncio.CancelledError:
            pass  # Graceful shutdown

    _cleanup_task = asyncio.create_task(_cleanup_loop())
    _track_task(_cleanup_task)

    yield  # --- App running ---

    if not _cleanup_task.done():
        _cleanup_task.cancel()
        try:
            await _cleanup_task
        except asyncio.CancelledError:
            pass
    if service.notifier is not None:
        await service.notifier.drain()
    try:
        await service.store.close()
        logger.info("session_store_closed")
    except Exception as e:
        logger.warning("shutdown_close_failed", error=str(e))
    logger.info("server_shutdown_complete")


app = FastAPI(title="Video Consultation Sessions", version=__version__, lifespan=_lifespan)


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(_uuid.uuid4())[:12]
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        return response


app.add_middleware(RequestIDMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.exception_handler(VideoSessionError)
async def _video_error_handler(request: Request, exc: VideoSessionError):
    body = {"detail": exc.message, "error": exc.kind}
    if isinstance(exc, NotFoundError):
        body["resource"] = exc.resource
    elif isinstance(exc, AmbiguousAdmissionError):
        body["candidates"] = exc.candidates
    elif isinstance(exc, ScreenShareConflictError):
        body["active_participant_id"] = exc.active_participant_id

    # Pre-creation 404s are the normal polling case
    if isinstance(exc, SessionNotFoundError):
        logger.debug("api_session_not_found", path=request.url.path)
    elif exc.status_code >= 500:
        logger.error("api_error", path=request.url.path, error=exc.kind, detail=exc.message)
    else:
        logger.info("api_rejected", path=request.url.path, error=exc.kind, status=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=body)


# ---------------------------------------------------------------------------
# Pydantic request models
# ---------------------------------------------------------------------------


class CreateVideoSessionRequest(BaseModel):
    """Body for POST /session; accepts ``appointmentId`` as well."""
    model_config = ConfigDict(populate_by_name=True)

    appointment_id: str = Field(..., min_length=1, max_length=128, alias="appointmentId")


class JoinWaitingRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    display_name: str = Field(default="", max_length=200, alias="displayName")


class SaveRecordingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    recording_url: str = Field(..., min_length=1, max_length=2048, alias="recordingUrl")


def _session_body(session: VideoSession) -> dict:
    return session.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}


@app.post(f"{API_PREFIX}/session")
async def create_video_session(
    req: CreateVideoSessionRequest,
    caller: Caller = Depends(current_caller),
):
    session, created = await get_service().ensure_session(req.appointment_id, caller)
    return JSONResponse(status_code=201 if created else 200, content=_session_body(session))


@app.get(f"{API_PREFIX}/session/{{appointment_id}}")
async def get_video_session(appointment_id: str, caller: Caller = Depends(current_caller)):
    session = await get_service().get_session(appointment_id, caller)
    return _session_body(session)


@app.post(f"{API_PREFIX}/session/{{appointment_id}}/waiting-room")
async def join_waiting_room(
    appointment_id: str,
    req: Optional[JoinWaitingRoomRequest] = None,
    caller: Caller = Depends(current_caller),
):
    display_name = req.display_name if req else ""
    result = await get_service().join_waiting_room(appointment_id, caller, display_name)
    if isinstance(result, VideoSession):
        return {"admitted": True, "session": _session_body(result)}
    return {"admitted": False, "waiting_entry": result.model_dump(mode="json")}


@app.get(f"{API_PREFIX}/session/{{appointment_id}}/waiting-room")
async def list_waiting_room(appointment_id: str, caller: Caller = Depends(current_caller)):
    entries = await get_service().list_waiting(appointment_id, caller)
    return {"waiting": [e.model_dump(mode="json") for e in entries]}


@app.post(f"{API_PREFIX}/session/{{appointment_id}}/admit/{{participant_id}}")
async def admit_participant(
    appointment_id: str,
    participant_id: str,
    caller: Caller = Depends(current_caller),
):
    session = await get_service().admit_participant(appointment_id, participant_id, caller)
    return _session_body(session)


@app.post(f"{API_PREFIX}/session/{{appointment_id}}/screen-sharing")
async def toggle_screen_sharing(appointment_id: str, caller: Caller = Depends(current_caller)):
    state = await get_service().toggle_screen_sharing(appointment_id, caller)
    return state.model_dump(mode="json")


@app.post(f"{API_PREFIX}/session/{{appointment_id}}/recording")
async def save_recording(
    appointment_id: str,
    req: SaveRecordingRequest,
    caller: Caller = Depends(current_caller),
):
    session = await get_service().save_recording(appointment_id, caller, req.recording_url)
    return _session_body(session)
