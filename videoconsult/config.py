"""
Runtime settings for the video consultation service.

Values come from environment variables (a local ``.env`` is loaded first)
and are validated by a pydantic model so that misconfiguration fails fast.

Usage:
    from videoconsult.config import get_settings
    settings = get_settings()
    print(settings.store_backend, settings.rate_limit_max_calls)
"""

import json
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

load_dotenv()

DEFAULT_ICE_SERVERS = [{"urls": ["stun:stun.l.google.com:19302"]}]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Validated service configuration."""

    # Session store
    store_backend: str = Field(default="sqlite", pattern=r"^(sqlite|redis)$")
    sqlite_path: str = Field(default="data/video_sessions.db")
    redis_url: str = Field(default="redis://localhost:6379/0")

    # LiveKit (communications provider)
    livekit_url: str = Field(default="")
    livekit_api_key: str = Field(default="")
    livekit_api_secret: str = Field(default="")
    livekit_create_rooms: bool = Field(default=False, description="Create rooms via the LiveKit server API")
    token_ttl_seconds: int = Field(default=3600, ge=60)
    ice_servers: List[Dict[str, Any]] = Field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    room_prefix: str = Field(default="consultation")
    recording_enabled: bool = False
    screen_sharing_enabled: bool = True
    max_bitrate: int = Field(default=1_000_000, ge=0)
    max_framerate: int = Field(default=30, ge=1)

    # Identity
    jwt_secret: str = Field(default="")
    jwt_algorithm: str = Field(default="HS256")

    # Appointments collaborator
    appointments_url: Optional[str] = None

    # Reaping
    session_ttl_hours: float = Field(default=24.0, gt=0)
    reap_interval_seconds: int = Field(default=300, ge=10)

    # Notifications
    notifications_config: str = Field(default="config/notifications.yaml")

    # Client
    rate_limit_max_calls: int = Field(default=3, ge=1)
    rate_limit_window_ms: int = Field(default=30_000, ge=1)
    not_found_threshold: int = Field(default=3, ge=1)
    poll_interval_seconds: float = Field(default=3.0, gt=0)

    @field_validator("ice_servers")
    @classmethod
    def require_urls(cls, v):
        for server in v:
            if "urls" not in server:
                raise ValueError("every ICE server needs 'urls'")
        return v

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""
        values: Dict[str, Any] = {
            "store_backend": os.getenv("VIDEO_STORE_BACKEND", "sqlite"),
            "sqlite_path": os.getenv("VIDEO_SQLITE_PATH", "data/video_sessions.db"),
            "redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            "livekit_url": os.getenv("LIVEKIT_URL", ""),
            "livekit_api_key": os.getenv("LIVEKIT_API_KEY", ""),
            "livekit_api_secret": os.getenv("LIVEKIT_API_SECRET", ""),
            "livekit_create_rooms": _env_bool("LIVEKIT_CREATE_ROOMS", False),
            "recording_enabled": _env_bool("VIDEO_RECORDING_ENABLED", False),
            "screen_sharing_enabled": _env_bool("VIDEO_SCREEN_SHARING_ENABLED", True),
            "jwt_secret": os.getenv("JWT_SECRET", ""),
            "jwt_algorithm": os.getenv("JWT_ALGORITHM", "HS256"),
            "appointments_url": os.getenv("APPOINTMENTS_URL") or None,
            "notifications_config": os.getenv("NOTIFICATIONS_CONFIG", "config/notifications.yaml"),
        }

        numeric = {
            "token_ttl_seconds": ("VIDEO_TOKEN_TTL_SECONDS", int),
            "max_bitrate": ("VIDEO_MAX_BITRATE", int),
            "max_framerate": ("VIDEO_MAX_FRAMERATE", int),
            "session_ttl_hours": ("VIDEO_SESSION_TTL_HOURS", float),
            "reap_interval_seconds": ("VIDEO_REAP_INTERVAL_SECONDS", int),
            "rate_limit_max_calls": ("VIDEO_CLIENT_MAX_CALLS", int),
            "rate_limit_window_ms": ("VIDEO_CLIENT_WINDOW_MS", int),
            "not_found_threshold": ("VIDEO_CLIENT_404_THRESHOLD", int),
            "poll_interval_seconds": ("VIDEO_CLIENT_POLL_SECONDS", float),
        }
        for field, (env_name, cast) in numeric.items():
            raw = os.getenv(env_name)
            if raw:
                values[field] = cast(raw)

        ice_raw = os.getenv("VIDEO_ICE_SERVERS")
        if ice_raw:
            values["ice_servers"] = json.loads(ice_raw)

        return cls(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings singleton."""
    return Settings.from_env()
