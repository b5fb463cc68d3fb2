"""Client library: API wrapper, rate limiter, session cache and admission poller."""

from videoconsult.client.api import VideoSessionClient
from videoconsult.client.cache import FetchResult, FetchStatus, SessionObserver
from videoconsult.client.poller import AdmissionPoller
from videoconsult.client.rate_limiter import FixedWindowRateLimiter

__all__ = [
    "VideoSessionClient",
    "SessionObserver",
    "FetchResult",
    "FetchStatus",
    "AdmissionPoller",
    "FixedWindowRateLimiter",
]
