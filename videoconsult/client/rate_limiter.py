"""
Fixed-window rate limiter for session polling.

Each observer key gets its own ``(count, window_start)`` pair, so watching
several appointments at once never shares a quota.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict

import structlog

from videoconsult.video.exceptions import RateLimitedError

logger = structlog.get_logger("client")


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass
class WindowState:
    count: int = 0
    window_start: float = 0.0


class FixedWindowRateLimiter:
    """
    At most ``max_calls`` per ``window_ms`` for each key.

    A call that arrives after the window has elapsed starts a new window
    with count 1.
    """

    def __init__(
        self,
        max_calls: int = 3,
        window_ms: int = 30_000,
        clock: Callable[[], float] = monotonic_ms,
    ):
        """
        Args:
            max_calls: Calls allowed per window
            window_ms: Window length in milliseconds
            clock: Millisecond clock (injectable for tests)
        """
        self.max_calls = max_calls
        self.window_ms = window_ms
        self._clock = clock
        self._windows: Dict[str, WindowState] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, key: str) -> bool:
        """Count a call for ``key``; False when the window is exhausted."""
        async with self._lock:
            now = self._clock()
            state = self._windows.get(key)

            if state is None or now - state.window_start >= self.window_ms:
                self._windows[key] = WindowState(count=1, window_start=now)
                return True

            if state.count < self.max_calls:
                state.count += 1
                return True

            logger.debug(
                "rate_limit_hit",
                key=key,
                count=state.count,
                retry_after_ms=round(self.window_ms - (now - state.window_start)),
            )
            return False

    async def acquire(self, key: str) -> None:
        """Like :meth:`try_acquire` but raises RateLimitedError when refused."""
        if not await self.try_acquire(key):
            raise RateLimitedError(self.retry_after(key))

    def retry_after(self, key: str) -> float:
        """Seconds until ``key`` gets a fresh window (0 if it already may call)."""
        state = self._windows.get(key)
        if state is None or state.count < self.max_calls:
            return 0.0
        remaining = self.window_ms - (self._clock() - state.window_start)
        return max(0.0, remaining / 1000.0)

    def count(self, key: str) -> int:
        state = self._windows.get(key)
        return state.count if state else 0

    def reset(self, key: str) -> None:
        self._windows.pop(key, None)
