"""
Admission poller.

Re-fetches the session on a fixed interval until the patient is admitted,
the credential expires, the session is declared missing, or the owner
stops it. Only the newest poll's result is acted on.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Union

import structlog

from videoconsult.client.cache import FetchResult, FetchStatus, SessionObserver

logger = structlog.get_logger("client")

UpdateCallback = Callable[[FetchResult], Union[None, Awaitable[None]]]

TERMINAL_STATUSES = {FetchStatus.EXPIRED, FetchStatus.NO_SESSION}


class AdmissionPoller:
    """
    Cancellable polling loop around a SessionObserver.

    Usage::

        async with AdmissionPoller(observer, on_update=render) as poller:
            result = await poller.wait(timeout=600)
    """

    def __init__(
        self,
        observer: SessionObserver,
        interval: float = 3.0,
        max_errors: int = 3,
        stop_on_admission: bool = True,
        on_update: Optional[UpdateCallback] = None,
    ):
        """
        Args:
            observer: Session observer to poll through
            interval: Seconds between polls
            max_errors: Consecutive ERROR results before giving up
            stop_on_admission: Stop once ``waiting_room_enabled`` is False
            on_update: Called with every result that is not superseded
        """
        self.observer = observer
        self.interval = interval
        self.max_errors = max_errors
        self.stop_on_admission = stop_on_admission
        self.on_update = on_update

        self.final: Optional[FetchResult] = None
        self.last: Optional[FetchResult] = None
        self._seq = 0
        self._errors = 0
        self._task: Optional[asyncio.Task] = None
        self._done = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def __aenter__(self) -> "AdmissionPoller":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def start(self) -> None:
        if self.running:
            return
        self._done.clear()
        self.final = None
        self._task = asyncio.create_task(self._run())
        logger.debug("poller_started", appointment_id=self.observer.appointment_id, interval=self.interval)

    async def stop(self) -> None:
        """Cancel the loop; an in-flight poll's result is discarded."""
        self._seq += 1
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._done.set()
        logger.debug("poller_stopped", appointment_id=self.observer.appointment_id)

    async def wait(self, timeout: Optional[float] = None) -> Optional[FetchResult]:
        """Block until the poller finishes; returns the final result."""
        await asyncio.wait_for(self._done.wait(), timeout)
        return self.final

    async def poll_now(self) -> Optional[FetchResult]:
        """Poll immediately; any poll still in flight becomes superseded."""
        return await self._poll_once()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        try:
            while not self._done.is_set():
                try:
                    await self._poll_once()
                except Exception as exc:
                    logger.error(
                        "poller_crashed",
                        appointment_id=self.observer.appointment_id,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    self._finish(self.last, reason="crashed")
                    break
                if self._done.is_set():
                    break
                await asyncio.sleep(self.interval)
        finally:
            # wait() must never outlive the task
            self._done.set()

    async def _poll_once(self) -> Optional[FetchResult]:
        self._seq += 1
        seq = self._seq
        try:
            result = await self.observer.refresh()
        except Exception as exc:
            # Malformed bodies and the like surface as ordinary ERROR polls
            logger.error(
                "poll_failed",
                appointment_id=self.observer.appointment_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            result = FetchResult(
                FetchStatus.ERROR,
                session=self.observer.session,
                message=str(exc),
                from_cache=True,
            )
        if seq != self._seq or self._done.is_set():
            logger.debug("poll_result_superseded", appointment_id=self.observer.appointment_id, seq=seq)
            return None

        self.last = result
        if self.on_update is not None:
            outcome = self.on_update(result)
            if asyncio.iscoroutine(outcome):
                await outcome

        if result.status in TERMINAL_STATUSES:
            self._finish(result, reason=result.status.value)
        elif result.status == FetchStatus.ERROR:
            self._errors += 1
            if self._errors >= self.max_errors:
                self._finish(result, reason="too_many_errors")
        else:
            self._errors = 0
            if self.stop_on_admission and result.status == FetchStatus.OK and result.admitted:
                self._finish(result, reason="admitted")
        return result

    def _finish(self, result: Optional[FetchResult], reason: str) -> None:
        self.final = result
        self._done.set()
        logger.info("poller_finished", appointment_id=self.observer.appointment_id, reason=reason)
