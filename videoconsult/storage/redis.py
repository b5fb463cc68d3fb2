"""
Redis session store for multi-instance deployments.

Key layout:
    video:session:{appointment_id}   JSON session document (no waiting room)
    video:waiting:{appointment_id}   hash participant_id -> WaitingEntry JSON
    video:sessions                   set of appointment ids (for reaping)

Waiting entries are hash fields, so two patients joining at once touch
different fields. Read-modify-write cycles run as WATCH/MULTI optimistic
transactions and retry when another writer got there first.
"""

import json
from typing import List, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from redis.exceptions import WatchError

from videoconsult.storage.base import Mutator, apply_mutation, session_document
from videoconsult.video.exceptions import SessionNotFoundError, StoreContentionError
from videoconsult.video.models import VideoSession, WaitingEntry

logger = structlog.get_logger("storage")

SESSION_INDEX_KEY = "video:sessions"


class RedisSessionStore:
    """
    Session store backed by Redis.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        client: Optional[aioredis.Redis] = None,
        max_retries: int = 5,
    ):
        """
        Args:
            url: Redis connection URL
            client: Pre-built client (tests, shared pools)
            max_retries: Attempts per optimistic transaction before giving up
        """
        self.url = url
        self.max_retries = max_retries
        self.client = client or aioredis.from_url(url, decode_responses=True)

        logger.info("redis_store_initialized", url=url)

    @staticmethod
    def _session_key(appointment_id: str) -> str:
        return f"video:session:{appointment_id}"

    @staticmethod
    def _waiting_key(appointment_id: str) -> str:
        return f"video:waiting:{appointment_id}"

    @staticmethod
    def _decode(raw: str, entries: dict) -> VideoSession:
        data = json.loads(raw)
        data["waiting_room"] = {
            pid: WaitingEntry.model_validate_json(value) for pid, value in (entries or {}).items()
        }
        return VideoSession.model_validate(data)

    async def get(self, appointment_id: str) -> VideoSession:
        """Load the session for an appointment or raise SessionNotFoundError."""
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.get(self._session_key(appointment_id))
            pipe.hgetall(self._waiting_key(appointment_id))
            raw, entries = await pipe.execute()

        if raw is None:
            logger.debug("session_not_found", appointment_id=appointment_id)
            raise SessionNotFoundError(appointment_id)
        return self._decode(raw, entries)

    async def insert_if_absent(self, session: VideoSession) -> Tuple[VideoSession, bool]:
        """SET NX the session document; return the existing session when it was already there."""
        payload = json.dumps(session_document(session), ensure_ascii=False)
        created = await self.client.set(self._session_key(session.appointment_id), payload, nx=True)
        if not created:
            existing = await self.get(session.appointment_id)
            logger.info(
                "session_insert_skipped_existing",
                appointment_id=session.appointment_id,
                session_id=existing.session_id,
            )
            return existing, False

        await self.client.sadd(SESSION_INDEX_KEY, session.appointment_id)
        logger.info("session_inserted", appointment_id=session.appointment_id, session_id=session.session_id)
        return session, True

    async def put(self, session: VideoSession) -> bool:
        """Overwrite the non-waiting-room fields of an existing session."""

        def _replace(working: VideoSession) -> None:
            working.connection_config = session.connection_config.model_copy(deep=True)
            working.participant_tokens = dict(session.participant_tokens)
            working.admitted = dict(session.admitted)
            working.screen_sharing = session.screen_sharing.model_copy() if session.screen_sharing else None
            working.recording = session.recording.model_copy() if session.recording else None

        try:
            stored = await self._transact(session.appointment_id, _replace, recompute_flag=False)
        except SessionNotFoundError:
            logger.warning("session_put_no_rows", appointment_id=session.appointment_id)
            return False
        session.version = stored.version
        session.updated_at = stored.updated_at
        return True

    async def update_waiting_room(self, appointment_id: str, mutator: Mutator) -> VideoSession:
        """Atomic read-modify-write of the waiting room; recomputes waiting_room_enabled."""
        return await self._transact(appointment_id, mutator, recompute_flag=True)

    async def update_screen_sharing(self, appointment_id: str, mutator: Mutator) -> VideoSession:
        """Atomic read-modify-write of the screen-sharing overlay."""
        return await self._transact(appointment_id, mutator, recompute_flag=False)

    async def update_recording(self, appointment_id: str, mutator: Mutator) -> VideoSession:
        """Atomic read-modify-write of the recording reference."""
        return await self._transact(appointment_id, mutator, recompute_flag=False)

    async def _transact(self, appointment_id: str, mutator: Mutator, recompute_flag: bool) -> VideoSession:
        session_key = self._session_key(appointment_id)
        waiting_key = self._waiting_key(appointment_id)

        async with self.client.pipeline(transaction=True) as pipe:
            for attempt in range(1, self.max_retries + 1):
                try:
                    await pipe.watch(session_key, waiting_key)
                    raw = await pipe.get(session_key)
                    if raw is None:
                        raise SessionNotFoundError(appointment_id)
                    entries = await pipe.hgetall(waiting_key)

                    current = self._decode(raw, entries)
                    updated, upserts, deletions = apply_mutation(current, mutator, recompute_flag)

                    pipe.multi()
                    pipe.set(session_key, json.dumps(session_document(updated), ensure_ascii=False))
                    if upserts:
                        pipe.hset(
                            waiting_key,
                            mapping={pid: entry.model_dump_json() for pid, entry in upserts.items()},
                        )
                    if deletions:
                        pipe.hdel(waiting_key, *deletions)
                    await pipe.execute()

                    logger.debug(
                        "session_mutated",
                        appointment_id=appointment_id,
                        version=updated.version,
                        attempt=attempt,
                    )
                    return updated
                except WatchError:
                    logger.warning("session_write_contended", appointment_id=appointment_id, attempt=attempt)
                    continue

        raise StoreContentionError(appointment_id, self.max_retries)

    async def delete(self, appointment_id: str) -> bool:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(self._session_key(appointment_id), self._waiting_key(appointment_id))
            pipe.srem(SESSION_INDEX_KEY, appointment_id)
            removed, _ = await pipe.execute()
        if removed:
            logger.info("session_deleted", appointment_id=appointment_id)
        return bool(removed)

    async def list_sessions(self) -> List[VideoSession]:
        sessions = []
        for appointment_id in await self.client.smembers(SESSION_INDEX_KEY):
            try:
                sessions.append(await self.get(appointment_id))
            except SessionNotFoundError:
                await self.client.srem(SESSION_INDEX_KEY, appointment_id)
        return sessions

    async def health_check(self) -> bool:
        """Check the Redis connection."""
        try:
            await self.client.ping()
            return True
        except aioredis.RedisError as e:
            logger.error("redis_health_check_failed", error=str(e))
            return False

    async def close(self):
        await self.client.aclose()
        logger.info("redis_store_closed")
