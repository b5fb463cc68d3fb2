"""
Unit tests for RedisSessionStore.

Uses a small in-memory stand-in for the redis.asyncio client that models
the parts the store relies on: WATCH puts the pipeline in immediate mode,
MULTI starts buffering, EXECUTE applies the buffer (or raises WatchError
when a test asks it to).
"""

import json
import sys
import os
from datetime import datetime, timezone
from unittest.mock import AsyncMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import pytest
from redis.exceptions import RedisError, WatchError

from videoconsult.storage.redis import SESSION_INDEX_KEY, RedisSessionStore
from videoconsult.video import waiting_room
from videoconsult.video.exceptions import SessionNotFoundError, StoreContentionError
from videoconsult.video.models import ConnectionConfig, RecordingReference, VideoSession, WaitingEntry

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# In-memory client
# ---------------------------------------------------------------------------

async def _value(v):
    return v


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.immediate = False
        self.buffer = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def watch(self, *keys):
        self.immediate = True

    def multi(self):
        self.immediate = False

    def _command(self, name, *args, **kwargs):
        if self.immediate:
            return _value(getattr(self.redis, "_" + name)(*args, **kwargs))
        self.buffer.append((name, args, kwargs))
        return self

    def get(self, key):
        return self._command("get", key)

    def hgetall(self, key):
        return self._command("hgetall", key)

    def set(self, key, value, nx=False):
        return self._command("set", key, value, nx=nx)

    def hset(self, key, mapping):
        return self._command("hset", key, mapping=mapping)

    def hdel(self, key, *fields):
        return self._command("hdel", key, *fields)

    def delete(self, *keys):
        return self._command("delete", *keys)

    def srem(self, key, *members):
        return self._command("srem", key, *members)

    async def execute(self):
        buffered, self.buffer = self.buffer, []
        if self.redis.conflicts > 0:
            self.redis.conflicts -= 1
            raise WatchError("watched key changed")
        return [getattr(self.redis, "_" + name)(*args, **kwargs) for name, args, kwargs in buffered]


class FakeRedis:
    def __init__(self):
        self.kv = {}
        self.hashes = {}
        self.sets = {}
        self.conflicts = 0
        self.closed = False

    # sync primitives
    def _get(self, key):
        return self.kv.get(key)

    def _hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def _set(self, key, value, nx=False):
        if nx and key in self.kv:
            return None
        self.kv[key] = value
        return True

    def _hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update(mapping)
        return len(mapping)

    def _hdel(self, key, *fields):
        h = self.hashes.get(key, {})
        return sum(1 for f in fields if h.pop(f, None) is not None)

    def _delete(self, *keys):
        removed = 0
        for key in keys:
            if self.kv.pop(key, None) is not None or self.hashes.pop(key, None) is not None:
                removed += 1
        return removed

    def _srem(self, key, *members):
        s = self.sets.get(key, set())
        count = len(s & set(members))
        s.difference_update(members)
        return count

    # async client surface
    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def set(self, key, value, nx=False):
        return self._set(key, value, nx=nx)

    async def sadd(self, key, *members):
        self.sets.setdefault(key, set()).update(members)
        return len(members)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def srem(self, key, *members):
        return self._srem(key, *members)

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


def _session(session_id="S1"):
    return VideoSession(
        session_id=session_id,
        appointment_id="A1",
        patient_id="P1",
        doctor_id="D1",
        created_at=T0,
        updated_at=T0,
        connection_config=ConnectionConfig(third_party_session_id="consultation-A1"),
        participant_tokens={"P1": "tok-p", "D1": "tok-d"},
    )


def _joiner(pid):
    return lambda s: waiting_room.add(s, WaitingEntry(participant_id=pid, display_name=pid, waiting_since=T0))


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_store(fake_redis):
    return RedisSessionStore(client=fake_redis, max_retries=3)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestKeys:

    def test_key_format(self):
        assert RedisSessionStore._session_key("A1") == "video:session:A1"
        assert RedisSessionStore._waiting_key("A1") == "video:waiting:A1"


class TestInsert:

    @pytest.mark.asyncio
    async def test_insert_indexes_session(self, redis_store, fake_redis):
        stored, created = await redis_store.insert_if_absent(_session())
        assert created is True
        assert fake_redis.sets[SESSION_INDEX_KEY] == {"A1"}

        doc = json.loads(fake_redis.kv["video:session:A1"])
        assert "waiting_room" not in doc
        assert doc["session_id"] == "S1"

    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, redis_store):
        await redis_store.insert_if_absent(_session("S1"))
        stored, created = await redis_store.insert_if_absent(_session("S2"))
        assert created is False
        assert stored.session_id == "S1"

    @pytest.mark.asyncio
    async def test_get_missing_raises(self, redis_store):
        with pytest.raises(SessionNotFoundError):
            await redis_store.get("A1")


class TestWaitingRoomWrites:

    @pytest.mark.asyncio
    async def test_entries_are_hash_fields(self, redis_store, fake_redis):
        await redis_store.insert_if_absent(_session())
        await redis_store.update_waiting_room("A1", _joiner("P1"))
        await redis_store.update_waiting_room("A1", _joiner("P2"))

        assert set(fake_redis.hashes["video:waiting:A1"]) == {"P1", "P2"}
        loaded = await redis_store.get("A1")
        assert set(loaded.waiting_room) == {"P1", "P2"}
        assert loaded.connection_config.waiting_room_enabled is True
        assert loaded.version == 3

    @pytest.mark.asyncio
    async def test_removal_deletes_field_and_drops_flag(self, redis_store, fake_redis):
        await redis_store.insert_if_absent(_session())
        await redis_store.update_waiting_room("A1", _joiner("P1"))
        updated = await redis_store.update_waiting_room("A1", lambda s: waiting_room.remove(s, "P1"))

        assert fake_redis.hashes["video:waiting:A1"] == {}
        assert updated.connection_config.waiting_room_enabled is False

    @pytest.mark.asyncio
    async def test_retries_after_watch_conflict(self, redis_store, fake_redis):
        await redis_store.insert_if_absent(_session())
        fake_redis.conflicts = 2

        updated = await redis_store.update_waiting_room("A1", _joiner("P1"))
        assert "P1" in updated.waiting_room
        assert "P1" in fake_redis.hashes["video:waiting:A1"]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, redis_store, fake_redis):
        await redis_store.insert_if_absent(_session())
        fake_redis.conflicts = 10

        with pytest.raises(StoreContentionError) as exc_info:
            await redis_store.update_waiting_room("A1", _joiner("P1"))
        assert exc_info.value.attempts == 3
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, redis_store):
        with pytest.raises(SessionNotFoundError):
            await redis_store.update_waiting_room("A1", _joiner("P1"))

    @pytest.mark.asyncio
    async def test_recording_stored_in_document(self, redis_store, fake_redis):
        await redis_store.insert_if_absent(_session())
        await redis_store.update_waiting_room("A1", _joiner("P1"))

        def _attach(s):
            s.recording = RecordingReference(url="https://rec.example.com/A1.mp4", saved_by="D1", saved_at=T0)

        await redis_store.update_recording("A1", _attach)

        doc = json.loads(fake_redis.kv["video:session:A1"])
        assert doc["recording"]["url"] == "https://rec.example.com/A1.mp4"
        loaded = await redis_store.get("A1")
        assert loaded.recording.saved_by == "D1"
        assert set(loaded.waiting_room) == {"P1"}


class TestDeleteListHealth:

    @pytest.mark.asyncio
    async def test_delete_and_list(self, redis_store, fake_redis):
        await redis_store.insert_if_absent(_session())
        assert [s.appointment_id for s in await redis_store.list_sessions()] == ["A1"]

        assert await redis_store.delete("A1") is True
        assert await redis_store.list_sessions() == []
        assert fake_redis.sets[SESSION_INDEX_KEY] == set()

    @pytest.mark.asyncio
    async def test_list_prunes_dangling_index_entries(self, redis_store, fake_redis):
        fake_redis.sets[SESSION_INDEX_KEY] = {"ghost"}
        assert await redis_store.list_sessions() == []
        assert fake_redis.sets[SESSION_INDEX_KEY] == set()

    @pytest.mark.asyncio
    async def test_health_check(self, redis_store, fake_redis):
        assert await redis_store.health_check() is True
        fake_redis.ping = AsyncMock(side_effect=RedisError("down"))
        assert await redis_store.health_check() is False

    @pytest.mark.asyncio
    async def test_close(self, redis_store, fake_redis):
        await redis_store.close()
        assert fake_redis.closed is True
