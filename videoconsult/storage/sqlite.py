"""
SQLiteSessionStore - SQLite-based persistence for video sessions.

Uses the standard library sqlite3 module. The session document lives in
``video_sessions`` (one row per appointment, enforced by the primary key);
waiting-room entries live in ``waiting_entries`` with one row per
participant so concurrent joins upsert their own rows instead of
replacing a shared map.

Blocking calls run in a worker thread via asyncio.to_thread; an RLock
serializes every read-modify-write on the shared connection.
"""

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import structlog

from videoconsult.storage.base import Mutator, apply_mutation, session_document
from videoconsult.video.exceptions import SessionNotFoundError
from videoconsult.video.models import VideoSession, WaitingEntry, utcnow

logger = structlog.get_logger("storage")


class SQLiteSessionStore:
    """
    Session store backed by SQLite.

    Thread-safe with check_same_thread=False and a re-entrant lock.
    """

    def __init__(self, db_path: str = "data/video_sessions.db"):
        """
        Args:
            db_path: Path to SQLite database file. Parent directories
                     are created automatically if they don't exist.
        """
        self.db_path = db_path

        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        # WAL for safe multi-process access
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

        logger.info("sqlite_store_initialized", db_path=db_path)

    def _create_tables(self):
        """Create tables if they don't exist."""
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS video_sessions (
                    appointment_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL UNIQUE,
                    patient_id TEXT NOT NULL,
                    doctor_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    connection_config TEXT NOT NULL,
                    participant_tokens TEXT NOT NULL DEFAULT '{}',
                    admitted TEXT NOT NULL DEFAULT '{}',
                    screen_sharing TEXT,
                    recording TEXT
                )
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS waiting_entries (
                    appointment_id TEXT NOT NULL,
                    participant_id TEXT NOT NULL,
                    display_name TEXT NOT NULL DEFAULT '',
                    waiting_since TEXT NOT NULL,
                    waiting_token TEXT,
                    PRIMARY KEY (appointment_id, participant_id)
                )
            """)
            self._conn.commit()

            # Migration: add recording column for existing DBs
            try:
                self._conn.execute("SELECT recording FROM video_sessions LIMIT 1")
            except sqlite3.OperationalError as e:
                if "no such column" in str(e).lower():
                    self._conn.execute("ALTER TABLE video_sessions ADD COLUMN recording TEXT")
                    self._conn.commit()
                    logger.info("migration_added_recording_column")
                else:
                    raise
        logger.debug("video_tables_ensured")

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _entry_from_row(row: sqlite3.Row) -> WaitingEntry:
        return WaitingEntry(
            participant_id=row["participant_id"],
            display_name=row["display_name"],
            waiting_since=datetime.fromisoformat(row["waiting_since"]),
            waiting_token=row["waiting_token"],
        )

    def _session_from_row(self, row: sqlite3.Row, entries: List[sqlite3.Row]) -> VideoSession:
        return VideoSession(
            session_id=row["session_id"],
            appointment_id=row["appointment_id"],
            patient_id=row["patient_id"],
            doctor_id=row["doctor_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            version=row["version"],
            connection_config=json.loads(row["connection_config"]),
            participant_tokens=json.loads(row["participant_tokens"]),
            admitted=json.loads(row["admitted"]),
            screen_sharing=json.loads(row["screen_sharing"]) if row["screen_sharing"] else None,
            recording=json.loads(row["recording"]) if row["recording"] else None,
            waiting_room={e["participant_id"]: self._entry_from_row(e) for e in entries},
        )

    @staticmethod
    def _row_values(session: VideoSession) -> dict:
        doc = session_document(session)
        return {
            "appointment_id": session.appointment_id,
            "session_id": session.session_id,
            "patient_id": session.patient_id,
            "doctor_id": session.doctor_id,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
            "version": session.version,
            "connection_config": json.dumps(doc["connection_config"], ensure_ascii=False),
            "participant_tokens": json.dumps(doc["participant_tokens"], ensure_ascii=False),
            "admitted": json.dumps(doc["admitted"], ensure_ascii=False),
            "screen_sharing": json.dumps(doc["screen_sharing"], ensure_ascii=False) if doc["screen_sharing"] else None,
            "recording": json.dumps(doc["recording"], ensure_ascii=False) if doc["recording"] else None,
        }

    # ------------------------------------------------------------------
    # Locked internals (run in worker threads)
    # ------------------------------------------------------------------

    def _get_locked(self, appointment_id: str) -> Optional[VideoSession]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM video_sessions WHERE appointment_id = ?",
                (appointment_id,),
            ).fetchone()
            if row is None:
                return None
            entries = self._conn.execute(
                "SELECT * FROM waiting_entries WHERE appointment_id = ?",
                (appointment_id,),
            ).fetchall()
        return self._session_from_row(row, entries)

    def _insert_locked(self, session: VideoSession) -> Tuple[VideoSession, bool]:
        values = self._row_values(session)
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO video_sessions (
                    appointment_id, session_id, patient_id, doctor_id,
                    created_at, updated_at, version, connection_config,
                    participant_tokens, admitted, screen_sharing, recording
                ) VALUES (
                    :appointment_id, :session_id, :patient_id, :doctor_id,
                    :created_at, :updated_at, :version, :connection_config,
                    :participant_tokens, :admitted, :screen_sharing, :recording
                )
                """,
                values,
            )
            self._conn.commit()
            if cursor.rowcount == 0:
                existing = self._get_locked(session.appointment_id)
                logger.info(
                    "session_insert_skipped_existing",
                    appointment_id=session.appointment_id,
                    session_id=existing.session_id if existing else None,
                )
                return existing, False

        logger.info("session_inserted", appointment_id=session.appointment_id, session_id=session.session_id)
        return session, True

    def _write_session_row_locked(self, session: VideoSession) -> int:
        values = self._row_values(session)
        cursor = self._conn.execute(
            """
            UPDATE video_sessions SET
                updated_at = :updated_at,
                version = :version,
                connection_config = :connection_config,
                participant_tokens = :participant_tokens,
                admitted = :admitted,
                screen_sharing = :screen_sharing,
                recording = :recording
            WHERE appointment_id = :appointment_id AND session_id = :session_id
            """,
            values,
        )
        return cursor.rowcount

    def _put_locked(self, session: VideoSession) -> bool:
        with self._lock:
            existing = self._get_locked(session.appointment_id)
            if existing is None:
                logger.warning("session_put_no_rows", appointment_id=session.appointment_id)
                return False
            session.version = existing.version + 1
            session.updated_at = utcnow()
            rowcount = self._write_session_row_locked(session)
            self._conn.commit()
        return rowcount > 0

    def _mutate_locked(self, appointment_id: str, mutator: Mutator, recompute_flag: bool) -> VideoSession:
        with self._lock:
            current = self._get_locked(appointment_id)
            if current is None:
                raise SessionNotFoundError(appointment_id)

            updated, upserts, deletions = apply_mutation(current, mutator, recompute_flag)

            try:
                for entry in upserts.values():
                    self._conn.execute(
                        """
                        INSERT INTO waiting_entries (
                            appointment_id, participant_id, display_name, waiting_since, waiting_token
                        ) VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT (appointment_id, participant_id) DO UPDATE SET
                            display_name = excluded.display_name,
                            waiting_since = excluded.waiting_since,
                            waiting_token = excluded.waiting_token
                        """,
                        (
                            appointment_id,
                            entry.participant_id,
                            entry.display_name,
                            entry.waiting_since.isoformat(),
                            entry.waiting_token,
                        ),
                    )
                for participant_id in deletions:
                    self._conn.execute(
                        "DELETE FROM waiting_entries WHERE appointment_id = ? AND participant_id = ?",
                        (appointment_id, participant_id),
                    )
                self._write_session_row_locked(updated)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise

        logger.debug(
            "session_mutated",
            appointment_id=appointment_id,
            version=updated.version,
            upserts=list(upserts),
            deletions=deletions,
        )
        return updated

    def _delete_locked(self, appointment_id: str) -> bool:
        with self._lock:
            self._conn.execute("DELETE FROM waiting_entries WHERE appointment_id = ?", (appointment_id,))
            cursor = self._conn.execute("DELETE FROM video_sessions WHERE appointment_id = ?", (appointment_id,))
            self._conn.commit()
        return cursor.rowcount > 0

    def _list_locked(self) -> List[VideoSession]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM video_sessions ORDER BY created_at DESC").fetchall()
            entries = self._conn.execute("SELECT * FROM waiting_entries").fetchall()
        by_appointment: Dict[str, List[sqlite3.Row]] = {}
        for entry in entries:
            by_appointment.setdefault(entry["appointment_id"], []).append(entry)
        return [self._session_from_row(row, by_appointment.get(row["appointment_id"], [])) for row in rows]

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def get(self, appointment_id: str) -> VideoSession:
        """Load the session for an appointment or raise SessionNotFoundError."""
        session = await asyncio.to_thread(self._get_locked, appointment_id)
        if session is None:
            logger.debug("session_not_found", appointment_id=appointment_id)
            raise SessionNotFoundError(appointment_id)
        return session

    async def insert_if_absent(self, session: VideoSession) -> Tuple[VideoSession, bool]:
        """Insert ``session`` unless one exists for the appointment; return (stored, created)."""
        return await asyncio.to_thread(self._insert_locked, session)

    async def put(self, session: VideoSession) -> bool:
        """Overwrite the non-waiting-room fields of an existing session."""
        return await asyncio.to_thread(self._put_locked, session)

    async def update_waiting_room(self, appointment_id: str, mutator: Mutator) -> VideoSession:
        """Atomic read-modify-write of the waiting room; recomputes waiting_room_enabled."""
        return await asyncio.to_thread(self._mutate_locked, appointment_id, mutator, True)

    async def update_screen_sharing(self, appointment_id: str, mutator: Mutator) -> VideoSession:
        """Atomic read-modify-write of the screen-sharing overlay."""
        return await asyncio.to_thread(self._mutate_locked, appointment_id, mutator, False)

    async def update_recording(self, appointment_id: str, mutator: Mutator) -> VideoSession:
        """Atomic read-modify-write of the recording reference."""
        return await asyncio.to_thread(self._mutate_locked, appointment_id, mutator, False)

    async def delete(self, appointment_id: str) -> bool:
        deleted = await asyncio.to_thread(self._delete_locked, appointment_id)
        if deleted:
            logger.info("session_deleted", appointment_id=appointment_id)
        return deleted

    async def list_sessions(self) -> List[VideoSession]:
        return await asyncio.to_thread(self._list_locked)

    async def close(self):
        """Close the SQLite connection."""
        with self._lock:
            self._conn.close()
        logger.info("sqlite_store_closed")
