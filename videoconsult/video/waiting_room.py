"""
Waiting room tracker.

Functions over a session's waiting-room map. They never touch storage:
the store hands them a private copy inside its read-modify-write cycle,
which keeps admission policy testable on plain models.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .models import VideoSession, WaitingEntry


class Resolution(str, Enum):
    RESOLVED = "resolved"
    AMBIGUOUS = "ambiguous"
    EMPTY = "empty"


@dataclass
class SentinelResolution:
    outcome: Resolution
    participant_id: Optional[str] = None
    candidates: List[str] = field(default_factory=list)


def add(session: VideoSession, entry: WaitingEntry) -> VideoSession:
    """Insert or overwrite the entry for ``entry.participant_id`` (rejoin resets the wait)."""
    session.waiting_room[entry.participant_id] = entry
    return session


def remove(session: VideoSession, participant_id: str) -> Optional[WaitingEntry]:
    """Drop a participant from the waiting room, returning the removed entry."""
    return session.waiting_room.pop(participant_id, None)


def waiting_patients(session: VideoSession) -> List[WaitingEntry]:
    """Entries for everyone except the session's doctor, oldest first."""
    entries = [e for pid, e in session.waiting_room.items() if pid != session.doctor_id]
    return sorted(entries, key=lambda e: e.waiting_since)


def has_waiting_patients(session: VideoSession) -> bool:
    return any(pid != session.doctor_id for pid in session.waiting_room)


def resolve_sentinel(session: VideoSession) -> SentinelResolution:
    """
    Resolve an admission request that names no participant.

    Exactly one waiting patient resolves to that patient. With several
    waiting the request is ambiguous and nobody is picked.
    """
    candidates = [e.participant_id for e in waiting_patients(session)]
    if not candidates:
        return SentinelResolution(outcome=Resolution.EMPTY)
    if len(candidates) > 1:
        return SentinelResolution(outcome=Resolution.AMBIGUOUS, candidates=candidates)
    return SentinelResolution(
        outcome=Resolution.RESOLVED,
        participant_id=candidates[0],
        candidates=candidates,
    )


def sync_waiting_flag(session: VideoSession) -> VideoSession:
    """Recompute ``waiting_room_enabled`` from the current map contents."""
    session.connection_config.waiting_room_enabled = has_waiting_patients(session)
    return session
