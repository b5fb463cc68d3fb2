"""
Pieces shared by the session store backends.

A store keeps exactly one VideoSession per appointment_id and exposes the
same async surface whatever the backend:

    get(appointment_id)                        -> VideoSession (SessionNotFoundError)
    insert_if_absent(session)                  -> (VideoSession, created)
    put(session)                               -> bool
    update_waiting_room(appointment_id, fn)    -> VideoSession
    update_screen_sharing(appointment_id, fn)  -> VideoSession
    update_recording(appointment_id, fn)       -> VideoSession
    delete(appointment_id)                     -> bool
    list_sessions()                            -> List[VideoSession]
"""

from typing import Callable, Dict, List, Tuple

from videoconsult.video.models import VideoSession, WaitingEntry, utcnow
from videoconsult.video.waiting_room import sync_waiting_flag

# Receives a private copy of the session and mutates it in place.
# Raising aborts the write.
Mutator = Callable[[VideoSession], None]


def diff_waiting_room(
    before: Dict[str, WaitingEntry],
    after: Dict[str, WaitingEntry],
) -> Tuple[Dict[str, WaitingEntry], List[str]]:
    """Per-participant changes between two waiting-room maps: (upserts, deletions)."""
    upserts = {pid: entry for pid, entry in after.items() if before.get(pid) != entry}
    deletions = [pid for pid in before if pid not in after]
    return upserts, deletions


def apply_mutation(
    session: VideoSession,
    mutator: Mutator,
    recompute_flag: bool,
) -> Tuple[VideoSession, Dict[str, WaitingEntry], List[str]]:
    """
    Run ``mutator`` on a copy of ``session`` and stamp the result.

    Returns the new session plus the waiting-room changes the backend has
    to write. ``session`` itself is left untouched so an exception from the
    mutator leaves nothing half-applied.
    """
    working = session.model_copy(deep=True)
    mutator(working)

    working.session_id = session.session_id
    working.appointment_id = session.appointment_id
    if recompute_flag:
        sync_waiting_flag(working)

    upserts, deletions = diff_waiting_room(session.waiting_room, working.waiting_room)
    working.version = session.version + 1
    working.updated_at = utcnow()
    return working, upserts, deletions


def session_document(session: VideoSession) -> dict:
    """Serializable session without the waiting room (stored per participant)."""
    return session.model_dump(mode="json", exclude={"waiting_room"})
