"""
Session State Store
Holds at most one active SessionState per contact and the per-contact locks
that serialize message handling.
"""
import asyncio
from typing import Optional, Dict, List

# Utils
from utils.log_utils import LogUtil

# Models
from models.session_state import SessionState


class SessionStore:
    def __init__(self, log_util: LogUtil):
        self.log_util = log_util
        self._sessions: Dict[str, SessionState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, contact_id: str) -> Optional[SessionState]:
        return self._sessions.get(contact_id)

    def has(self, contact_id: str) -> bool:
        return contact_id in self._sessions

    def save(self, session: SessionState) -> SessionState:
        """Create or replace the session of session.contact_id."""
        self._sessions[session.contact_id] = session
        return session

    def delete(self, contact_id: str) -> bool:
        removed = self._sessions.pop(contact_id, None)
        if removed is not None:
            self.log_util.info(
                service_name="SessionStore",
                message=f"[SESSION] Cleared session for {contact_id} (flow={removed.flow_slug or removed.flow_id})"
            )
        return removed is not None

    def lock_for(self, contact_id: str) -> asyncio.Lock:
        lock = self._locks.get(contact_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[contact_id] = lock
        return lock

    def active_count(self) -> int:
        return len(self._sessions)

    def contact_ids(self) -> List[str]:
        return list(self._sessions.keys())
