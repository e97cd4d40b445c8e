"""
Session Registry: the single source of truth for which sessions are alive.
"""

from typing import Dict, List, Optional, Set

from chatwarden.logger import get_logger
from chatwarden.session.record import SessionRecord

logger = get_logger(__name__)


class SessionRegistry:
    """
    Owns every Session Record in the process.
    Injected into the controller and the dispatcher instead of a global map.
    """

    def __init__(self):
        self.sessions: Dict[str, SessionRecord] = {}
        self._terminated: Set[str] = set()

    def register(self, record: SessionRecord) -> None:
        logger.info(f"Registering session {record.session_id} ({record.storage_key})")
        self.sessions[record.session_id] = record

    def unregister(self, session_id: str, terminated: bool = True) -> Optional[SessionRecord]:
        """
        Remove a session. Terminated ids are remembered so they are never reused.
        """
        record = self.sessions.pop(session_id, None)
        if terminated:
            self._terminated.add(session_id)
        if record:
            logger.info(f"Unregistered session {session_id} ({record.storage_key})")
        return record

    def get(self, session_id: str) -> Optional[SessionRecord]:
        return self.sessions.get(session_id)

    def find_by_storage_key(self, storage_key: str) -> Optional[SessionRecord]:
        return next(
            (r for r in self.sessions.values() if r.storage_key == storage_key), None
        )

    def is_terminated(self, session_id: str) -> bool:
        return session_id in self._terminated

    def list_sessions(self) -> List[dict]:
        return [record.to_dict() for record in self.sessions.values()]

    def __len__(self) -> int:
        return len(self.sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self.sessions

    @property
    def live_count(self) -> int:
        return sum(1 for r in self.sessions.values() if r.is_live)
