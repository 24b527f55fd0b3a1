"""
Terminal session manager

Keeps the execution unit (local shell process or remote shell channel) bound
to each client-chosen terminal session id. At most one unit is bound per id;
the bridge evicts the previous unit before starting a new one, and binding
still closes anything that raced in under the same id.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class TerminalSession:
    """One browser terminal and the unit executing it"""

    id: str
    unit: Any
    slot_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "connection_id": self.slot_id,
            "kind": "remote" if self.slot_id else "local",
            "created_at": self.created_at,
        }


class SessionManager:
    """Session id -> TerminalSession map"""

    def __init__(self):
        self.sessions: Dict[str, TerminalSession] = {}
        self._lock = asyncio.Lock()

    async def bind(self, session: TerminalSession):
        """Register a session, terminating whatever was bound to the same id."""
        async with self._lock:
            previous = self.sessions.get(session.id)
            self.sessions[session.id] = session

        if previous is not None and previous is not session:
            logger.info(f"Terminal session {session.id} superseded, closing previous shell")
            await previous.unit.close()

    async def evict(self, session_id: str) -> bool:
        """Terminate and unbind whatever is bound to ``session_id``."""
        async with self._lock:
            previous = self.sessions.pop(session_id, None)
        if previous is None:
            return False
        logger.info(f"Terminal session {session_id} superseded, closing previous shell")
        await previous.unit.close()
        return True

    async def release(self, session: TerminalSession):
        """Forget a session unless a newer one already took its id."""
        async with self._lock:
            if self.sessions.get(session.id) is session:
                del self.sessions[session.id]

    def get_session(self, session_id: str) -> Optional[TerminalSession]:
        return self.sessions.get(session_id)

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [session.to_dict() for session in list(self.sessions.values())]

    async def close_all(self):
        async with self._lock:
            sessions = list(self.sessions.values())
            self.sessions.clear()
        for session in sessions:
            try:
                await session.unit.close()
            except Exception as e:
                logger.error(f"Failed to close terminal session {session.id}: {e}")
