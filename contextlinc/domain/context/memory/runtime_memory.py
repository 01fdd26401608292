from typing import Dict, List, Optional
from datetime import datetime, timedelta
import asyncio
from collections import defaultdict

from contextlinc.domain.models.context_state import Session, utcnow


def session_key(user_id: str, session_id: str) -> str:
    return f"{user_id}:{session_id}"


class SessionStore:
    """Holds live sessions and the per-session turn locks"""

    def __init__(self, session_ttl_seconds: int = 86400, turn_capacity: int = 10):
        self.sessions: Dict[str, Session] = {}
        self.session_ttl = timedelta(seconds=session_ttl_seconds)
        self.turn_capacity = turn_capacity
        self._turn_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._lock = asyncio.Lock()

    async def get_or_create(self, user_id: str, session_id: str) -> Session:
        """Get a session, creating it on first use"""

        key = session_key(user_id, session_id)
        async with self._lock:
            session = self.sessions.get(key)
            if session is None:
                session = Session(user_id=user_id, session_id=session_id, turn_capacity=self.turn_capacity)
                self.sessions[key] = session
            return session

    def get(self, user_id: str, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_key(user_id, session_id))

    def lock_for(self, user_id: str, session_id: str) -> asyncio.Lock:
        """Lock serializing assembly and generation within one session"""

        return self._turn_locks[session_key(user_id, session_id)]

    async def end_session(self, user_id: str, session_id: str) -> bool:
        """Remove a session; its turn lock stays so queued turns keep their order"""

        async with self._lock:
            return self.sessions.pop(session_key(user_id, session_id), None) is not None

    def is_idle(self, session: Session, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) - session.last_active_at > self.session_ttl

    def idle_sessions(self, now: Optional[datetime] = None) -> List[Session]:
        """Sessions idle longer than the TTL; callers tear them down under the turn lock"""

        now = now or utcnow()
        return [session for session in list(self.sessions.values()) if self.is_idle(session, now)]
