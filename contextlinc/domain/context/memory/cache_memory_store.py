from typing import Dict, Any, Optional
import asyncio
from datetime import datetime, timedelta

from contextlinc.domain.models.context_state import ContextWindow, utcnow


class LayerSnapshotStore:
    """Last assembled context window per session, with TTL"""

    def __init__(self, ttl_seconds: int = 86400):
        self.ttl_seconds = ttl_seconds
        self.cache: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def save(self, key: str, window: ContextWindow, ttl: Optional[int] = None) -> None:
        """Store a snapshot, replacing any previous one"""

        async with self._lock:
            expires_at = utcnow() + timedelta(seconds=ttl or self.ttl_seconds)

            self.cache[key] = {
                "value": window,
                "expires_at": expires_at
            }

    async def get(self, key: str, now: Optional[datetime] = None) -> Optional[ContextWindow]:
        """Get snapshot if not expired"""

        async with self._lock:
            if key not in self.cache:
                return None

            entry = self.cache[key]

            if (now or utcnow()) > entry["expires_at"]:
                del self.cache[key]
                return None

            return entry["value"]

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self.cache:
                del self.cache[key]
                return True
            return False

    async def clear_expired(self, now: Optional[datetime] = None) -> int:
        """Clear expired entries and return count"""

        async with self._lock:
            now = now or utcnow()
            expired_keys = [
                key for key, entry in self.cache.items()
                if now > entry["expires_at"]
            ]

            for key in expired_keys:
                del self.cache[key]

            return len(expired_keys)
