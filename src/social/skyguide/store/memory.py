"""In-memory stores for a single process.

Sufficient for development and single-instance deployments. State does not
survive a restart; users simply start the login again.
"""

import asyncio
from datetime import datetime, timezone
import logging
from typing import Dict, Optional

from social.skyguide.model.oauth import OAuthRequest, OAuthSession
from social.skyguide.store.base import SessionStore, StateStore

logger = logging.getLogger(__name__)


class MemoryStateStore(StateStore):
    """Dict-backed authorization state store with lazy expiry.

    Entries whose ``expires_at`` has passed are treated as absent. They are
    evicted when read and, all at once, on every ``put`` or ``cleanup``, so
    abandoned logins do not accumulate.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, OAuthRequest] = {}
        self._lock = asyncio.Lock()

    def _evict_expired(self, now: datetime) -> int:
        expired = [k for k, v in self._entries.items() if v.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def put(self, key: str, value: OAuthRequest) -> None:
        now = datetime.now(timezone.utc)
        async with self._lock:
            self._evict_expired(now)
            self._entries[key] = value.model_copy(deep=True)
        logger.debug("Setting state for key: %s", key)

    async def get(self, key: str) -> Optional[OAuthRequest]:
        now = datetime.now(timezone.utc)
        async with self._lock:
            value = self._entries.get(key)
            if value is not None and value.is_expired(now):
                del self._entries[key]
                value = None
        logger.debug(
            "Getting state for key: %s %s", key, "found" if value else "not found"
        )
        if value is None:
            return None
        return value.model_copy(deep=True)

    async def pop(self, key: str) -> Optional[OAuthRequest]:
        now = datetime.now(timezone.utc)
        async with self._lock:
            value = self._entries.pop(key, None)
        logger.debug(
            "Consuming state for key: %s %s", key, "found" if value else "not found"
        )
        if value is None or value.is_expired(now):
            return None
        return value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)
        logger.debug("Deleting state for key: %s", key)

    async def cleanup(self) -> int:
        """Evict every expired entry and return how many were removed."""
        now = datetime.now(timezone.utc)
        async with self._lock:
            return self._evict_expired(now)

    async def count(self) -> int:
        async with self._lock:
            return len(self._entries)


class MemorySessionStore(SessionStore):
    """Dict-backed session store keyed by DID."""

    def __init__(self) -> None:
        self._sessions: Dict[str, OAuthSession] = {}
        self._lock = asyncio.Lock()

    async def put(self, key: str, value: OAuthSession) -> None:
        async with self._lock:
            self._sessions[key] = value.model_copy(deep=True)
        logger.debug("Storing session for user: %s", key)

    async def get(self, key: str) -> Optional[OAuthSession]:
        async with self._lock:
            value = self._sessions.get(key)
        logger.debug(
            "Getting session for user: %s %s", key, "found" if value else "not found"
        )
        if value is None:
            return None
        return value.model_copy(deep=True)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._sessions.pop(key, None)
        logger.debug("Deleting session for user: %s", key)

    async def count(self) -> int:
        async with self._lock:
            return len(self._sessions)
