"""Abstract interfaces for the authorization state and session stores."""

from abc import ABC, abstractmethod
from typing import Optional

from social.skyguide.model.oauth import OAuthRequest, OAuthSession


class StateStore(ABC):
    """Store for short-lived authorization request state.

    Keyed by the opaque OAuth ``state`` value. Entries are single-use: the
    flow controller consumes an entry with ``pop`` as soon as a callback
    names it.
    """

    @abstractmethod
    async def put(self, key: str, value: OAuthRequest) -> None:
        """Store ``value`` under ``key``, replacing any existing entry."""

    @abstractmethod
    async def get(self, key: str) -> Optional[OAuthRequest]:
        """Return the entry for ``key``, or None when absent or expired."""

    @abstractmethod
    async def pop(self, key: str) -> Optional[OAuthRequest]:
        """Remove and return the entry for ``key`` in one step.

        At most one of any number of concurrent callers gets the entry. An
        expired entry is removed and None returned.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``. Deleting an absent key is not an error."""

    @abstractmethod
    async def count(self) -> int:
        """Number of entries currently held, expired or not."""

    async def cleanup(self) -> int:
        """Evict expired entries and return how many were removed.

        Backends that expire entries on their own have nothing to do.
        """
        return 0


class SessionStore(ABC):
    """Store for per-subject sessions, keyed by DID. Last write wins."""

    @abstractmethod
    async def put(self, key: str, value: OAuthSession) -> None:
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[OAuthSession]:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def count(self) -> int:
        pass
