from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol

from youthauth.logging import get_logger

logger = get_logger(__name__)


class DenylistBackend(Protocol):
    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None: ...

    async def is_access_token_denylisted(self, jti: str) -> bool: ...


class RevocationRegistry:
    """Blacklist of access-token ids that must be rejected before they expire.

    Entries carry the token's remaining lifetime as their TTL and vanish on
    their own. With a Redis cache the entries live under
    ``auth:access:denylist:{jti}``; without one they sit in a process-local
    dict that is swept lazily, which only suits single-process deployments.
    """

    def __init__(
        self,
        cache: Optional[DenylistBackend] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self._clock = clock
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def backend(self) -> str:
        return "redis" if self.cache is not None else "memory"

    async def add(self, token_id: str, ttl_seconds: int) -> bool:
        """Blacklist ``token_id`` for ``ttl_seconds``; a non-positive TTL is a no-op."""
        if not token_id or ttl_seconds <= 0:
            return False
        if self.cache is not None:
            await self.cache.denylist_access_token(token_id, int(ttl_seconds))
            return True
        with self._lock:
            self._sweep()
            self._entries[token_id] = self._clock() + ttl_seconds
        return True

    async def contains(self, token_id: str) -> bool:
        if not token_id:
            return False
        if self.cache is not None:
            return await self.cache.is_access_token_denylisted(token_id)
        with self._lock:
            expires_at = self._entries.get(token_id)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                self._entries.pop(token_id, None)
                return False
            return True

    def _sweep(self) -> None:
        now = self._clock()
        expired = [jti for jti, expires_at in self._entries.items() if expires_at <= now]
        for jti in expired:
            self._entries.pop(jti, None)

    def size(self) -> int:
        with self._lock:
            self._sweep()
            return len(self._entries)
