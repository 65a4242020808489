from __future__ import annotations

import asyncio
import functools
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

from youthauth.logging import get_logger
from youthauth.service.errors import DependencyUnavailable
from youthauth.storage.errors import ConstraintViolation
from youthauth.storage.memory import MemoryStore
from youthauth.storage.models import RefreshToken, TokenStats, utcnow
from youthauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


class StoreLedger:
    """Runs synchronous store calls in a worker thread.

    Driver failures surface as ``DependencyUnavailable`` naming ``dependency``;
    constraint violations pass through.
    """

    dependency = "token_ledger"

    def __init__(self, store: Union[MemoryStore, PostgresStore]) -> None:
        self.store = store

    async def _run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(functools.partial(func, *args, **kwargs))
        except ConstraintViolation:
            raise
        except Exception as exc:
            logger.error(
                "ledger_store_error",
                dependency=self.dependency,
                operation=func.__name__,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DependencyUnavailable(
                "Session store temporarily unavailable. Please try again later.",
                detail={"dependency": self.dependency},
            ) from exc


class RefreshTokenLedger(StoreLedger):
    """Async facade over the refresh token table.

    Every state change is one conditional operation in the store (a locked
    check-and-set in memory, a single ``UPDATE ... RETURNING`` in Postgres), so
    two callers racing on the same value never both observe a live row and
    both win a revoke.
    """

    dependency = "refresh_token_ledger"

    async def save(self, token: RefreshToken) -> RefreshToken:
        return await self._run(self.store.save_refresh_token, token)

    async def get(self, value: str) -> Optional[RefreshToken]:
        return await self._run(self.store.get_refresh_token, value)

    async def find_live(self, value: str, *, now: Optional[datetime] = None) -> Optional[RefreshToken]:
        return await self._run(self.store.find_live_refresh_token, value, now=now)

    async def touch_last_used(
        self, value: str, *, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        """Atomically record a use of a live token; None when it is not live."""
        return await self._run(self.store.touch_refresh_token, value, now=now)

    async def revoke(
        self,
        value: str,
        *,
        now: Optional[datetime] = None,
        only_if_live: bool = False,
        only_if_expired: bool = False,
    ) -> Optional[RefreshToken]:
        """Revoke ``value``; returns the row only when this call flipped it."""
        return await self._run(
            self.store.revoke_refresh_token,
            value,
            now=now,
            only_if_live=only_if_live,
            only_if_expired=only_if_expired,
        )

    async def purge(self, *, retention: timedelta, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return await self._run(
            self.store.purge_refresh_tokens, now=now, revoked_before=now - retention
        )

    async def stats(self, *, now: Optional[datetime] = None) -> TokenStats:
        return await self._run(self.store.refresh_token_stats, now=now)
