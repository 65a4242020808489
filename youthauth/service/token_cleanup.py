from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from youthauth.logging import get_logger
from youthauth.service.ledger import RefreshTokenLedger
from youthauth.service.password_reset import PasswordResetLedger
from youthauth.storage.models import TokenStats, utcnow

logger = get_logger(__name__)


@dataclass
class CleanupReport:
    deleted: int
    before: TokenStats
    after: TokenStats
    ran_at: datetime
    reset_tokens_deleted: int = 0


class TokenCleanupJob:
    """Retention sweep for the refresh token ledger and reset tokens.

    Deletes refresh rows past their expiry and revoked rows older than
    ``retention``, plus reset tokens that are used or expired. This is the only
    path that physically removes ledger rows.
    """

    def __init__(
        self,
        ledger: RefreshTokenLedger,
        *,
        reset_ledger: Optional[PasswordResetLedger] = None,
        retention: timedelta = timedelta(days=7),
        interval_seconds: int = 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ledger = ledger
        self.reset_ledger = reset_ledger
        self.retention = retention
        self.interval_seconds = interval_seconds
        self._clock = clock
        self.last_report: Optional[CleanupReport] = None

    async def run_once(self) -> CleanupReport:
        now = self._clock()
        before = await self.ledger.stats(now=now)
        deleted = await self.ledger.purge(retention=self.retention, now=now)
        after = await self.ledger.stats(now=now)
        reset_deleted = await self.reset_ledger.purge(now=now) if self.reset_ledger else 0
        report = CleanupReport(
            deleted=deleted,
            before=before,
            after=after,
            ran_at=now,
            reset_tokens_deleted=reset_deleted,
        )
        self.last_report = report
        logger.info(
            "token_cleanup_completed",
            deleted=deleted,
            reset_tokens_deleted=reset_deleted,
            active=after.active,
            expired=after.expired,
            revoked=after.revoked,
        )
        return report

    async def stats(self) -> TokenStats:
        return await self.ledger.stats(now=self._clock())

    async def run_forever(self) -> None:
        """Background loop started from the app lifespan."""
        try:
            while True:
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning("token_cleanup_failed", error=str(exc))
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("token_cleanup_task_cancelled")
