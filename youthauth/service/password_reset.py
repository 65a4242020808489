from __future__ import annotations

import asyncio
import secrets
from datetime import datetime
from typing import Callable, Optional

from youthauth.logging import get_logger, mask_identifier
from youthauth.service.circuit_breaker import CircuitBreaker
from youthauth.service.credentials import CredentialStore
from youthauth.service.errors import DependencyUnavailable, InvalidResetToken
from youthauth.service.ledger import StoreLedger
from youthauth.service.notifications import NotificationDispatcher
from youthauth.service.passwords import PasswordVerifier
from youthauth.service.sessions import UNAVAILABLE_MESSAGE, validate_email, validate_password
from youthauth.storage.errors import CredentialStoreUnavailable, IdentityNotFound
from youthauth.storage.models import PasswordResetToken, utcnow

logger = get_logger(__name__)


class PasswordResetLedger(StoreLedger):
    """Async facade over the password reset token table."""

    dependency = "password_reset_tokens"

    async def save(self, token: PasswordResetToken) -> PasswordResetToken:
        return await self._run(self.store.save_reset_token, token)

    async def get(self, value: str) -> Optional[PasswordResetToken]:
        return await self._run(self.store.get_reset_token, value)

    async def consume(self, value: str, *, now: Optional[datetime] = None) -> Optional[PasswordResetToken]:
        """Atomically mark a usable token used; None when it was not usable."""
        return await self._run(self.store.consume_reset_token, value, now=now)

    async def release(self, value: str) -> Optional[PasswordResetToken]:
        return await self._run(self.store.release_reset_token, value)

    async def purge(self, *, now: Optional[datetime] = None) -> int:
        return await self._run(self.store.purge_reset_tokens, now=now or utcnow())


class PasswordResetService:
    """Forgot-password flow: issue a single-use token by email, then swap the hash.

    ``initiate`` answers the same way whether or not the email is registered.
    A token is consumed atomically before the password is written, so two
    concurrent resets with one token cannot both succeed.
    """

    def __init__(
        self,
        *,
        credentials: CredentialStore,
        passwords: PasswordVerifier,
        ledger: PasswordResetLedger,
        breaker: CircuitBreaker,
        notifications: Optional[NotificationDispatcher] = None,
        ttl_minutes: int = 15,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.credentials = credentials
        self.passwords = passwords
        self.ledger = ledger
        self.breaker = breaker
        self.notifications = notifications
        self.ttl_minutes = ttl_minutes
        self.max_attempts = max_attempts
        self._clock = clock

    def _unavailable(self, exc: BaseException) -> DependencyUnavailable:
        logger.error("password_reset_store_unavailable", error_type=type(exc).__name__)
        return DependencyUnavailable(UNAVAILABLE_MESSAGE, detail={"dependency": self.breaker.name})

    async def initiate(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        email = (email or "").strip().lower()
        validate_email(email)
        try:
            identity = await self.breaker.call(self.credentials.lookup, email)
        except IdentityNotFound:
            logger.info("password_reset_unknown_email", email=mask_identifier(email))
            return
        except (CredentialStoreUnavailable, asyncio.TimeoutError) as exc:
            raise self._unavailable(exc) from exc
        if not identity.is_active:
            logger.info("password_reset_inactive_account", identity_id=identity.id)
            return

        value = secrets.token_urlsafe(32)
        await self.ledger.save(
            PasswordResetToken.new(
                value,
                identity.id,
                identity.email,
                self.ttl_minutes,
                max_attempts=self.max_attempts,
                ip_address=ip_address,
                user_agent=user_agent,
                now=self._clock(),
            )
        )
        if self.notifications is None:
            logger.warning("password_reset_email_not_configured", identity_id=identity.id)
        else:
            try:
                self.notifications.password_reset(identity.email, value)
            except Exception as exc:
                logger.warning("password_reset_enqueue_failed", error_type=type(exc).__name__)
        logger.info("password_reset_initiated", identity_id=identity.id, expires_in_minutes=self.ttl_minutes)

    async def validate(self, token: Optional[str]) -> bool:
        if not token:
            return False
        row = await self.ledger.get(token)
        return row is not None and row.is_usable(self._clock())

    async def _release(self, token: str) -> None:
        try:
            await self.ledger.release(token)
        except DependencyUnavailable:
            # The token stays consumed; the user has to request a new one
            logger.error("password_reset_release_failed")

    async def reset(self, token: Optional[str], new_password: str) -> None:
        validate_password(new_password, field="newPassword")
        row = await self.ledger.consume(token, now=self._clock()) if token else None
        if row is None:
            logger.info("password_reset_rejected")
            raise InvalidResetToken("Invalid or expired reset token")

        new_hash = await asyncio.to_thread(self.passwords.hash, new_password)
        try:
            updated = await self.breaker.call(
                self.credentials.update_password_hash, row.subject_id, new_hash
            )
        except DependencyUnavailable:
            await self._release(token)
            raise
        except (CredentialStoreUnavailable, asyncio.TimeoutError) as exc:
            await self._release(token)
            raise self._unavailable(exc) from exc
        if updated is None:
            logger.warning("password_reset_identity_missing", identity_id=row.subject_id)
            raise InvalidResetToken("Invalid or expired reset token")
        logger.info("password_reset_completed", identity_id=row.subject_id, attempts=row.attempts)

    async def purge(self) -> int:
        return await self.ledger.purge(now=self._clock())
