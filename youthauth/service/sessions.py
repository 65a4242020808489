from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, NoReturn, Optional

from youthauth.logging import get_logger, mask_identifier, mask_phone
from youthauth.service.circuit_breaker import CircuitBreaker
from youthauth.service.credentials import CredentialStore, normalize_phone
from youthauth.service.errors import (
    AccountInactive,
    AccountLocked,
    ConflictError,
    DependencyUnavailable,
    ExpiredRefreshToken,
    InvalidAccessToken,
    InvalidCredentials,
    InvalidRefreshToken,
    UserNotFound,
    ValidationError,
)
from youthauth.service.ledger import RefreshTokenLedger
from youthauth.service.notifications import NotificationDispatcher
from youthauth.service.passwords import PasswordVerifier
from youthauth.service.revocation import RevocationRegistry
from youthauth.service.tokens import TokenCodec
from youthauth.storage.errors import (
    ConstraintViolation,
    CredentialStoreUnavailable,
    IdentityNotFound,
)
from youthauth.storage.models import (
    DEFAULT_ROLE,
    SELF_REGISTRATION_ROLES,
    Identity,
    RefreshToken,
    utcnow,
)

logger = get_logger(__name__)

UNAVAILABLE_MESSAGE = "Authentication service temporarily unavailable. Please try again later."

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_PATTERN = re.compile(r"^(\+?256[0-9]{9}|0[0-9]{9})$")
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 100


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    subject_id: str
    role: str
    token_type: str = "Bearer"


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    subject_id: Optional[str] = None
    role: Optional[str] = None
    expires_at: Optional[int] = None
    reason: Optional[str] = None


def validate_email(email: str) -> None:
    if not email or len(email) > 255 or not EMAIL_PATTERN.match(email.strip()):
        raise ValidationError("Invalid email address", detail={"field": "email"})


def validate_password(password: str, *, field: str = "password") -> None:
    if not PASSWORD_MIN_LENGTH <= len(password or "") <= PASSWORD_MAX_LENGTH:
        raise ValidationError(
            f"Password must be {PASSWORD_MIN_LENGTH} to {PASSWORD_MAX_LENGTH} characters",
            detail={"field": field},
        )
    if not (
        any(ch.islower() for ch in password)
        and any(ch.isupper() for ch in password)
        and any(ch.isdigit() for ch in password)
    ):
        raise ValidationError(
            "Password must contain a lower case letter, an upper case letter and a digit",
            detail={"field": field},
        )


def validate_registration(
    email: str, password: str, role: str, phone_number: Optional[str]
) -> None:
    """Raise ValidationError describing the first field that fails the signup rules."""
    validate_email(email)
    validate_password(password)
    if role not in {r.value for r in SELF_REGISTRATION_ROLES}:
        raise ValidationError("Role is not available for registration", detail={"field": "role"})
    if phone_number and not PHONE_PATTERN.match(normalize_phone(phone_number)):
        raise ValidationError(
            "Phone number must look like +256XXXXXXXXX or 07XXXXXXXX",
            detail={"field": "phoneNumber"},
        )


class SessionOrchestrator:
    """Login, refresh, logout and validation over explicitly injected collaborators.

    Identity lookups go through the circuit breaker; refresh reads only the
    ledger so it keeps working while the credential store is down. Access tokens
    are stateless and checked against the revocation registry; refresh tokens
    are opaque ledger rows.
    """

    def __init__(
        self,
        *,
        credentials: CredentialStore,
        passwords: PasswordVerifier,
        codec: TokenCodec,
        ledger: RefreshTokenLedger,
        revocations: RevocationRegistry,
        breaker: CircuitBreaker,
        notifications: Optional[NotificationDispatcher] = None,
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        rotate_refresh_tokens: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.credentials = credentials
        self.passwords = passwords
        self.codec = codec
        self.ledger = ledger
        self.revocations = revocations
        self.breaker = breaker
        self.notifications = notifications
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    # credential store access

    async def _lookup(self, identifier: str, *, channel: str) -> Identity:
        try:
            return await self.breaker.call(self.credentials.lookup, identifier)
        except IdentityNotFound:
            logger.info(
                "login_failed",
                channel=channel,
                reason="user_not_found",
                identifier=mask_identifier(identifier),
            )
            raise UserNotFound("User not found")
        except (CredentialStoreUnavailable, asyncio.TimeoutError) as exc:
            logger.error(
                "credential_store_unavailable",
                channel=channel,
                error_type=type(exc).__name__,
            )
            raise DependencyUnavailable(
                UNAVAILABLE_MESSAGE, detail={"dependency": self.breaker.name}
            ) from exc

    async def _bookkeeping(self, operation, identity: Identity, *args) -> Optional[Identity]:
        """Login counters and hash upgrades; failures here never change a login outcome."""
        try:
            return await self.breaker.call(operation, identity.id, *args)
        except Exception as exc:
            logger.warning(
                "login_bookkeeping_failed",
                operation=operation.__name__,
                identity_id=identity.id,
                error_type=type(exc).__name__,
            )
            return None

    def check_status(self, identity: Identity, *, channel: str) -> None:
        if not identity.is_active:
            logger.info("login_failed", channel=channel, reason="account_inactive", identity_id=identity.id)
            raise AccountInactive("Account is inactive")
        now = self._now()
        if identity.is_locked(now):
            logger.info("login_failed", channel=channel, reason="account_locked", identity_id=identity.id)
            raise AccountLocked(
                "Account is temporarily locked",
                detail={"locked_until": identity.locked_until.isoformat()},
            )

    # token issuance

    async def issue_tokens(
        self,
        identity: Identity,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Mint an access token and persist a fresh refresh token for ``identity``."""
        access_token = self.codec.issue_access(identity.id, identity.role, self.access_ttl_seconds)
        refresh_value = self.codec.issue_refresh()
        await self.ledger.save(
            RefreshToken.new(
                refresh_value,
                identity.id,
                identity.email,
                identity.role,
                self.refresh_ttl_seconds,
                ip_address=ip_address,
                user_agent=user_agent,
                now=self._now(),
            )
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_value,
            expires_in=self.access_ttl_seconds,
            subject_id=identity.id,
            role=identity.role,
        )

    # operations

    async def register(
        self,
        email: str,
        password: str,
        *,
        role: str = DEFAULT_ROLE.value,
        phone_number: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        validate_registration(email, password, role, phone_number)
        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        try:
            identity = await self.breaker.call(
                self.credentials.create_identity,
                email.strip().lower(),
                password_hash,
                role=role,
                phone_number=phone_number,
            )
        except ConstraintViolation as exc:
            logger.info("registration_conflict", email=mask_identifier(email), field=exc.detail.get("field"))
            raise ConflictError("Email or phone number is already registered", detail=exc.detail)
        except (CredentialStoreUnavailable, asyncio.TimeoutError) as exc:
            raise DependencyUnavailable(
                UNAVAILABLE_MESSAGE, detail={"dependency": self.breaker.name}
            ) from exc
        logger.info("identity_registered", identity_id=identity.id, role=identity.role)
        self.notify_welcome(identity)
        return await self.issue_tokens(identity, ip_address=ip_address, user_agent=user_agent)

    def notify_welcome(self, identity: Identity) -> None:
        if self.notifications is None:
            return
        try:
            self.notifications.welcome(identity.email, identity.role)
        except Exception as exc:
            logger.warning("welcome_notification_enqueue_failed", error_type=type(exc).__name__)

    async def login(
        self,
        identifier: str,
        secret: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        identifier = (identifier or "").strip()
        if not identifier or not secret:
            raise InvalidCredentials("Invalid credentials")
        identity = await self._lookup(identifier, channel="password")
        self.check_status(identity, channel="password")
        matches = await asyncio.to_thread(self.passwords.verify, secret, identity.password_hash)
        if not matches:
            updated = await self._bookkeeping(self.credentials.record_login_failure, identity)
            logger.info(
                "login_failed",
                channel="password",
                reason="invalid_credentials",
                identity_id=identity.id,
                attempts=updated.failed_login_attempts if updated else None,
            )
            raise InvalidCredentials("Invalid credentials")
        if self.passwords.needs_rehash(identity.password_hash):
            upgraded = await asyncio.to_thread(self.passwords.hash, secret)
            if await self._bookkeeping(self.credentials.update_password_hash, identity, upgraded):
                logger.info("password_hash_upgraded", identity_id=identity.id)
        await self._bookkeeping(self.credentials.record_login_success, identity)
        logger.info("login_succeeded", channel="password", identity_id=identity.id, role=identity.role)
        return await self.issue_tokens(identity, ip_address=ip_address, user_agent=user_agent)

    async def login_ussd(
        self,
        phone_number: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Phone-channel login with no password check.

        The caller is trusted at the transport layer; only the gateway-keyed
        route may reach this.
        """
        phone = normalize_phone(phone_number or "")
        if not phone or not PHONE_PATTERN.match(phone):
            raise ValidationError("Invalid phone number", detail={"field": "phoneNumber"})
        identity = await self._lookup(phone, channel="ussd")
        self.check_status(identity, channel="ussd")
        await self._bookkeeping(self.credentials.record_login_success, identity)
        logger.info("login_succeeded", channel="ussd", identity_id=identity.id, phone=mask_phone(phone))
        return await self.issue_tokens(identity, ip_address=ip_address, user_agent=user_agent)

    async def _reject_refresh(self, value: str, now: datetime) -> NoReturn:
        row = await self.ledger.get(value)
        if row is not None and row.is_expired(now):
            if await self.ledger.revoke(value, now=now, only_if_expired=True):
                logger.info("refresh_token_expired_revoked", subject_id=row.subject_id)
            raise ExpiredRefreshToken("Refresh token has expired")
        logger.info("refresh_rejected", reason="revoked" if row else "unknown")
        raise InvalidRefreshToken("Invalid refresh token")

    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        if not self.codec.is_refresh_format(refresh_token):
            logger.info("refresh_rejected", reason="malformed")
            raise InvalidRefreshToken("Invalid refresh token")
        now = self._now()
        if self.rotate_refresh_tokens:
            # Revoke-if-live is the single atomic step, so one racing caller wins
            row = await self.ledger.revoke(refresh_token, now=now, only_if_live=True)
            if row is None:
                await self._reject_refresh(refresh_token, now)
            next_value = self.codec.issue_refresh()
            await self.ledger.save(
                RefreshToken.new(
                    next_value,
                    row.subject_id,
                    row.subject_email,
                    row.subject_role,
                    self.refresh_ttl_seconds,
                    ip_address=ip_address or row.ip_address,
                    user_agent=user_agent or row.user_agent,
                    now=now,
                )
            )
        else:
            row = await self.ledger.touch_last_used(refresh_token, now=now)
            if row is None:
                await self._reject_refresh(refresh_token, now)
            next_value = refresh_token
        access_token = self.codec.issue_access(row.subject_id, row.subject_role, self.access_ttl_seconds)
        logger.info(
            "token_refreshed",
            subject_id=row.subject_id,
            rotated=self.rotate_refresh_tokens,
            usage_count=row.usage_count,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=next_value,
            expires_in=self.access_ttl_seconds,
            subject_id=row.subject_id,
            role=row.subject_role,
        )

    async def logout(
        self, access_token: Optional[str] = None, refresh_token: Optional[str] = None
    ) -> bool:
        """Forget a session; always reports success and records internal failures."""
        blacklisted = False
        if access_token:
            try:
                ttl = self.codec.remaining_ttl(access_token)
                token_id = self.codec.peek_token_id(access_token) if ttl > 0 else None
                if token_id:
                    blacklisted = await self.revocations.add(token_id, ttl)
            except Exception as exc:
                logger.error("logout_blacklist_failed", error_type=type(exc).__name__, error=str(exc))
        revoked = False
        if refresh_token and self.codec.is_refresh_format(refresh_token):
            try:
                revoked = await self.ledger.revoke(refresh_token, now=self._now()) is not None
            except Exception as exc:
                logger.error("logout_refresh_revoke_failed", error_type=type(exc).__name__, error=str(exc))
        logger.info("logout_completed", access_blacklisted=blacklisted, refresh_revoked=revoked)
        return True

    async def validate(self, access_token: Optional[str]) -> ValidationResult:
        if not access_token:
            return ValidationResult(valid=False, reason="missing_token")
        token_id = self.codec.peek_token_id(access_token)
        if token_id:
            try:
                if await self.revocations.contains(token_id):
                    logger.info("access_token_denylisted", jti=token_id)
                    return ValidationResult(valid=False, reason="revoked")
            except Exception as exc:
                # A token that cannot be checked against the denylist is not valid
                logger.error("denylist_check_failed", jti=token_id, error_type=type(exc).__name__)
                return ValidationResult(valid=False, reason="revocation_check_unavailable")
        try:
            claims = self.codec.decode_access(access_token)
        except InvalidAccessToken as exc:
            return ValidationResult(valid=False, reason=exc.error_code)
        return ValidationResult(
            valid=True,
            subject_id=claims.subject_id,
            role=claims.role,
            expires_at=claims.expires_at,
        )
