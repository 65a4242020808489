from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    YOUTH = "YOUTH"
    NGO = "NGO"
    MENTOR = "MENTOR"
    FUNDER = "FUNDER"
    SERVICE_PROVIDER = "SERVICE_PROVIDER"
    COMPANY = "COMPANY"
    RECRUITER = "RECRUITER"
    GOVERNMENT = "GOVERNMENT"
    MODERATOR = "MODERATOR"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


DEFAULT_ROLE = Role.YOUTH

# Roles a user may pick for themselves at registration
SELF_REGISTRATION_ROLES = frozenset(
    {
        Role.YOUTH,
        Role.NGO,
        Role.MENTOR,
        Role.FUNDER,
        Role.SERVICE_PROVIDER,
        Role.COMPANY,
        Role.RECRUITER,
        Role.GOVERNMENT,
    }
)


@dataclass
class Identity:
    """Identity record as seen through the credential store."""

    id: str
    email: str
    password_hash: str
    role: str = DEFAULT_ROLE.value
    phone_number: Optional[str] = None
    is_active: bool = True
    email_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    oauth_provider: Optional[str] = None
    oauth_subject: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.locked_until is None:
            return False
        return self.locked_until > (now or utcnow())

    @property
    def has_federation_link(self) -> bool:
        return bool(self.oauth_provider and self.oauth_subject)


@dataclass
class RefreshToken:
    """A row in the refresh token ledger.

    ``revoked`` only ever moves from False to True and ``expires_at`` is fixed
    at creation; use only touches ``last_used_at`` and ``usage_count``.
    """

    token: str
    subject_id: str
    subject_email: str
    subject_role: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    usage_count: int = 0

    @classmethod
    def new(
        cls,
        token: str,
        subject_id: str,
        subject_email: str,
        subject_role: str,
        ttl_seconds: int,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        issued = now or utcnow()
        return cls(
            token=token,
            subject_id=subject_id,
            subject_email=subject_email,
            subject_role=subject_role,
            issued_at=issued,
            expires_at=issued + timedelta(seconds=ttl_seconds),
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and not self.is_expired(now)


@dataclass
class TokenStats:
    active: int = 0
    expired: int = 0
    revoked: int = 0

    @property
    def total(self) -> int:
        return self.active + self.expired + self.revoked


@dataclass
class PasswordResetToken:
    """Single-use password reset token.

    Each reset attempt marks the token used and counts the attempt. A failed
    password write hands the token back but keeps the count, so a token allows
    at most ``max_attempts`` tries.
    """

    token: str
    subject_id: str
    subject_email: str
    created_at: datetime
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    attempts: int = 0
    max_attempts: int = 3
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        token: str,
        subject_id: str,
        subject_email: str,
        ttl_minutes: int,
        *,
        max_attempts: int = 3,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "PasswordResetToken":
        created = now or utcnow()
        return cls(
            token=token,
            subject_id=subject_id,
            subject_email=subject_email,
            created_at=created,
            expires_at=created + timedelta(minutes=ttl_minutes),
            max_attempts=max_attempts,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return not self.used and not self.is_expired(now) and self.attempts < self.max_attempts
