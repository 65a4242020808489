from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from youthauth.logging import get_logger, mask_identifier
from youthauth.storage.errors import ConstraintViolation
from youthauth.storage.models import (
    DEFAULT_ROLE,
    Identity,
    PasswordResetToken,
    RefreshToken,
    TokenStats,
    utcnow,
)


class MemoryStore:
    """In-process identity store, refresh token ledger and reset token table.

    All reads and writes go through ``_data_lock`` so the conditional ledger
    operations (touch-if-live, revoke-if-live, consume-if-usable) are atomic
    across threads.
    State is snapshotted to ``{fs_root}/state/auth_store.json`` after each
    mutation and reloaded on start.
    """

    def __init__(self, fs_root: str = "/tmp/youthauth", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        # RLock so compound operations can call the single-row helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # identities
    def create_identity(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = DEFAULT_ROLE.value,
        phone_number: Optional[str] = None,
        is_active: bool = True,
        email_verified: bool = False,
        oauth_provider: Optional[str] = None,
        oauth_subject: Optional[str] = None,
    ) -> Identity:
        normalized_email = email.strip().lower()
        with self._data_lock:
            for existing in self.identities.values():
                if existing.email == normalized_email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if phone_number and existing.phone_number == phone_number:
                    raise ConstraintViolation(
                        "phone number already exists", {"field": "phone_number"}
                    )
                if (
                    oauth_provider
                    and existing.oauth_provider == oauth_provider
                    and existing.oauth_subject == oauth_subject
                ):
                    raise ConstraintViolation(
                        "federated identity already linked", {"field": "oauth_subject"}
                    )
            identity = Identity(
                id=str(uuid.uuid4()),
                email=normalized_email,
                password_hash=password_hash,
                role=role,
                phone_number=phone_number,
                is_active=is_active,
                email_verified=email_verified,
                oauth_provider=oauth_provider,
                oauth_subject=oauth_subject,
            )
            self.identities[identity.id] = identity
            self._persist_state()
            return replace(identity)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return replace(identity) if identity else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        normalized = email.strip().lower()
        with self._data_lock:
            found = next((i for i in self.identities.values() if i.email == normalized), None)
            return replace(found) if found else None

    def get_identity_by_phone(self, phone_number: str) -> Optional[Identity]:
        with self._data_lock:
            found = next(
                (i for i in self.identities.values() if i.phone_number == phone_number),
                None,
            )
            return replace(found) if found else None

    def get_identity_by_provider(self, provider: str, subject: str) -> Optional[Identity]:
        with self._data_lock:
            found = next(
                (
                    i
                    for i in self.identities.values()
                    if i.oauth_provider == provider and i.oauth_subject == subject
                ),
                None,
            )
            return replace(found) if found else None

    def link_federation(self, identity_id: str, provider: str, subject: str) -> Identity:
        """Fill the federation link on an identity that has none; never overwrite one."""
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                raise ConstraintViolation("identity does not exist", {"identity_id": identity_id})
            if not identity.has_federation_link:
                identity.oauth_provider = provider
                identity.oauth_subject = subject
                identity.email_verified = True
                self._persist_state()
            return replace(identity)

    def record_login_failure(
        self,
        identity_id: str,
        *,
        max_attempts: int,
        lock_minutes: int,
        now: Optional[datetime] = None,
    ) -> Optional[Identity]:
        now = now or utcnow()
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                return None
            identity.failed_login_attempts += 1
            if identity.failed_login_attempts >= max_attempts:
                identity.locked_until = now + timedelta(minutes=lock_minutes)
                self.logger.warning(
                    "account_locked",
                    identity_id=identity_id,
                    email=mask_identifier(identity.email),
                    attempts=identity.failed_login_attempts,
                )
            self._persist_state()
            return replace(identity)

    def record_login_success(
        self, identity_id: str, *, now: Optional[datetime] = None
    ) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                return None
            identity.failed_login_attempts = 0
            identity.locked_until = None
            identity.last_login_at = now or utcnow()
            self._persist_state()
            return replace(identity)

    def update_password_hash(self, identity_id: str, password_hash: str) -> Optional[Identity]:
        """Replace the stored hash; a new password also clears any lockout."""
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                return None
            identity.password_hash = password_hash
            identity.failed_login_attempts = 0
            identity.locked_until = None
            self._persist_state()
            return replace(identity)

    def set_identity_active(self, identity_id: str, is_active: bool) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                return None
            identity.is_active = is_active
            self._persist_state()
            return replace(identity)

    # refresh token ledger
    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[token.token] = replace(token)
            self._persist_state()
            return replace(token)

    def get_refresh_token(self, value: str) -> Optional[RefreshToken]:
        with self._data_lock:
            row = self.refresh_tokens.get(value)
            return replace(row) if row else None

    def find_live_refresh_token(
        self, value: str, *, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        with self._data_lock:
            row = self.refresh_tokens.get(value)
            if row is None or not row.is_live(now):
                return None
            return replace(row)

    def touch_refresh_token(
        self, value: str, *, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        """Record a use of a live token; None if the token is not live."""
        now = now or utcnow()
        with self._data_lock:
            row = self.refresh_tokens.get(value)
            if row is None or not row.is_live(now):
                return None
            row.last_used_at = now
            row.usage_count += 1
            self._persist_state()
            return replace(row)

    def revoke_refresh_token(
        self,
        value: str,
        *,
        now: Optional[datetime] = None,
        only_if_live: bool = False,
        only_if_expired: bool = False,
    ) -> Optional[RefreshToken]:
        """Flip ``revoked`` to True; returns the row only if this call made the change."""
        now = now or utcnow()
        with self._data_lock:
            row = self.refresh_tokens.get(value)
            if row is None or row.revoked:
                return None
            if only_if_live and row.is_expired(now):
                return None
            if only_if_expired and not row.is_expired(now):
                return None
            row.revoked = True
            row.revoked_at = now
            self._persist_state()
            return replace(row)

    def purge_refresh_tokens(
        self, *, now: Optional[datetime] = None, revoked_before: Optional[datetime] = None
    ) -> int:
        """Delete expired rows and rows revoked before ``revoked_before``."""
        now = now or utcnow()
        with self._data_lock:
            stale = [
                value
                for value, row in self.refresh_tokens.items()
                if row.is_expired(now)
                or (
                    row.revoked
                    and revoked_before is not None
                    and row.revoked_at is not None
                    and row.revoked_at < revoked_before
                )
            ]
            for value in stale:
                self.refresh_tokens.pop(value, None)
            if stale:
                self._persist_state()
            return len(stale)

    def refresh_token_stats(self, *, now: Optional[datetime] = None) -> TokenStats:
        now = now or utcnow()
        stats = TokenStats()
        with self._data_lock:
            for row in self.refresh_tokens.values():
                if row.revoked:
                    stats.revoked += 1
                elif row.is_expired(now):
                    stats.expired += 1
                else:
                    stats.active += 1
        return stats

    # password reset tokens
    def save_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            if token.token in self.reset_tokens:
                raise ConstraintViolation("reset token already exists", {"field": "token"})
            self.reset_tokens[token.token] = replace(token)
            self._persist_state()
            return replace(token)

    def get_reset_token(self, value: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            row = self.reset_tokens.get(value)
            return replace(row) if row else None

    def consume_reset_token(
        self, value: str, *, now: Optional[datetime] = None
    ) -> Optional[PasswordResetToken]:
        """Mark a usable token used and count the attempt; None if it was not usable."""
        now = now or utcnow()
        with self._data_lock:
            row = self.reset_tokens.get(value)
            if row is None or not row.is_usable(now):
                return None
            row.used = True
            row.used_at = now
            row.attempts += 1
            self._persist_state()
            return replace(row)

    def release_reset_token(self, value: str) -> Optional[PasswordResetToken]:
        """Hand a consumed token back after a failed password write."""
        with self._data_lock:
            row = self.reset_tokens.get(value)
            if row is None or not row.used:
                return None
            row.used = False
            row.used_at = None
            self._persist_state()
            return replace(row)

    def purge_reset_tokens(self, *, now: Optional[datetime] = None) -> int:
        """Delete used and expired reset tokens."""
        now = now or utcnow()
        with self._data_lock:
            stale = [
                value for value, row in self.reset_tokens.items() if row.used or row.is_expired(now)
            ]
            for value in stale:
                self.reset_tokens.pop(value, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "identities": [self._serialize(i) for i in self.identities.values()],
            "refresh_tokens": [self._serialize(t) for t in self.refresh_tokens.values()],
            "reset_tokens": [self._serialize(t) for t in self.reset_tokens.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            state = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("memory_store_load_failed", path=str(path), error=str(exc))
            return False
        for raw in state.get("identities", []):
            for key in ("locked_until", "created_at", "last_login_at"):
                raw[key] = self._deserialize_datetime(raw.get(key))
            identity = Identity(**raw)
            self.identities[identity.id] = identity
        for raw in state.get("refresh_tokens", []):
            for key in ("issued_at", "expires_at", "revoked_at", "last_used_at"):
                raw[key] = self._deserialize_datetime(raw.get(key))
            row = RefreshToken(**raw)
            self.refresh_tokens[row.token] = row
        for raw in state.get("reset_tokens", []):
            for key in ("created_at", "expires_at", "used_at"):
                raw[key] = self._deserialize_datetime(raw.get(key))
            reset = PasswordResetToken(**raw)
            self.reset_tokens[reset.token] = reset
        return True
