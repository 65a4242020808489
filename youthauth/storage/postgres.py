from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_identity (
        id UUID PRIMARY KEY,
        email VARCHAR(255) NOT NULL UNIQUE,
        phone_number VARCHAR(20) UNIQUE,
        password_hash VARCHAR(255) NOT NULL,
        role VARCHAR(50) NOT NULL DEFAULT 'YOUTH',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        oauth_provider VARCHAR(50),
        oauth_subject VARCHAR(255),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        UNIQUE (oauth_provider, oauth_subject)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token VARCHAR(500) PRIMARY KEY,
        subject_id UUID NOT NULL,
        subject_email VARCHAR(255) NOT NULL,
        subject_role VARCHAR(50) NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        last_used_at TIMESTAMPTZ,
        ip_address VARCHAR(45),
        user_agent TEXT,
        usage_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_refresh_token_subject ON refresh_token (subject_id)",
    "CREATE INDEX IF NOT EXISTS idx_refresh_token_expires ON refresh_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        token VARCHAR(255) PRIMARY KEY,
        subject_id UUID NOT NULL,
        subject_email VARCHAR(255) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        ip_address VARCHAR(45),
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_password_reset_token_expires ON password_reset_token (expires_at)",
)


class PostgresStore:
    """Postgres-backed identity store and refresh token ledger.

    Conditional ledger transitions are single UPDATE statements guarded by
    ``revoked = false`` so concurrent callers cannot both win.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_identity(row: dict[str, Any]) -> Identity:
        return Identity(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            role=row.get("role") or DEFAULT_ROLE.value,
            phone_number=row.get("phone_number"),
            is_active=row.get("is_active", True),
            email_verified=row.get("email_verified", False),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            locked_until=row.get("locked_until"),
            oauth_provider=row.get("oauth_provider"),
            oauth_subject=row.get("oauth_subject"),
            created_at=row.get("created_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _row_to_refresh_token(row: dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            subject_id=str(row["subject_id"]),
            subject_email=row["subject_email"],
            subject_role=row["subject_role"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked=row.get("revoked", False),
            revoked_at=row.get("revoked_at"),
            last_used_at=row.get("last_used_at"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            usage_count=row.get("usage_count") or 0,
        )

    @staticmethod
    def _row_to_reset_token(row: dict[str, Any]) -> PasswordResetToken:
        return PasswordResetToken(
            token=row["token"],
            subject_id=str(row["subject_id"]),
            subject_email=row["subject_email"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            used=row.get("used", False),
            used_at=row.get("used_at"),
            attempts=row.get("attempts") or 0,
            max_attempts=row.get("max_attempts") or 3,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

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
        identity_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_identity (
                        id, email, phone_number, password_hash, role, is_active,
                        email_verified, oauth_provider, oauth_subject
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        identity_id,
                        email.strip().lower(),
                        phone_number,
                        password_hash,
                        role,
                        is_active,
                        email_verified,
                        oauth_provider,
                        oauth_subject,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
            field = "phone_number" if "phone" in constraint else "email"
            if "oauth" in constraint:
                field = "oauth_subject"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_identity(row)

    def _get_identity_where(self, clause: str, params: tuple) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM auth_identity WHERE {clause}", params
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        return self._get_identity_where("id = %s", (identity_id,))

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        return self._get_identity_where("email = %s", (email.strip().lower(),))

    def get_identity_by_phone(self, phone_number: str) -> Optional[Identity]:
        return self._get_identity_where("phone_number = %s", (phone_number,))

    def get_identity_by_provider(self, provider: str, subject: str) -> Optional[Identity]:
        return self._get_identity_where(
            "oauth_provider = %s AND oauth_subject = %s", (provider, subject)
        )

    def link_federation(self, identity_id: str, provider: str, subject: str) -> Identity:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE auth_identity
                SET oauth_provider = %s, oauth_subject = %s, email_verified = TRUE
                WHERE id = %s AND (oauth_provider IS NULL OR oauth_subject IS NULL)
                """,
                (provider, subject, identity_id),
            )
            row = conn.execute(
                "SELECT * FROM auth_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        if not row:
            raise ConstraintViolation("identity does not exist", {"identity_id": identity_id})
        return self._row_to_identity(row)

    def record_login_failure(
        self,
        identity_id: str,
        *,
        max_attempts: int,
        lock_minutes: int,
        now: Optional[datetime] = None,
    ) -> Optional[Identity]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_identity
                SET failed_login_attempts = failed_login_attempts + 1,
                    locked_until = CASE
                        WHEN failed_login_attempts + 1 >= %s THEN %s
                        ELSE locked_until
                    END
                WHERE id = %s
                RETURNING *
                """,
                (max_attempts, now + timedelta(minutes=lock_minutes), identity_id),
            ).fetchone()
        if not row:
            return None
        identity = self._row_to_identity(row)
        if identity.failed_login_attempts >= max_attempts:
            self.logger.warning(
                "account_locked",
                identity_id=identity_id,
                email=mask_identifier(identity.email),
                attempts=identity.failed_login_attempts,
            )
        return identity

    def record_login_success(
        self, identity_id: str, *, now: Optional[datetime] = None
    ) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_identity
                SET failed_login_attempts = 0, locked_until = NULL, last_login_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now or utcnow(), identity_id),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def update_password_hash(self, identity_id: str, password_hash: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_identity
                SET password_hash = %s, failed_login_attempts = 0, locked_until = NULL
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, identity_id),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def set_identity_active(self, identity_id: str, is_active: bool) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_identity SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, identity_id),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    # refresh token ledger
    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (
                        token, subject_id, subject_email, subject_role, issued_at,
                        expires_at, revoked, revoked_at, last_used_at, ip_address,
                        user_agent, usage_count
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.token,
                        token.subject_id,
                        token.subject_email,
                        token.subject_role,
                        token.issued_at,
                        token.expires_at,
                        token.revoked,
                        token.revoked_at,
                        token.last_used_at,
                        token.ip_address,
                        token.user_agent,
                        token.usage_count,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return token

    def get_refresh_token(self, value: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (value,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def find_live_refresh_token(
        self, value: str, *, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE token = %s AND revoked = FALSE AND expires_at > %s
                """,
                (value, now or utcnow()),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def touch_refresh_token(
        self, value: str, *, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET last_used_at = %s, usage_count = usage_count + 1
                WHERE token = %s AND revoked = FALSE AND expires_at > %s
                RETURNING *
                """,
                (now, value, now),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def revoke_refresh_token(
        self,
        value: str,
        *,
        now: Optional[datetime] = None,
        only_if_live: bool = False,
        only_if_expired: bool = False,
    ) -> Optional[RefreshToken]:
        now = now or utcnow()
        clause = "token = %s AND revoked = FALSE"
        params: list[Any] = [now, value]
        if only_if_live:
            clause += " AND expires_at > %s"
            params.append(now)
        if only_if_expired:
            clause += " AND expires_at <= %s"
            params.append(now)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = %s
                WHERE {clause}
                RETURNING *
                """,
                tuple(params),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def purge_refresh_tokens(
        self, *, now: Optional[datetime] = None, revoked_before: Optional[datetime] = None
    ) -> int:
        now = now or utcnow()
        with self._connect() as conn:
            if revoked_before is None:
                cur = conn.execute(
                    "DELETE FROM refresh_token WHERE expires_at <= %s", (now,)
                )
            else:
                cur = conn.execute(
                    """
                    DELETE FROM refresh_token
                    WHERE expires_at <= %s OR (revoked = TRUE AND revoked_at < %s)
                    """,
                    (now, revoked_before),
                )
            return cur.rowcount or 0

    def refresh_token_stats(self, *, now: Optional[datetime] = None) -> TokenStats:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) FILTER (WHERE revoked = FALSE AND expires_at > %s) AS active,
                    COUNT(*) FILTER (WHERE revoked = FALSE AND expires_at <= %s) AS expired,
                    COUNT(*) FILTER (WHERE revoked = TRUE) AS revoked
                FROM refresh_token
                """,
                (now or utcnow(), now or utcnow()),
            ).fetchone()
        return TokenStats(
            active=row["active"] or 0,
            expired=row["expired"] or 0,
            revoked=row["revoked"] or 0,
        )

    # password reset tokens
    def save_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token (
                        token, subject_id, subject_email, created_at, expires_at, used,
                        used_at, attempts, max_attempts, ip_address, user_agent
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.token,
                        token.subject_id,
                        token.subject_email,
                        token.created_at,
                        token.expires_at,
                        token.used,
                        token.used_at,
                        token.attempts,
                        token.max_attempts,
                        token.ip_address,
                        token.user_agent,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("reset token already exists", {"field": "token"})
        return token

    def get_reset_token(self, value: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token = %s", (value,)
            ).fetchone()
        return self._row_to_reset_token(row) if row else None

    def consume_reset_token(
        self, value: str, *, now: Optional[datetime] = None
    ) -> Optional[PasswordResetToken]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token
                SET used = TRUE, used_at = %s, attempts = attempts + 1
                WHERE token = %s AND used = FALSE AND expires_at > %s AND attempts < max_attempts
                RETURNING *
                """,
                (now, value, now),
            ).fetchone()
        return self._row_to_reset_token(row) if row else None

    def release_reset_token(self, value: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token
                SET used = FALSE, used_at = NULL
                WHERE token = %s AND used = TRUE
                RETURNING *
                """,
                (value,),
            ).fetchone()
        return self._row_to_reset_token(row) if row else None

    def purge_reset_tokens(self, *, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM password_reset_token WHERE used = TRUE OR expires_at <= %s",
                (now or utcnow(),),
            )
            return cur.rowcount or 0
