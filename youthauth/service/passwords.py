from __future__ import annotations

import secrets

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from youthauth.logging import get_logger

logger = get_logger(__name__)

BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
# bcrypt only ever looks at the first 72 bytes of a password
BCRYPT_MAX_PASSWORD_BYTES = 72


class PasswordVerifier:
    """One-way argon2id hashing and verification.

    New hashes are always argon2id. Stored bcrypt hashes, as written by the user
    service, still verify; ``needs_rehash`` reports them so a successful login can
    upgrade them. Both libraries compare digests in constant time and the
    plaintext is never logged or stored.
    """

    algorithm = "argon2id"

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    @staticmethod
    def is_bcrypt(stored_hash: str) -> bool:
        return stored_hash.startswith(BCRYPT_PREFIXES)

    def _verify_bcrypt(self, plaintext: str, stored_hash: str) -> bool:
        try:
            return bcrypt.checkpw(
                plaintext.encode("utf-8")[:BCRYPT_MAX_PASSWORD_BYTES], stored_hash.encode("ascii")
            )
        except (ValueError, UnicodeEncodeError):
            logger.warning("password_hash_unusable", algorithm="bcrypt")
            return False

    def verify(self, plaintext: str, stored_hash: str) -> bool:
        if not stored_hash:
            return False
        if self.is_bcrypt(stored_hash):
            return self._verify_bcrypt(plaintext, stored_hash)
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable", algorithm=self.algorithm)
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        """True for bcrypt hashes and for argon2 hashes made with other parameters."""
        if self.is_bcrypt(stored_hash):
            return True
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    def unusable_hash(self) -> str:
        """Hash of a random secret nobody knows, for federated-only identities."""
        return self.hash(secrets.token_urlsafe(32))
