from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class IdentityNotFound(Exception):
    """The credential store has no identity for the requested identifier.

    A legitimate answer from a healthy store, never counted as a dependency failure.
    """

    def __init__(self, identifier: str):
        super().__init__("identity not found")
        self.identifier = identifier


class CredentialStoreUnavailable(Exception):
    """The credential store could not answer (network error, timeout, 5xx)."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


__all__ = ["ConstraintViolation", "IdentityNotFound", "CredentialStoreUnavailable"]
