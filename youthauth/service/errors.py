from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - unauthorized (401), forbidden (403), not_found (404), conflict (409)
    - rate_limited (429), validation_error (400), server_error (500)
    - the authentication codes below (invalid_credentials, account_locked, ...)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Authentication taxonomy


class UserNotFound(NotFoundError):
    error_code = "user_not_found"


class InvalidCredentials(AuthenticationError):
    error_code = "invalid_credentials"


class AccountInactive(ForbiddenError):
    error_code = "account_inactive"


class AccountLocked(ForbiddenError):
    status_code = 423
    error_code = "account_locked"


class InvalidRefreshToken(AuthenticationError):
    error_code = "invalid_refresh_token"


class ExpiredRefreshToken(InvalidRefreshToken):
    """Refresh token past its expiry; handled exactly like InvalidRefreshToken."""
    error_code = "expired_refresh_token"


class InvalidResetToken(AuthenticationError):
    """Password reset token unknown, used, expired or out of attempts."""
    error_code = "invalid_reset_token"


class UnverifiedFederatedEmail(InvalidCredentials):
    """Identity provider did not vouch for the email address."""
    error_code = "unverified_federated_email"


class InvalidAccessToken(AuthenticationError):
    """Access token failed signature, issuer/audience or expiry checks."""
    error_code = "invalid_token"


class MalformedToken(InvalidAccessToken):
    """Token could not be parsed at all."""
    error_code = "malformed_token"


class DependencyUnavailable(ServiceError):
    """An external identity dependency is unreachable (503).

    Messages are fixed strings; the underlying cause is only logged.
    """
    status_code = 503
    error_code = "dependency_unavailable"


class CircuitOpenError(DependencyUnavailable):
    """Raised by the circuit breaker fallback without calling the dependency."""

    def __init__(self, dependency: str, *, retry_after: Optional[float] = None) -> None:
        super().__init__(
            "Authentication service temporarily unavailable. Please try again later.",
            detail={"dependency": dependency},
        )
        self.dependency = dependency
        self.retry_after = retry_after


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "UserNotFound",
    "InvalidCredentials",
    "AccountInactive",
    "AccountLocked",
    "InvalidRefreshToken",
    "ExpiredRefreshToken",
    "InvalidResetToken",
    "UnverifiedFederatedEmail",
    "InvalidAccessToken",
    "MalformedToken",
    "DependencyUnavailable",
    "CircuitOpenError",
]
