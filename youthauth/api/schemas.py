from __future__ import annotations

import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from youthauth.logging import get_correlation_id
from youthauth.storage.models import DEFAULT_ROLE

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "user_not_found",
    "invalid_credentials",
    "account_inactive",
    "account_locked",
    "invalid_refresh_token",
    "expired_refresh_token",
    "invalid_reset_token",
    "unverified_federated_email",
    "invalid_token",
    "malformed_token",
    "dependency_unavailable",
    "federation_disabled",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalize(value: str) -> str:
    return unicodedata.normalize("NFKC", value).strip()


class RegisterRequest(_CamelModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., max_length=100)
    role: str = DEFAULT_ROLE.value
    phone_number: Optional[str] = Field(default=None, max_length=20)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize(value).lower()

    @field_validator("role")
    @classmethod
    def _upper_role(cls, value: str) -> str:
        return value.strip().upper()


class LoginRequest(_CamelModel):
    identifier: str = Field(..., min_length=1, max_length=255)
    secret: str = Field(..., min_length=1, max_length=256)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize(value)


class UssdLoginRequest(_CamelModel):
    phone_number: str = Field(..., min_length=1, max_length=20)


class RefreshRequest(_CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)


class LogoutRequest(_CamelModel):
    access_token: Optional[str] = Field(default=None, max_length=4096)
    refresh_token: Optional[str] = Field(default=None, max_length=512)


class GoogleFederationRequest(_CamelModel):
    id_token: str = Field(..., min_length=1, max_length=8192)


class TokenPairResponse(_CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    subject_id: str
    role: str


class RefreshResponse(_CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class LogoutResponse(_CamelModel):
    success: bool = True


class ValidateResponse(_CamelModel):
    valid: bool
    subject_id: Optional[str] = None
    role: Optional[str] = None
    expires_at: Optional[int] = None


class TokenStatsResponse(_CamelModel):
    active: int
    expired: int
    revoked: int
    total: int


class ForgotPasswordRequest(_CamelModel):
    email: str = Field(..., min_length=1, max_length=255)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize(value).lower()


class ResetPasswordRequest(_CamelModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=100)


class MessageResponse(_CamelModel):
    message: str


class ResetTokenStatusResponse(_CamelModel):
    valid: bool
