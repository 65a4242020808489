from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request, Response

from youthauth.api.schemas import (
    Envelope,
    ForgotPasswordRequest,
    GoogleFederationRequest,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    MessageResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    ResetPasswordRequest,
    ResetTokenStatusResponse,
    TokenPairResponse,
    TokenStatsResponse,
    UssdLoginRequest,
    ValidateResponse,
)
from youthauth.logging import get_logger
from youthauth.service.runtime import check_rate_limit, get_runtime
from youthauth.service.sessions import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

LOGIN_RATE_WINDOW_SECONDS = 60
PASSWORD_RESET_RATE_WINDOW_SECONDS = 3600
FORGOT_PASSWORD_MESSAGE = "If an account exists for this email, a reset link has been sent."


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _client_meta(request: Request) -> dict[str, Optional[str]]:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": (request.headers.get("User-Agent") or "")[:512] or None,
    }


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int, response: Response) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(runtime, key, limit, window_seconds)
    response.headers["X-RateLimit-Limit"] = str(limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": max(1, reset_seconds)},
        )


def _pair_envelope(pair: TokenPair) -> Envelope:
    data = TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        subject_id=pair.subject_id,
        role=pair.role,
    )
    return Envelope(status="ok", data=data.model_dump(by_alias=True))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    pair = await runtime.sessions.register(
        body.email,
        body.password,
        role=body.role,
        phone_number=body.phone_number,
        **_client_meta(request),
    )
    return _pair_envelope(pair)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Password login by email or phone number.

    Raises:
        401: invalid credentials
        404: no identity for the identifier
        403/423: inactive or locked account
        429: login rate limit exceeded for this identifier
        503: credential store unavailable
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.identifier.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        LOGIN_RATE_WINDOW_SECONDS,
        response,
    )
    pair = await runtime.sessions.login(body.identifier, body.secret, **_client_meta(request))
    return _pair_envelope(pair)


@router.post("/auth/login/ussd", response_model=Envelope, tags=["auth"])
async def login_ussd(
    body: UssdLoginRequest,
    request: Request,
    x_gateway_key: Optional[str] = Header(None, alias="X-Gateway-Key"),
):
    """Phone-channel login for the trusted USSD gateway; no password is checked."""
    runtime = get_runtime()
    expected = runtime.settings.ussd_gateway_key
    if not expected or not x_gateway_key or not hmac.compare_digest(x_gateway_key, expected):
        logger.warning(
            "ussd_gateway_rejected",
            configured=bool(expected),
            client_ip=request.client.host if request.client else None,
        )
        raise _http_error("forbidden", "USSD login is only available to the trusted gateway", status_code=403)
    pair = await runtime.sessions.login_ussd(body.phone_number, **_client_meta(request))
    return _pair_envelope(pair)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request):
    runtime = get_runtime()
    pair = await runtime.sessions.refresh(body.refresh_token, **_client_meta(request))
    data = RefreshResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
    )
    return Envelope(status="ok", data=data.model_dump(by_alias=True))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    access_token = (body.access_token if body else None) or _extract_bearer(authorization)
    refresh_token = body.refresh_token if body else None
    success = await runtime.sessions.logout(access_token, refresh_token)
    return Envelope(status="ok", data=LogoutResponse(success=success).model_dump(by_alias=True))


@router.get("/auth/validate", response_model=Envelope, tags=["auth"])
async def validate(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Query(None, alias="accessToken", max_length=4096),
):
    runtime = get_runtime()
    result = await runtime.sessions.validate(_extract_bearer(authorization) or access_token)
    data = ValidateResponse(
        valid=result.valid,
        subject_id=result.subject_id,
        role=result.role,
        expires_at=result.expires_at,
    )
    return Envelope(status="ok", data=data.model_dump(by_alias=True, exclude_none=True))


@router.post("/auth/federation/google", response_model=Envelope, tags=["auth"])
async def federation_google(body: GoogleFederationRequest, request: Request):
    runtime = get_runtime()
    pair = await runtime.federation.authenticate_google(body.id_token, **_client_meta(request))
    return _pair_envelope(pair)


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request, response: Response):
    """Start a password reset; the answer does not reveal whether the email is registered."""
    runtime = get_runtime()
    meta = _client_meta(request)
    await _enforce_rate_limit(
        runtime,
        f"password_reset:{meta['ip_address'] or 'unknown'}",
        runtime.settings.password_reset_rate_limit_per_hour,
        PASSWORD_RESET_RATE_WINDOW_SECONDS,
        response,
    )
    await runtime.password_reset.initiate(body.email, **meta)
    return Envelope(status="ok", data=MessageResponse(message=FORGOT_PASSWORD_MESSAGE).model_dump(by_alias=True))


@router.get("/auth/password/validate-reset-token", response_model=Envelope, tags=["auth"])
async def validate_reset_token(token: str = Query(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    valid = await runtime.password_reset.validate(token)
    return Envelope(status="ok", data=ResetTokenStatusResponse(valid=valid).model_dump(by_alias=True))


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    """Set a new password with a reset token.

    Raises:
        400: new password fails the strength rules
        401: token unknown, used, expired, or out of attempts
        503: credential store unavailable
    """
    runtime = get_runtime()
    await runtime.password_reset.reset(body.token, body.new_password)
    return Envelope(
        status="ok",
        data=MessageResponse(message="Password has been reset").model_dump(by_alias=True),
    )


@router.get("/auth/tokens/stats", response_model=Envelope, tags=["auth"])
async def token_stats(
    request: Request,
    x_operator_key: Optional[str] = Header(None, alias="X-Operator-Key"),
):
    runtime = get_runtime()
    expected = runtime.settings.operator_api_key
    if not expected or not x_operator_key or not hmac.compare_digest(x_operator_key, expected):
        logger.warning(
            "token_stats_rejected",
            configured=bool(expected),
            client_ip=request.client.host if request.client else None,
        )
        raise _http_error("forbidden", "token statistics require the operator key", status_code=403)
    stats = await runtime.token_cleanup.stats()
    data = TokenStatsResponse(
        active=stats.active,
        expired=stats.expired,
        revoked=stats.revoked,
        total=stats.total,
    )
    return Envelope(status="ok", data=data.model_dump(by_alias=True))
