from __future__ import annotations

import asyncio
import functools
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol, Union

import httpx

from youthauth.logging import get_logger, mask_identifier
from youthauth.storage.errors import (
    ConstraintViolation,
    CredentialStoreUnavailable,
    IdentityNotFound,
)
from youthauth.storage.memory import MemoryStore
from youthauth.storage.models import DEFAULT_ROLE, Identity
from youthauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def normalize_phone(phone_number: str) -> str:
    """Canonicalize a Ugandan number to +256XXXXXXXXX; anything else keeps its digits only."""
    cleaned = "".join(ch for ch in phone_number.strip() if ch.isdigit() or ch == "+")
    if len(cleaned) == 10 and cleaned.startswith("0"):
        return "+256" + cleaned[1:]
    if len(cleaned) == 12 and cleaned.startswith("256"):
        return "+" + cleaned
    return cleaned


def is_email(identifier: str) -> bool:
    return "@" in identifier


class CredentialStore(Protocol):
    """Async view of the identity records the auth flows read.

    ``lookup`` raises ``IdentityNotFound`` for a healthy "no such user" answer and
    ``CredentialStoreUnavailable`` when the store cannot answer. The two must stay
    distinct because only the latter is a dependency failure.
    """

    async def lookup(self, identifier: str) -> Identity: ...

    async def lookup_federated(self, provider: str, subject: str) -> Identity: ...

    async def create_identity(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = DEFAULT_ROLE.value,
        phone_number: Optional[str] = None,
        email_verified: bool = False,
        oauth_provider: Optional[str] = None,
        oauth_subject: Optional[str] = None,
    ) -> Identity: ...

    async def link_federation(self, identity_id: str, provider: str, subject: str) -> Identity: ...

    async def record_login_failure(self, identity_id: str) -> Optional[Identity]: ...

    async def record_login_success(self, identity_id: str) -> None: ...

    async def update_password_hash(self, identity_id: str, password_hash: str) -> Optional[Identity]: ...


class StoreCredentialAdapter:
    """Credential store backed by this service's own Memory or Postgres store.

    Store calls are synchronous, so each runs in a worker thread bounded by
    ``timeout_seconds``; a timeout or driver failure surfaces as
    ``CredentialStoreUnavailable``.
    """

    def __init__(
        self,
        store: Union[MemoryStore, PostgresStore],
        *,
        timeout_seconds: float = 3.0,
        max_failed_attempts: int = 5,
        lock_minutes: int = 15,
    ) -> None:
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.max_failed_attempts = max_failed_attempts
        self.lock_minutes = lock_minutes

    async def _run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(functools.partial(func, *args, **kwargs)),
                self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error("credential_store_timeout", operation=func.__name__)
            raise CredentialStoreUnavailable("credential store timed out", cause=exc) from exc
        except (ConstraintViolation, IdentityNotFound):
            raise
        except Exception as exc:
            logger.error(
                "credential_store_error",
                operation=func.__name__,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise CredentialStoreUnavailable("credential store failed", cause=exc) from exc

    async def lookup(self, identifier: str) -> Identity:
        if is_email(identifier):
            identity = await self._run(self.store.get_identity_by_email, identifier)
        else:
            identity = await self._run(self.store.get_identity_by_phone, normalize_phone(identifier))
        if identity is None:
            raise IdentityNotFound(identifier)
        return identity

    async def lookup_federated(self, provider: str, subject: str) -> Identity:
        identity = await self._run(self.store.get_identity_by_provider, provider, subject)
        if identity is None:
            raise IdentityNotFound(f"{provider}:{subject}")
        return identity

    async def create_identity(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = DEFAULT_ROLE.value,
        phone_number: Optional[str] = None,
        email_verified: bool = False,
        oauth_provider: Optional[str] = None,
        oauth_subject: Optional[str] = None,
    ) -> Identity:
        return await self._run(
            self.store.create_identity,
            email,
            password_hash,
            role=role,
            phone_number=normalize_phone(phone_number) if phone_number else None,
            email_verified=email_verified,
            oauth_provider=oauth_provider,
            oauth_subject=oauth_subject,
        )

    async def link_federation(self, identity_id: str, provider: str, subject: str) -> Identity:
        return await self._run(self.store.link_federation, identity_id, provider, subject)

    async def record_login_failure(self, identity_id: str) -> Optional[Identity]:
        return await self._run(
            self.store.record_login_failure,
            identity_id,
            max_attempts=self.max_failed_attempts,
            lock_minutes=self.lock_minutes,
        )

    async def record_login_success(self, identity_id: str) -> None:
        await self._run(self.store.record_login_success, identity_id)

    async def update_password_hash(self, identity_id: str, password_hash: str) -> Optional[Identity]:
        return await self._run(self.store.update_password_hash, identity_id, password_hash)

    async def close(self) -> None:
        return None


def _parse_datetime(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class HttpCredentialAdapter:
    """Credential store served by the remote user service.

    Endpoints (relative to ``base_url``): ``GET /by-identifier``, ``GET /by-phone``,
    ``GET /by-provider``, ``POST /register``, ``POST /{id}/federation``,
    ``POST /{id}/login-failure``, ``POST /{id}/login-success`` and
    ``PUT /{id}/password``. Responses may be wrapped as ``{"success": ..., "data": {...}}``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout_seconds: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["X-Internal-Api-Key"] = self.api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_seconds),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def _request(
        self, method: str, path: str, *, subject: str, **kwargs: Any
    ) -> Optional[dict]:
        """Returns the decoded payload, or None on 404."""
        try:
            response = await self._get_client().request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("credential_service_timeout", path=path, subject=mask_identifier(subject))
            raise CredentialStoreUnavailable("credential service timed out", cause=exc) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "credential_service_transport_error",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise CredentialStoreUnavailable("credential service unreachable", cause=exc) from exc
        if response.status_code == 404:
            return None
        if response.status_code == 409:
            raise ConstraintViolation("identity already exists", {"status": 409})
        if response.status_code >= 500 or response.status_code in (401, 403, 429):
            logger.error("credential_service_bad_status", path=path, status_code=response.status_code)
            raise CredentialStoreUnavailable(f"credential service returned {response.status_code}")
        if response.status_code >= 400:
            logger.warning("credential_service_rejected", path=path, status_code=response.status_code)
            raise ConstraintViolation(
                "credential service rejected the request", {"status": response.status_code}
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise CredentialStoreUnavailable("credential service sent invalid JSON", cause=exc) from exc
        if isinstance(body, dict) and "data" in body:
            if body.get("success") is False or body["data"] is None:
                return None
            body = body["data"]
        if not isinstance(body, dict):
            raise CredentialStoreUnavailable("credential service sent an unexpected payload")
        return body

    @staticmethod
    def _to_identity(payload: dict) -> Identity:
        try:
            identity_id = payload.get("id", payload.get("userId"))
            return Identity(
                id=str(identity_id),
                email=str(payload["email"]).lower(),
                password_hash=payload.get("passwordHash") or "",
                role=str(payload.get("role") or DEFAULT_ROLE.value),
                phone_number=payload.get("phoneNumber"),
                is_active=bool(payload.get("isActive", payload.get("active", True))),
                email_verified=bool(payload.get("emailVerified", False)),
                failed_login_attempts=int(payload.get("failedLoginAttempts") or 0),
                locked_until=_parse_datetime(payload.get("lockedUntil")),
                oauth_provider=payload.get("oauthProvider"),
                oauth_subject=payload.get("oauthSubject"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise CredentialStoreUnavailable("credential service sent an incomplete identity", cause=exc) from exc

    async def lookup(self, identifier: str) -> Identity:
        if is_email(identifier):
            payload = await self._request(
                "GET", "/by-identifier", subject=identifier, params={"identifier": identifier}
            )
        else:
            phone = normalize_phone(identifier)
            payload = await self._request(
                "GET", "/by-phone", subject=phone, params={"phoneNumber": phone}
            )
        if payload is None:
            raise IdentityNotFound(identifier)
        return self._to_identity(payload)

    async def lookup_federated(self, provider: str, subject: str) -> Identity:
        payload = await self._request(
            "GET",
            "/by-provider",
            subject=subject,
            params={"provider": provider, "subject": subject},
        )
        if payload is None:
            raise IdentityNotFound(f"{provider}:{subject}")
        return self._to_identity(payload)

    async def create_identity(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = DEFAULT_ROLE.value,
        phone_number: Optional[str] = None,
        email_verified: bool = False,
        oauth_provider: Optional[str] = None,
        oauth_subject: Optional[str] = None,
    ) -> Identity:
        payload = await self._request(
            "POST",
            "/register",
            subject=email,
            json={
                "email": email,
                "passwordHash": password_hash,
                "role": role,
                "phoneNumber": normalize_phone(phone_number) if phone_number else None,
                "emailVerified": email_verified,
                "oauthProvider": oauth_provider,
                "oauthSubject": oauth_subject,
            },
        )
        if payload is None:
            raise CredentialStoreUnavailable("credential service did not return the new identity")
        return self._to_identity(payload)

    async def link_federation(self, identity_id: str, provider: str, subject: str) -> Identity:
        payload = await self._request(
            "POST",
            f"/{identity_id}/federation",
            subject=identity_id,
            json={"provider": provider, "subject": subject},
        )
        if payload is None:
            raise ConstraintViolation("identity does not exist", {"identity_id": identity_id})
        return self._to_identity(payload)

    async def record_login_failure(self, identity_id: str) -> Optional[Identity]:
        payload = await self._request("POST", f"/{identity_id}/login-failure", subject=identity_id)
        return self._to_identity(payload) if payload else None

    async def record_login_success(self, identity_id: str) -> None:
        await self._request("POST", f"/{identity_id}/login-success", subject=identity_id)

    async def update_password_hash(self, identity_id: str, password_hash: str) -> Optional[Identity]:
        payload = await self._request(
            "PUT",
            f"/{identity_id}/password",
            subject=identity_id,
            json={"passwordHash": password_hash},
        )
        return self._to_identity(payload) if payload else None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
