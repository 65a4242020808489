from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx
from jose import JWTError, jwt

from youthauth.logging import get_logger, mask_identifier
from youthauth.service.circuit_breaker import CircuitBreaker
from youthauth.service.credentials import CredentialStore
from youthauth.service.errors import (
    DependencyUnavailable,
    ForbiddenError,
    InvalidCredentials,
    UnverifiedFederatedEmail,
)
from youthauth.service.passwords import PasswordVerifier
from youthauth.service.sessions import UNAVAILABLE_MESSAGE, SessionOrchestrator, TokenPair
from youthauth.storage.errors import (
    ConstraintViolation,
    CredentialStoreUnavailable,
    IdentityNotFound,
)
from youthauth.storage.models import DEFAULT_ROLE, Identity

logger = get_logger(__name__)

GOOGLE_PROVIDER = "google"
GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")


@dataclass(frozen=True)
class FederatedAssertion:
    provider: str
    subject: str
    email: str
    email_verified: bool
    name: Optional[str] = None


class GoogleIdTokenVerifier:
    """Verifies Google id tokens against Google's published signing keys.

    Keys are cached for ``refresh_interval`` seconds and refetched eagerly once
    when a token names an unknown ``kid`` (key rotation).
    """

    def __init__(
        self,
        client_id: Optional[str],
        jwks_url: str,
        *,
        refresh_interval: int = 3600,
        http_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.jwks_url = jwks_url
        self.refresh_interval = refresh_interval
        self._keys: Optional[List[Dict[str, Any]]] = None
        self._last_refresh = 0.0
        self._lock = asyncio.Lock()
        self._client = httpx.AsyncClient(timeout=http_timeout, transport=transport)

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id)

    async def close(self) -> None:
        await self._client.aclose()

    async def _refresh_keys(self, *, force: bool) -> None:
        if not force and self._keys is not None and (time.time() - self._last_refresh) < self.refresh_interval:
            return
        async with self._lock:
            if not force and self._keys is not None and (time.time() - self._last_refresh) < self.refresh_interval:
                return
            try:
                response = await self._client.get(self.jwks_url)
                response.raise_for_status()
                keys = response.json().get("keys")
            except (httpx.HTTPError, ValueError, AttributeError) as exc:
                logger.error("google_jwks_fetch_failed", error_type=type(exc).__name__, error=str(exc))
                raise DependencyUnavailable(
                    "Google sign-in is temporarily unavailable. Please try again later.",
                    detail={"dependency": "google_jwks"},
                ) from exc
            if not isinstance(keys, list):
                logger.error("google_jwks_missing_keys")
                raise DependencyUnavailable(
                    "Google sign-in is temporarily unavailable. Please try again later.",
                    detail={"dependency": "google_jwks"},
                )
            self._keys = keys
            self._last_refresh = time.time()

    async def _get_key(self, kid: str) -> Optional[Dict[str, Any]]:
        await self._refresh_keys(force=False)
        for key in self._keys or []:
            if key.get("kid") == kid:
                return key
        await self._refresh_keys(force=True)
        for key in self._keys or []:
            if key.get("kid") == kid:
                return key
        return None

    async def verify(self, id_token: str) -> FederatedAssertion:
        if not self.is_configured:
            raise ForbiddenError("Google sign-in is not enabled", error_code="federation_disabled")
        if not id_token:
            raise InvalidCredentials("Invalid Google credential")
        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError:
            logger.info("federation_rejected", provider=GOOGLE_PROVIDER, reason="malformed")
            raise InvalidCredentials("Invalid Google credential")
        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise InvalidCredentials("Invalid Google credential")
        key_data = await self._get_key(kid)
        if key_data is None:
            logger.info("federation_rejected", provider=GOOGLE_PROVIDER, reason="unknown_kid", kid=kid)
            raise InvalidCredentials("Invalid Google credential")
        try:
            claims = jwt.decode(
                id_token,
                key_data,
                algorithms=[key_data.get("alg", "RS256")],
                audience=self.client_id,
                issuer=GOOGLE_ISSUERS,
                options={"verify_at_hash": False},
            )
        except JWTError as exc:
            # Provider-side details stay in the log
            logger.info("federation_rejected", provider=GOOGLE_PROVIDER, reason="verification_failed", error=str(exc))
            raise InvalidCredentials("Invalid Google credential")
        subject = claims.get("sub")
        email = claims.get("email")
        if not isinstance(subject, str) or not subject or not isinstance(email, str) or "@" not in email:
            raise InvalidCredentials("Invalid Google credential")
        verified = claims.get("email_verified")
        if isinstance(verified, str):
            verified = verified.lower() == "true"
        if verified is not True:
            logger.info("federation_rejected", provider=GOOGLE_PROVIDER, reason="email_unverified", email=mask_identifier(email))
            raise UnverifiedFederatedEmail("Google account email is not verified")
        return FederatedAssertion(
            provider=GOOGLE_PROVIDER,
            subject=subject,
            email=email.strip().lower(),
            email_verified=True,
            name=claims.get("name"),
        )


class FederationAdapter:
    """Maps verified third-party assertions onto local identities and signs them in."""

    def __init__(
        self,
        *,
        verifier: GoogleIdTokenVerifier,
        credentials: CredentialStore,
        breaker: CircuitBreaker,
        passwords: PasswordVerifier,
        sessions: SessionOrchestrator,
    ) -> None:
        self.verifier = verifier
        self.credentials = credentials
        self.breaker = breaker
        self.passwords = passwords
        self.sessions = sessions

    async def _find(self, func, *args: Any) -> Optional[Identity]:
        try:
            return await self.breaker.call(func, *args)
        except IdentityNotFound:
            return None

    async def _resolve(self, assertion: FederatedAssertion) -> Tuple[Identity, bool]:
        identity = await self._find(self.credentials.lookup, assertion.email)
        if identity is None:
            identity = await self._find(
                self.credentials.lookup_federated, assertion.provider, assertion.subject
            )
        if identity is not None:
            if not identity.has_federation_link:
                identity = await self.breaker.call(
                    self.credentials.link_federation,
                    identity.id,
                    assertion.provider,
                    assertion.subject,
                )
                logger.info("federation_linked", provider=assertion.provider, identity_id=identity.id)
            return identity, False

        unusable = await asyncio.to_thread(self.passwords.unusable_hash)
        try:
            identity = await self.breaker.call(
                self.credentials.create_identity,
                assertion.email,
                unusable,
                role=DEFAULT_ROLE.value,
                email_verified=True,
                oauth_provider=assertion.provider,
                oauth_subject=assertion.subject,
            )
        except ConstraintViolation:
            # Lost a race with a concurrent first sign-in for the same account
            identity = await self._find(self.credentials.lookup, assertion.email)
            if identity is None:
                raise
            return identity, False
        logger.info("federation_identity_created", provider=assertion.provider, identity_id=identity.id)
        return identity, True

    async def authenticate_google(
        self,
        id_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        assertion = await self.verifier.verify(id_token)
        try:
            identity, created = await self._resolve(assertion)
        except (CredentialStoreUnavailable, asyncio.TimeoutError) as exc:
            raise DependencyUnavailable(
                UNAVAILABLE_MESSAGE, detail={"dependency": self.breaker.name}
            ) from exc
        self.sessions.check_status(identity, channel=assertion.provider)
        if created:
            self.sessions.notify_welcome(identity)
        return await self.sessions.issue_tokens(identity, ip_address=ip_address, user_agent=user_agent)

    async def close(self) -> None:
        await self.verifier.close()
