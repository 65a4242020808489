from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from youthauth.config import get_settings, reset_settings_cache
from youthauth.logging import get_logger
from youthauth.service.circuit_breaker import CircuitBreaker
from youthauth.service.credentials import HttpCredentialAdapter, StoreCredentialAdapter
from youthauth.service.federation import FederationAdapter, GoogleIdTokenVerifier
from youthauth.service.ledger import RefreshTokenLedger
from youthauth.service.notifications import NotificationDispatcher
from youthauth.service.password_reset import PasswordResetLedger, PasswordResetService
from youthauth.service.passwords import PasswordVerifier
from youthauth.service.revocation import RevocationRegistry
from youthauth.service.sessions import SessionOrchestrator
from youthauth.service.token_cleanup import TokenCleanupJob
from youthauth.service.tokens import TokenCodec
from youthauth.storage.memory import MemoryStore
from youthauth.storage.postgres import PostgresStore
from youthauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None
        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the access-token blacklist and login rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; the blacklist and rate limits "
                    "are process-local."
                ),
                mode=fallback_mode,
            )

        self.revocations = RevocationRegistry(self.cache)
        self.ledger = RefreshTokenLedger(self.store)
        self.passwords = PasswordVerifier()
        self.codec = TokenCodec.from_settings(self.settings)
        self.breaker = CircuitBreaker.from_settings("credential_store", self.settings)

        if self.settings.credential_store_url:
            self.credentials = HttpCredentialAdapter(
                self.settings.credential_store_url,
                api_key=self.settings.credential_store_api_key,
                timeout_seconds=self.settings.credential_store_timeout_seconds,
            )
        else:
            self.credentials = StoreCredentialAdapter(
                self.store,
                timeout_seconds=self.settings.credential_store_timeout_seconds,
                max_failed_attempts=self.settings.max_failed_login_attempts,
                lock_minutes=self.settings.account_lock_minutes,
            )

        self.notifications = NotificationDispatcher(
            self.settings.notification_service_url,
            timeout_seconds=self.settings.notification_timeout_seconds,
            queue_size=self.settings.notification_queue_size,
        )
        self.sessions = SessionOrchestrator(
            credentials=self.credentials,
            passwords=self.passwords,
            codec=self.codec,
            ledger=self.ledger,
            revocations=self.revocations,
            breaker=self.breaker,
            notifications=self.notifications,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            rotate_refresh_tokens=self.settings.refresh_token_rotation,
        )
        self.federation = FederationAdapter(
            verifier=GoogleIdTokenVerifier(
                self.settings.oauth_google_client_id,
                self.settings.google_jwks_url,
                refresh_interval=self.settings.google_jwks_refresh_seconds,
            ),
            credentials=self.credentials,
            breaker=self.breaker,
            passwords=self.passwords,
            sessions=self.sessions,
        )
        self.reset_tokens = PasswordResetLedger(self.store)
        self.password_reset = PasswordResetService(
            credentials=self.credentials,
            passwords=self.passwords,
            ledger=self.reset_tokens,
            breaker=self.breaker,
            notifications=self.notifications,
            ttl_minutes=self.settings.password_reset_token_ttl_minutes,
            max_attempts=self.settings.password_reset_max_attempts,
        )
        self.token_cleanup = TokenCleanupJob(
            self.ledger,
            reset_ledger=self.reset_tokens,
            retention=timedelta(days=self.settings.refresh_token_retention_days),
            interval_seconds=self.settings.token_cleanup_interval_seconds,
        )

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            credential_store="http" if self.settings.credential_store_url else store_type,
            refresh_rotation=self.settings.refresh_token_rotation,
            google_enabled=self.federation.verifier.is_configured,
            notifications_configured=self.notifications.is_configured,
            ussd_enabled=bool(self.settings.ussd_gateway_key),
        )

    async def close(self) -> None:
        """Release pools and clients; called from the app lifespan on shutdown."""
        await self.notifications.stop()
        await self.federation.close()
        if isinstance(self.credentials, HttpCredentialAdapter):
            await self.credentials.close()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, creating it on first use (double-checked lock)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache.client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.debug("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Token-bucket rate limit; returns (allowed, remaining, reset_seconds).

    Uses Redis when available and a per-process bucket otherwise.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
    now = datetime.utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    return allowed, remaining, reset_seconds
