"""Session orchestrator behaviour: login, refresh, logout and validate."""

import asyncio
import json
from datetime import timedelta

import bcrypt
import httpx
import pytest

from youthauth.service.circuit_breaker import CircuitBreaker
from youthauth.service.credentials import HttpCredentialAdapter, StoreCredentialAdapter
from youthauth.service.errors import (
    AccountInactive,
    AccountLocked,
    CircuitOpenError,
    ConflictError,
    DependencyUnavailable,
    ExpiredRefreshToken,
    InvalidCredentials,
    InvalidRefreshToken,
    UserNotFound,
    ValidationError,
)
from youthauth.service.ledger import RefreshTokenLedger
from youthauth.service.revocation import RevocationRegistry
from youthauth.storage.errors import CredentialStoreUnavailable
from youthauth.storage.models import utcnow


class MutableClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class SwitchableCredentials:
    """Wraps a real adapter; while ``down`` every call fails like an unreachable store."""

    def __init__(self, inner):
        self.inner = inner
        self.down = False
        self.calls = 0

    def __getattr__(self, name):
        target = getattr(self.inner, name)

        async def _call(*args, **kwargs):
            self.calls += 1
            if self.down:
                raise CredentialStoreUnavailable("connection refused")
            return await target(*args, **kwargs)

        _call.__name__ = name
        return _call


class TestLogin:
    async def test_right_password_returns_youth_pair(self, make_sessions, youth_identity):
        sessions = make_sessions()

        pair = await sessions.login("u@x.com", "right")

        assert pair.role == "YOUTH"
        assert pair.subject_id == youth_identity.id
        assert pair.token_type == "Bearer"
        assert pair.expires_in == sessions.access_ttl_seconds
        claims = sessions.codec.decode_access(pair.access_token)
        assert claims.subject_id == youth_identity.id
        assert claims.role == "YOUTH"
        row = await sessions.ledger.get(pair.refresh_token)
        assert row is not None and row.subject_id == youth_identity.id
        assert row.expires_at - row.issued_at == timedelta(seconds=sessions.refresh_ttl_seconds)

    async def test_identifier_is_case_insensitive(self, make_sessions, youth_identity):
        pair = await make_sessions().login("  U@X.com ", "right")
        assert pair.subject_id == youth_identity.id

    async def test_wrong_password_is_invalid_credentials(self, make_sessions, youth_identity, memory_store):
        sessions = make_sessions()
        with pytest.raises(InvalidCredentials) as excinfo:
            await sessions.login("u@x.com", "wrong")
        assert excinfo.value.status_code == 401
        assert memory_store.get_identity(youth_identity.id).failed_login_attempts == 1

    async def test_bcrypt_hash_is_upgraded_on_login(self, make_sessions, memory_store, passwords):
        legacy = bcrypt.hashpw(b"right", bcrypt.gensalt(rounds=4)).decode()
        identity = memory_store.create_identity("old@x.com", legacy)

        pair = await make_sessions().login("old@x.com", "right")

        assert pair.subject_id == identity.id
        stored = memory_store.get_identity(identity.id).password_hash
        assert stored.startswith("$argon2id$")
        assert passwords.verify("right", stored)
        assert not passwords.needs_rehash(stored)

    @pytest.mark.parametrize("put_status", [200, 500])
    async def test_remote_bcrypt_hash_is_written_back(self, make_sessions, put_status):
        legacy = bcrypt.hashpw(b"right", bcrypt.gensalt(rounds=4, prefix=b"2a")).decode()
        payload = {"id": "remote-1", "email": "old@x.com", "passwordHash": legacy, "role": "YOUTH"}
        puts = []

        def handler(request):
            if request.method == "PUT":
                puts.append((request.url.path, json.loads(request.content)["passwordHash"]))
                return httpx.Response(put_status, json=payload)
            return httpx.Response(200, json=payload)

        credentials = HttpCredentialAdapter(
            "http://user-service/internal/users", transport=httpx.MockTransport(handler)
        )
        pair = await make_sessions(credentials=credentials).login("old@x.com", "right")
        await credentials.close()

        assert pair.subject_id == "remote-1"
        assert [path for path, _ in puts] == ["/internal/users/remote-1/password"]
        assert puts[0][1].startswith("$argon2id$")

    async def test_unknown_identifier_is_user_not_found(self, make_sessions):
        with pytest.raises(UserNotFound):
            await make_sessions().login("nobody@x.com", "right")

    @pytest.mark.parametrize("identifier,secret", [("", "right"), ("u@x.com", ""), ("   ", "x")])
    async def test_empty_input_is_invalid_credentials(self, make_sessions, identifier, secret):
        with pytest.raises(InvalidCredentials):
            await make_sessions().login(identifier, secret)

    async def test_phone_identifier_logs_in(self, make_sessions, youth_identity):
        pair = await make_sessions().login("0700000001", "right")
        assert pair.subject_id == youth_identity.id

    async def test_inactive_account_is_rejected(self, make_sessions, youth_identity, memory_store):
        memory_store.set_identity_active(youth_identity.id, False)
        with pytest.raises(AccountInactive):
            await make_sessions().login("u@x.com", "right")

    async def test_repeated_failures_lock_the_account(self, make_sessions, youth_identity, memory_store):
        sessions = make_sessions(
            credentials=StoreCredentialAdapter(memory_store, max_failed_attempts=3, lock_minutes=15)
        )
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                await sessions.login("u@x.com", "wrong")

        with pytest.raises(AccountLocked) as excinfo:
            await sessions.login("u@x.com", "right")
        assert excinfo.value.status_code == 423
        assert "locked_until" in excinfo.value.detail

    async def test_success_resets_failure_counter(self, make_sessions, youth_identity, memory_store):
        sessions = make_sessions()
        with pytest.raises(InvalidCredentials):
            await sessions.login("u@x.com", "wrong")
        await sessions.login("u@x.com", "right")
        stored = memory_store.get_identity(youth_identity.id)
        assert stored.failed_login_attempts == 0
        assert stored.last_login_at is not None


class TestDependencyFailures:
    async def test_store_outage_is_dependency_unavailable_not_auth_failure(
        self, make_sessions, youth_identity, memory_store
    ):
        credentials = SwitchableCredentials(StoreCredentialAdapter(memory_store))
        credentials.down = True
        sessions = make_sessions(credentials=credentials)

        with pytest.raises(DependencyUnavailable) as excinfo:
            await sessions.login("u@x.com", "right")
        assert not isinstance(excinfo.value, InvalidCredentials)
        assert excinfo.value.status_code == 503

    async def test_open_breaker_short_circuits_lookups(self, make_sessions, youth_identity, memory_store):
        credentials = SwitchableCredentials(StoreCredentialAdapter(memory_store))
        credentials.down = True
        breaker = CircuitBreaker("credential_store", minimum_calls=3, failure_rate_threshold=0.5)
        sessions = make_sessions(credentials=credentials, breaker=breaker)

        for _ in range(3):
            with pytest.raises(DependencyUnavailable):
                await sessions.login("u@x.com", "right")
        calls_before = credentials.calls

        for _ in range(5):
            with pytest.raises(DependencyUnavailable) as excinfo:
                await sessions.login("u@x.com", "right")
            assert isinstance(excinfo.value, CircuitOpenError)
        assert credentials.calls == calls_before

    async def test_refresh_keeps_working_while_store_is_down(
        self, make_sessions, youth_identity, memory_store
    ):
        credentials = SwitchableCredentials(StoreCredentialAdapter(memory_store))
        sessions = make_sessions(credentials=credentials)
        pair = await sessions.login("u@x.com", "right")

        credentials.down = True
        refreshed = await sessions.refresh(pair.refresh_token)
        assert refreshed.subject_id == youth_identity.id

    async def test_bookkeeping_failure_does_not_change_outcome(
        self, make_sessions, youth_identity, memory_store
    ):
        class BrokenBookkeeping(StoreCredentialAdapter):
            async def record_login_success(self, identity_id):
                raise CredentialStoreUnavailable("write failed")

        sessions = make_sessions(credentials=BrokenBookkeeping(memory_store))
        pair = await sessions.login("u@x.com", "right")
        assert pair.role == "YOUTH"


class TestUssdLogin:
    async def test_known_phone_gets_pair_without_password(self, make_sessions, youth_identity):
        pair = await make_sessions().login_ussd("+256700000001")
        assert pair.subject_id == youth_identity.id
        assert pair.role == "YOUTH"

    async def test_local_format_is_normalized(self, make_sessions, youth_identity):
        pair = await make_sessions().login_ussd("0700000001")
        assert pair.subject_id == youth_identity.id

    @pytest.mark.parametrize("phone", ["", "12345", "+1 555 0100", "abc"])
    async def test_bad_phone_is_validation_error(self, make_sessions, phone):
        with pytest.raises(ValidationError):
            await make_sessions().login_ussd(phone)

    async def test_unknown_phone(self, make_sessions, youth_identity):
        with pytest.raises(UserNotFound):
            await make_sessions().login_ussd("+256799999999")


class TestRefresh:
    async def test_refresh_issues_new_access_token_for_same_subject(self, make_sessions, youth_identity):
        sessions = make_sessions()
        pair = await sessions.login("u@x.com", "right")

        refreshed = await sessions.refresh(pair.refresh_token)

        assert refreshed.subject_id == youth_identity.id
        assert refreshed.role == "YOUTH"
        assert refreshed.access_token != pair.access_token
        assert refreshed.refresh_token == pair.refresh_token
        row = await sessions.ledger.get(pair.refresh_token)
        assert row.usage_count == 1
        assert row.last_used_at is not None

    async def test_tampered_refresh_token_is_invalid(self, make_sessions, youth_identity):
        sessions = make_sessions()
        pair = await sessions.login("u@x.com", "right")
        tampered = pair.refresh_token[:-1] + ("A" if pair.refresh_token[-1] != "A" else "B")

        with pytest.raises(InvalidRefreshToken) as excinfo:
            await sessions.refresh(tampered)
        assert not isinstance(excinfo.value, ExpiredRefreshToken)

    @pytest.mark.parametrize("value", ["", "short", "has.dots.in.it" * 5])
    async def test_malformed_refresh_token_is_invalid(self, make_sessions, value):
        with pytest.raises(InvalidRefreshToken):
            await make_sessions().refresh(value)

    async def test_access_token_is_not_a_refresh_token(self, make_sessions, youth_identity):
        sessions = make_sessions()
        pair = await sessions.login("u@x.com", "right")
        with pytest.raises(InvalidRefreshToken):
            await sessions.refresh(pair.access_token)

    async def test_expired_refresh_token_is_revoked_once(self, make_sessions, youth_identity):
        clock = MutableClock()
        sessions = make_sessions(clock=clock, refresh_ttl_seconds=60)
        pair = await sessions.login("u@x.com", "right")
        clock.advance(seconds=61)

        with pytest.raises(ExpiredRefreshToken):
            await sessions.refresh(pair.refresh_token)
        row = await sessions.ledger.get(pair.refresh_token)
        assert row.revoked
        revoked_at = row.revoked_at

        # A second attempt is rejected without touching the row again
        with pytest.raises(InvalidRefreshToken):
            await sessions.refresh(pair.refresh_token)
        again = await sessions.ledger.get(pair.refresh_token)
        assert again.revoked_at == revoked_at

    async def test_refresh_never_extends_expiry(self, make_sessions, youth_identity):
        clock = MutableClock()
        sessions = make_sessions(clock=clock, refresh_ttl_seconds=120)
        pair = await sessions.login("u@x.com", "right")
        original = (await sessions.ledger.get(pair.refresh_token)).expires_at

        clock.advance(seconds=100)
        await sessions.refresh(pair.refresh_token)
        assert (await sessions.ledger.get(pair.refresh_token)).expires_at == original

        clock.advance(seconds=21)
        with pytest.raises(ExpiredRefreshToken):
            await sessions.refresh(pair.refresh_token)

    async def test_concurrent_refresh_without_rotation_both_succeed(self, make_sessions, youth_identity):
        sessions = make_sessions()
        pair = await sessions.login("u@x.com", "right")

        first, second = await asyncio.gather(
            sessions.refresh(pair.refresh_token), sessions.refresh(pair.refresh_token)
        )

        assert first.subject_id == second.subject_id == youth_identity.id
        assert (await sessions.ledger.get(pair.refresh_token)).usage_count == 2


class TestRotation:
    async def test_rotation_replaces_the_refresh_token(self, make_sessions, youth_identity):
        sessions = make_sessions(rotate_refresh_tokens=True)
        pair = await sessions.login("u@x.com", "right")

        rotated = await sessions.refresh(pair.refresh_token)

        assert rotated.refresh_token != pair.refresh_token
        assert (await sessions.ledger.get(pair.refresh_token)).revoked
        with pytest.raises(InvalidRefreshToken):
            await sessions.refresh(pair.refresh_token)
        again = await sessions.refresh(rotated.refresh_token)
        assert again.subject_id == youth_identity.id

    async def test_concurrent_rotation_has_exactly_one_winner(self, make_sessions, youth_identity):
        sessions = make_sessions(rotate_refresh_tokens=True)
        pair = await sessions.login("u@x.com", "right")

        results = await asyncio.gather(
            *(sessions.refresh(pair.refresh_token) for _ in range(5)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(r, InvalidRefreshToken) for r in losers)


class TestLogoutAndValidate:
    async def test_validate_accepts_fresh_access_token(self, make_sessions, youth_identity):
        sessions = make_sessions()
        pair = await sessions.login("u@x.com", "right")

        result = await sessions.validate(pair.access_token)

        assert result.valid
        assert result.subject_id == youth_identity.id
        assert result.role == "YOUTH"
        assert result.expires_at is not None

    async def test_logout_then_validate_is_false(self, make_sessions, youth_identity):
        sessions = make_sessions()
        pair = await sessions.login("u@x.com", "right")

        assert await sessions.logout(pair.access_token, pair.refresh_token) is True

        result = await sessions.validate(pair.access_token)
        assert not result.valid
        assert result.reason == "revoked"
        with pytest.raises(InvalidRefreshToken):
            await sessions.refresh(pair.refresh_token)

    async def test_logout_twice_is_still_success(self, make_sessions, youth_identity):
        sessions = make_sessions()
        pair = await sessions.login("u@x.com", "right")
        assert await sessions.logout(pair.access_token, pair.refresh_token) is True
        assert await sessions.logout(pair.access_token, pair.refresh_token) is True

    async def test_logout_with_garbage_is_success(self, make_sessions):
        assert await make_sessions().logout("not-a-token", "also not a token") is True
        assert await make_sessions().logout() is True

    async def test_logout_survives_registry_failure(self, make_sessions, youth_identity):
        class BrokenRegistry:
            async def add(self, token_id, ttl_seconds):
                raise RuntimeError("redis gone")

            async def contains(self, token_id):
                raise RuntimeError("redis gone")

        sessions = make_sessions(revocations=BrokenRegistry())
        pair = await sessions.login("u@x.com", "right")
        assert await sessions.logout(pair.access_token, pair.refresh_token) is True
        with pytest.raises(InvalidRefreshToken):
            await sessions.refresh(pair.refresh_token)

    async def test_validate_fails_closed_when_registry_is_unreadable(self, make_sessions, youth_identity):
        class UnreadableRegistry(RevocationRegistry):
            async def contains(self, token_id):
                raise ConnectionError("redis gone")

        sessions = make_sessions(revocations=UnreadableRegistry())
        pair = await sessions.login("u@x.com", "right")
        await sessions.logout(pair.access_token, pair.refresh_token)

        result = await sessions.validate(pair.access_token)
        assert not result.valid
        assert result.subject_id is None
        assert result.reason == "revocation_check_unavailable"

    async def test_logout_does_not_affect_other_sessions(self, make_sessions, youth_identity):
        sessions = make_sessions()
        first = await sessions.login("u@x.com", "right")
        second = await sessions.login("u@x.com", "right")

        await sessions.logout(first.access_token, first.refresh_token)

        assert (await sessions.validate(second.access_token)).valid
        assert (await sessions.refresh(second.refresh_token)).subject_id == youth_identity.id

    @pytest.mark.parametrize("token", [None, "", "garbage", "a.b.c"])
    async def test_validate_rejects_garbage(self, make_sessions, token):
        result = await make_sessions().validate(token)
        assert not result.valid
        assert result.subject_id is None

    async def test_validate_rejects_foreign_signature(self, make_sessions, youth_identity):
        from youthauth.service.tokens import TokenCodec

        foreign = TokenCodec(
            "some-other-service-secret-0123456789",
            issuer="youth-connect-auth-service",
            audience="youth-connect-platform",
        ).issue_access(youth_identity.id, "ADMIN", 900)
        result = await make_sessions().validate(foreign)
        assert not result.valid
        assert result.reason == "invalid_token"


class TestRegister:
    async def test_register_creates_identity_and_logs_in(self, make_sessions, memory_store):
        sessions = make_sessions()
        pair = await sessions.register("New@Example.com", "Secret123", phone_number="0701234567")

        assert pair.role == "YOUTH"
        stored = memory_store.get_identity_by_email("new@example.com")
        assert stored.id == pair.subject_id
        assert stored.phone_number == "+256701234567"
        again = await sessions.login("new@example.com", "Secret123")
        assert again.subject_id == stored.id

    async def test_register_queues_welcome_notification(self, make_sessions):
        sessions = make_sessions()
        await sessions.register("welcome@example.com", "Secret123", role="MENTOR")
        assert sessions.notifications.stats()["queued"] == 1

    async def test_duplicate_email_is_conflict(self, make_sessions, youth_identity):
        with pytest.raises(ConflictError) as excinfo:
            await make_sessions().register("u@x.com", "Secret123")
        assert excinfo.value.status_code == 409

    @pytest.mark.parametrize(
        "email,password,role,phone,field",
        [
            ("not-an-email", "Secret123", "YOUTH", None, "email"),
            ("a@b.co", "short1A", "YOUTH", None, "password"),
            ("a@b.co", "alllowercase1", "YOUTH", None, "password"),
            ("a@b.co", "Secret123", "ADMIN", None, "role"),
            ("a@b.co", "Secret123", "YOUTH", "12345", "phoneNumber"),
        ],
    )
    async def test_invalid_registration(self, make_sessions, email, password, role, phone, field):
        with pytest.raises(ValidationError) as excinfo:
            await make_sessions().register(email, password, role=role, phone_number=phone)
        assert excinfo.value.detail["field"] == field


class TestLedgerFailures:
    async def test_unreachable_ledger_is_dependency_unavailable(self, make_sessions, youth_identity, memory_store):
        class BrokenStore:
            def __getattr__(self, name):
                def _fail(*args, **kwargs):
                    raise OSError("disk gone")

                _fail.__name__ = name
                return _fail

        sessions = make_sessions(ledger=RefreshTokenLedger(BrokenStore()))
        with pytest.raises(DependencyUnavailable):
            await sessions.login("u@x.com", "right")
