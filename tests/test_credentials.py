"""Credential store adapters and password hashing."""

import asyncio
import json
import time

import bcrypt
import httpx
import pytest

from youthauth.service.credentials import (
    HttpCredentialAdapter,
    StoreCredentialAdapter,
    normalize_phone,
)
from youthauth.service.passwords import PasswordVerifier
from youthauth.storage.errors import (
    ConstraintViolation,
    CredentialStoreUnavailable,
    IdentityNotFound,
)

IDENTITY_PAYLOAD = {
    "id": "3f2c1d4e-0000-4000-8000-000000000001",
    "email": "U@x.com",
    "passwordHash": "$argon2id$v=19$m=1024,t=1,p=1$c2FsdA$aGFzaA",
    "role": "YOUTH",
    "phoneNumber": "+256700000001",
    "isActive": True,
    "failedLoginAttempts": 2,
    "lockedUntil": "2030-01-01T00:00:00",
}


class TestPhoneNormalization:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("0701234567", "+256701234567"),
            ("256701234567", "+256701234567"),
            ("+256 701 234 567", "+256701234567"),
            ("+256-701-234-567", "+256701234567"),
            ("12345", "12345"),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_phone(raw) == expected


class TestPasswordVerifier:
    def test_hash_is_not_plaintext_and_verifies(self, passwords):
        stored = passwords.hash("right")
        assert "right" not in stored
        assert stored.startswith("$argon2id$")
        assert passwords.verify("right", stored)
        assert not passwords.verify("wrong", stored)

    def test_same_password_hashes_differently(self, passwords):
        assert passwords.hash("right") != passwords.hash("right")

    @pytest.mark.parametrize("stored", ["", "not-a-hash", "$2b$12$legacybcryptvalue"])
    def test_unusable_stored_hash_never_matches(self, passwords, stored):
        assert passwords.verify("right", stored) is False

    def test_unusable_hash_matches_nothing_obvious(self, passwords):
        stored = passwords.unusable_hash()
        assert not passwords.verify("", stored)
        assert not passwords.verify("password", stored)

    def test_weaker_parameters_need_rehash(self, passwords):
        stored = passwords.hash("right")
        assert PasswordVerifier().needs_rehash(stored)
        assert not passwords.needs_rehash(stored)
        assert passwords.needs_rehash("garbage")

    @pytest.mark.parametrize("prefix", [b"2a", b"2b"])
    def test_bcrypt_hashes_verify_and_need_rehash(self, passwords, prefix):
        stored = bcrypt.hashpw(b"right", bcrypt.gensalt(rounds=4, prefix=prefix)).decode()
        assert passwords.verify("right", stored)
        assert not passwords.verify("wrong", stored)
        assert passwords.needs_rehash(stored)

    def test_bcrypt_only_reads_the_first_72_bytes(self, passwords):
        stored = bcrypt.hashpw(b"a" * 72, bcrypt.gensalt(rounds=4)).decode()
        assert passwords.verify("a" * 80, stored)
        assert not passwords.verify("a" * 71, stored)


class TestStoreCredentialAdapter:
    async def test_lookup_by_email_and_phone(self, memory_store, youth_identity):
        adapter = StoreCredentialAdapter(memory_store)
        assert (await adapter.lookup("u@x.com")).id == youth_identity.id
        assert (await adapter.lookup("0700000001")).id == youth_identity.id

    async def test_missing_identity_is_not_found(self, memory_store):
        with pytest.raises(IdentityNotFound):
            await StoreCredentialAdapter(memory_store).lookup("ghost@x.com")

    async def test_duplicate_create_is_constraint_violation(self, memory_store, youth_identity):
        with pytest.raises(ConstraintViolation):
            await StoreCredentialAdapter(memory_store).create_identity("u@x.com", "hash")

    async def test_slow_store_times_out_as_unavailable(self, memory_store):
        class SlowStore:
            def get_identity_by_email(self, email):
                time.sleep(0.5)
                return None

        adapter = StoreCredentialAdapter(SlowStore(), timeout_seconds=0.05)
        with pytest.raises(CredentialStoreUnavailable):
            await adapter.lookup("u@x.com")

    async def test_driver_error_is_unavailable(self):
        class BrokenStore:
            def get_identity_by_email(self, email):
                raise OSError("connection reset")

        with pytest.raises(CredentialStoreUnavailable) as excinfo:
            await StoreCredentialAdapter(BrokenStore()).lookup("u@x.com")
        assert isinstance(excinfo.value.cause, OSError)

    async def test_failures_lock_after_threshold(self, memory_store, youth_identity):
        adapter = StoreCredentialAdapter(memory_store, max_failed_attempts=2, lock_minutes=5)
        first = await adapter.record_login_failure(youth_identity.id)
        assert first.failed_login_attempts == 1 and first.locked_until is None
        second = await adapter.record_login_failure(youth_identity.id)
        assert second.locked_until is not None
        await adapter.record_login_success(youth_identity.id)
        assert (await adapter.lookup("u@x.com")).locked_until is None


def _adapter(handler, **kwargs):
    return HttpCredentialAdapter(
        "http://user-service/internal/users",
        api_key="internal-key",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestHttpCredentialAdapter:
    async def test_lookup_unwraps_envelope_and_sends_api_key(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["identifier"] = request.url.params.get("identifier")
            seen["key"] = request.headers.get("X-Internal-Api-Key")
            return httpx.Response(200, json={"success": True, "data": IDENTITY_PAYLOAD})

        adapter = _adapter(handler)
        identity = await adapter.lookup("u@x.com")
        await adapter.close()

        assert seen == {
            "path": "/internal/users/by-identifier",
            "identifier": "u@x.com",
            "key": "internal-key",
        }
        assert identity.email == "u@x.com"
        assert identity.failed_login_attempts == 2
        assert identity.locked_until.tzinfo is not None

    async def test_phone_lookup_uses_phone_endpoint(self):
        def handler(request):
            assert request.url.path.endswith("/by-phone")
            assert request.url.params["phoneNumber"] == "+256700000001"
            return httpx.Response(200, json=IDENTITY_PAYLOAD)

        identity = await _adapter(handler).lookup("0700000001")
        assert identity.phone_number == "+256700000001"

    async def test_404_is_not_found(self):
        adapter = _adapter(lambda request: httpx.Response(404, json={"message": "no user"}))
        with pytest.raises(IdentityNotFound):
            await adapter.lookup("ghost@x.com")

    @pytest.mark.parametrize("status", [500, 502, 503, 401, 429])
    async def test_bad_status_is_unavailable(self, status):
        adapter = _adapter(lambda request: httpx.Response(status))
        with pytest.raises(CredentialStoreUnavailable):
            await adapter.lookup("u@x.com")

    async def test_transport_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(CredentialStoreUnavailable):
            await _adapter(handler).lookup("u@x.com")

    async def test_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(CredentialStoreUnavailable):
            await _adapter(handler).lookup("u@x.com")

    async def test_invalid_json_is_unavailable(self):
        adapter = _adapter(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(CredentialStoreUnavailable):
            await adapter.lookup("u@x.com")

    async def test_register_conflict(self):
        adapter = _adapter(lambda request: httpx.Response(409, json={"message": "exists"}))
        with pytest.raises(ConstraintViolation):
            await adapter.create_identity("u@x.com", "hash")

    async def test_register_posts_normalized_phone(self):
        captured = {}

        def handler(request):
            captured.update(json.loads(request.content))
            return httpx.Response(201, json={"data": {**IDENTITY_PAYLOAD, "email": "new@x.com"}})

        identity = await _adapter(handler).create_identity(
            "new@x.com", "hash", role="MENTOR", phone_number="0701234567"
        )
        assert captured["phoneNumber"] == "+256701234567"
        assert captured["role"] == "MENTOR"
        assert identity.email == "new@x.com"

    async def test_concurrent_lookups_share_client(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(200, json=IDENTITY_PAYLOAD)

        adapter = _adapter(handler)
        await asyncio.gather(*(adapter.lookup("u@x.com") for _ in range(5)))
        assert len(calls) == 5
        await adapter.close()

    async def test_password_update_is_a_put_with_the_new_hash(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": {**IDENTITY_PAYLOAD, "passwordHash": "$argon2id$new"}})

        identity = await _adapter(handler).update_password_hash(IDENTITY_PAYLOAD["id"], "$argon2id$new")

        assert seen == {
            "method": "PUT",
            "path": f"/internal/users/{IDENTITY_PAYLOAD['id']}/password",
            "body": {"passwordHash": "$argon2id$new"},
        }
        assert identity.password_hash == "$argon2id$new"

    async def test_password_update_for_missing_identity_is_none(self):
        adapter = _adapter(lambda request: httpx.Response(404))
        assert await adapter.update_password_hash("gone", "$argon2id$new") is None
