import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports youthauth settings
_test_tmp_dir = tempfile.mkdtemp(prefix="youthauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("USSD_GATEWAY_KEY", "test-ussd-gateway-key")
os.environ.setdefault("OPERATOR_API_KEY", "test-operator-key")
# Blacklist and rate limits use the in-process fallback
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from youthauth.service.circuit_breaker import CircuitBreaker  # noqa: E402
from youthauth.service.credentials import StoreCredentialAdapter  # noqa: E402
from youthauth.service.ledger import RefreshTokenLedger  # noqa: E402
from youthauth.service.notifications import NotificationDispatcher  # noqa: E402
from youthauth.service.passwords import PasswordVerifier  # noqa: E402
from youthauth.service.revocation import RevocationRegistry  # noqa: E402
from youthauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from youthauth.service.sessions import SessionOrchestrator  # noqa: E402
from youthauth.service.tokens import TokenCodec  # noqa: E402
from youthauth.storage.memory import MemoryStore  # noqa: E402

TEST_SIGNING_SECRET = "unit-test-signing-secret-0123456789abcdef"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh snapshot directory per test so memory-store state never leaks between tests
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"), persist=False)


@pytest.fixture
def passwords():
    # Cheap argon2 parameters keep the suite fast
    return PasswordVerifier(PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID))


@pytest.fixture
def codec():
    return TokenCodec(
        TEST_SIGNING_SECRET,
        issuer="youth-connect-auth-service",
        audience="youth-connect-platform",
    )


@pytest.fixture
def make_sessions(memory_store, passwords, codec):
    """Factory for an orchestrator over the memory store; keyword overrides replace collaborators."""

    def _make(**overrides) -> SessionOrchestrator:
        parts = {
            "credentials": StoreCredentialAdapter(memory_store),
            "passwords": passwords,
            "codec": codec,
            "ledger": RefreshTokenLedger(memory_store),
            "revocations": RevocationRegistry(),
            "breaker": CircuitBreaker("credential_store"),
            "notifications": NotificationDispatcher(),
        }
        parts.update(overrides)
        return SessionOrchestrator(**parts)

    return _make


@pytest.fixture
def youth_identity(memory_store, passwords):
    """The u@x.com identity whose stored hash matches "right"."""
    return memory_store.create_identity(
        "u@x.com",
        passwords.hash("right"),
        role="YOUTH",
        phone_number="+256700000001",
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
