import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="reportguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_PEPPER", "test-pepper-for-testing-only")
# Cheap Argon2 parameters keep the suite fast; production defaults are covered in test_config
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST_KIB", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
# No Redis in unit tests; the runtime falls back under TEST_MODE
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from reportguard.config import Settings  # noqa: E402
from reportguard.service.audit import SecurityAuditor  # noqa: E402
from reportguard.service.auth import AuthService  # noqa: E402
from reportguard.service.clock import FrozenClock  # noqa: E402
from reportguard.service.crypto import SecretCipher  # noqa: E402
from reportguard.service.mfa import TotpMfaManager  # noqa: E402
from reportguard.service.passwords import PasswordHasher  # noqa: E402
from reportguard.service.permissions import PermissionResolver  # noqa: E402
from reportguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from reportguard.service.sessions import SessionManager  # noqa: E402
from reportguard.service.tokens import TokenService  # noqa: E402
from reportguard.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "Correct-Horse-42"


class RecordingAuditSink:
    """Keeps every audited event in memory for assertions."""

    def __init__(self):
        self.events = []

    async def log_security_event(self, action, resource, **kwargs):
        self.events.append({"action": action, "resource": resource, **kwargs})

    def actions(self):
        return [event["action"] for event in self.events]

    def find(self, action):
        return [event for event in self.events if event["action"] == action]


class FakeCache:
    """In-process stand-in for RedisCache's denylist and lock API."""

    def __init__(self):
        self.denylist = {}
        self.locks = {}
        self.fail = False

    async def denylist_access_token(self, jti, ttl_seconds):
        if self.fail:
            raise ConnectionError("redis down")
        if ttl_seconds > 0:
            self.denylist[jti] = ttl_seconds

    async def is_access_token_denylisted(self, jti):
        if self.fail:
            raise ConnectionError("redis down")
        return jti in self.denylist

    async def acquire_lock(self, name, ttl_seconds):
        if name in self.locks:
            return None
        self.locks[name] = f"owner-{len(self.locks) + 1}"
        return self.locks[name]

    async def release_lock(self, name, owner):
        if self.locks.get(name) == owner:
            del self.locks[name]
            return True
        return False


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        test_mode=True,
        use_memory_store=True,
        jwt_secret="unit-test-signing-key-0123456789abcdef",
        password_pepper="unit-test-pepper-value",
        argon2_time_cost=1,
        argon2_memory_cost_kib=1024,
        argon2_parallelism=1,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def auditor(audit_sink):
    return SecurityAuditor(audit_sink)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def hasher(settings):
    return PasswordHasher.from_settings(settings)


@pytest.fixture
def cipher(settings):
    return SecretCipher(settings.jwt_secret)


@pytest.fixture
def cache():
    return FakeCache()


@pytest.fixture
def mfa_manager(store, settings, cipher, hasher, auditor, clock):
    return TotpMfaManager(store, settings, cipher=cipher, hasher=hasher, auditor=auditor, clock=clock)


@pytest.fixture
def token_service(store, settings, cache, auditor, clock):
    return TokenService(store, settings, cache=cache, auditor=auditor, clock=clock)


@pytest.fixture
def session_manager(store, settings, token_service, auditor, clock):
    return SessionManager(store, settings, tokens=token_service, auditor=auditor, clock=clock)


@pytest.fixture
def permission_resolver(store, auditor, clock):
    return PermissionResolver(store, auditor=auditor, clock=clock)


@pytest.fixture
def auth_service(
    store, settings, hasher, mfa_manager, token_service, session_manager, permission_resolver, auditor, clock
):
    return AuthService(
        store,
        settings,
        hasher=hasher,
        mfa=mfa_manager,
        tokens=token_service,
        sessions=session_manager,
        permissions=permission_resolver,
        auditor=auditor,
        clock=clock,
    )


@pytest.fixture
def make_user(store, hasher):
    """Factory: create an active user with ``TEST_PASSWORD`` (or a given one)."""
    counter = {"n": 0}

    def _make(username=None, password=TEST_PASSWORD, **kwargs):
        counter["n"] += 1
        username = username or f"user{counter['n']}"
        user = store.create_user(username, f"{username}@example.com", **kwargs)
        password_hash, salt = hasher.hash(password)
        store.save_password(user.id, password_hash, salt, hasher.algorithm)
        return user

    return _make


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
