import asyncio
import inspect
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

# Environment must be in place before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="warden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Store-only sessions unless a test wires a cache explicitly
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

from warden.config import Settings  # noqa: E402
from warden.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from warden.storage.models import AuditEvent  # noqa: E402

STRONG_PASSWORD = "Str0ng!Passw0rd"
OTHER_PASSWORD = "An0ther#Secret9"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeCache:
    """Async key-value cache whose TTLs run against a FakeClock."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.entries: Dict[str, Tuple[str, datetime]] = {}
        self.gets = 0

    def _live(self, key: str) -> Optional[Tuple[str, datetime]]:
        entry = self.entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self.clock():
            self.entries.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        self.gets += 1
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.entries[key] = (value, self.clock() + timedelta(seconds=ttl_seconds))

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.entries.pop(key, None) is not None)

    async def ttl(self, key: str) -> Optional[int]:
        entry = self._live(key)
        if entry is None:
            return None
        return int((entry[1] - self.clock()).total_seconds())


class FailingCache:
    """Cache whose every call raises, like an unreachable Redis."""

    async def get(self, key: str) -> Optional[str]:
        raise ConnectionError("cache unavailable")

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        raise ConnectionError("cache unavailable")

    async def delete(self, *keys: str) -> int:
        raise ConnectionError("cache unavailable")

    async def ttl(self, key: str) -> Optional[int]:
        raise ConnectionError("cache unavailable")


class RecordingAuditSink:
    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture(autouse=True)
def reset_runtime_state(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def fake_cache(clock):
    return FakeCache(clock)


@pytest.fixture
def failing_cache():
    return FailingCache()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="unit-test-secret-with-enough-entropy-0123456789",
        redis_url=None,
        use_memory_store=True,
        test_mode=True,
        shared_fs_root=str(tmp_path / "stack"),
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
        password_hash_parallelism=1,
    )


@pytest.fixture
def stack(settings, clock, audit_sink):
    """Fully wired services over a memory store and a fake clock."""
    return Runtime(settings, clock=clock, audit_sink=audit_sink)


@pytest.fixture
def make_user(stack):
    counter = {"n": 0}

    def _make(email: Optional[str] = None, password: str = STRONG_PASSWORD, username: Optional[str] = None):
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        user = stack.credentials.create_user(email, "Test", "User", password, username)
        stack.resolver.assign_default_roles(user.id)
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
