import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionrotor_test_")
os.environ.setdefault("DATA_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("PRINCIPAL_STORE", "memory")
os.environ.setdefault("SESSION_BACKEND", "record")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("STORAGE_BACKOFF_MS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionrotor.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh snapshot directory per test so principals never leak between tests
    monkeypatch.setenv("DATA_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    # Restore env patched by the test before rebuilding settings on teardown
    monkeypatch.undo()
    reset_runtime_for_tests()


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


class FakeAsyncRedis:
    """In-process stand-in for ``redis.asyncio.Redis`` with a manual clock.

    Supports the commands the session store issues plus the compare-and-set
    script, and can be told to fail its next N calls with a connection error.
    """

    def __init__(self, *, fail_times: int = 0):
        self.data: dict[str, tuple[str, float | None]] = {}
        self.now = 1_000.0
        self.fail_times = fail_times
        self.calls: list[tuple] = []
        self.scripts: list[str] = []
        self.closed = False

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _maybe_fail(self) -> None:
        if self.fail_times > 0:
            from redis.exceptions import ConnectionError as RedisConnectionError

            self.fail_times -= 1
            raise RedisConnectionError("simulated connection failure")

    def _live(self, key: str):
        entry = self.data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.now:
            del self.data[key]
            return None
        return value

    async def get(self, key):
        self.calls.append(("get", key))
        self._maybe_fail()
        return self._live(key)

    async def set(self, key, value, ex=None):
        self.calls.append(("set", key, value, ex))
        self._maybe_fail()
        if ex is not None and ex < 1:
            raise ValueError("invalid expire time")
        self.data[key] = (value, self.now + ex if ex is not None else None)
        return True

    async def delete(self, key):
        self.calls.append(("delete", key))
        self._maybe_fail()
        return 1 if self.data.pop(key, None) is not None else 0

    async def exists(self, key):
        self.calls.append(("exists", key))
        self._maybe_fail()
        return 1 if self._live(key) is not None else 0

    async def ping(self):
        self._maybe_fail()
        return True

    async def aclose(self):
        self.closed = True

    def register_script(self, script):
        self.scripts.append(script)

        async def _compare_and_set(keys, args):
            self.calls.append(("evalsha", keys[0]))
            self._maybe_fail()
            expected, new_value, ttl = args
            if self._live(keys[0]) != expected:
                return 0
            self.data[keys[0]] = (new_value, self.now + int(ttl))
            return 1

        return _compare_and_set


class StoreHarness:
    """A session store under test plus a way to move its clock forward."""

    def __init__(self, name, store, principal_ids, advance):
        self.name = name
        self.store = store
        self.principal_ids = principal_ids
        self.advance = advance


def build_redis_harness(**store_kwargs) -> StoreHarness:
    from sessionrotor.storage.redis_cache import RedisSessionStore

    fake = FakeAsyncRedis()
    store = RedisSessionStore(
        "redis://fake:6379/0", client=fake, backoff_ms=0, **store_kwargs
    )
    harness = StoreHarness("redis", store, ["p-1", "p-2"], fake.advance)
    harness.fake = fake
    return harness


def build_record_harness(fs_root, **store_kwargs) -> StoreHarness:
    from datetime import datetime, timedelta, timezone

    from sessionrotor.storage.memory import MemoryStore
    from sessionrotor.storage.record_field import PrincipalFieldSessionStore

    principals = MemoryStore(fs_root=str(fs_root))
    ids = [
        principals.create_principal("+15550000001", "h1").id,
        principals.create_principal("+15550000002", "h2").id,
    ]
    store = PrincipalFieldSessionStore(principals, backoff_ms=0, **store_kwargs)
    clock = {"now": datetime(2026, 1, 1, tzinfo=timezone.utc)}
    store._now = lambda: clock["now"]

    def advance(seconds: float) -> None:
        clock["now"] = clock["now"] + timedelta(seconds=seconds)

    harness = StoreHarness("record", store, ids, advance)
    harness.principals = principals
    return harness


@pytest.fixture(params=["redis", "record"])
def store_harness(request, tmp_path) -> StoreHarness:
    if request.param == "redis":
        return build_redis_harness()
    return build_record_harness(tmp_path / "record")


@pytest.fixture
def redis_harness_factory():
    return build_redis_harness


@pytest.fixture
def record_harness_factory(tmp_path):
    counter = {"n": 0}

    def _build(**store_kwargs):
        counter["n"] += 1
        return build_record_harness(tmp_path / f"record-{counter['n']}", **store_kwargs)

    return _build
