"""Unit tests for the storage layer.

Tests for:
- Redis session store key layout, TTL handling and retry behaviour
- Principal-record session store expiry cleanup
- MemoryStore principal CRUD and snapshot persistence
- Bounded retry helper
- Sync Redis client adapter threading
"""

import threading
from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from sessionrotor.service.errors import StorageUnavailable
from sessionrotor.storage.errors import ConstraintViolation
from sessionrotor.storage.memory import MemoryStore
from sessionrotor.storage.record_field import PrincipalFieldSessionStore
from sessionrotor.storage.redis_cache import RedisSessionStore, _SyncClientAdapter
from sessionrotor.storage.session_store import NOT_FOUND, call_with_retry


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


class TestRedisSessionStore:
    """Tests specific to the Redis backend."""

    async def test_keys_use_refresh_prefix(self, redis_harness_factory):
        """Records live under auth:refresh:{principal_id} with a native TTL."""
        harness = redis_harness_factory()

        await harness.store.set("abc", "hash-a", 604800)

        assert harness.fake.calls[-1] == ("set", "auth:refresh:abc", "hash-a", 604800)

    async def test_zero_ttl_is_rejected_before_redis(self, redis_harness_factory):
        """A sub-second lifetime never reaches the client."""
        harness = redis_harness_factory()

        with pytest.raises(ValueError):
            await harness.store.set("abc", "hash-a", 0)

        assert harness.fake.calls == []

    async def test_registers_compare_and_set_script(self, redis_harness_factory):
        """The swap script reads, compares and rewrites with a TTL in one call."""
        harness = redis_harness_factory()

        (script,) = harness.fake.scripts
        assert "redis.call('GET', KEYS[1])" in script
        assert "if current == ARGV[1] then" in script
        assert "redis.call('SET', KEYS[1], ARGV[2], 'EX', tonumber(ARGV[3]))" in script
        assert script.rstrip().endswith("return 0")

    async def test_transient_failures_are_retried(self, redis_harness_factory):
        """Connection errors within the retry budget are invisible to callers."""
        harness = redis_harness_factory(max_retries=2)
        harness.fake.fail_times = 2

        await harness.store.set("abc", "hash-a", 60)

        assert await harness.store.get("abc") == "hash-a"

    async def test_exhausted_retries_raise_storage_unavailable(self, redis_harness_factory):
        harness = redis_harness_factory(max_retries=1)
        harness.fake.fail_times = 5

        with pytest.raises(StorageUnavailable) as exc_info:
            await harness.store.get("abc")

        assert exc_info.value.status_code == 503
        assert exc_info.value.detail["retryable"] is True
        assert exc_info.value.detail["operation"] == "get"
        assert exc_info.value.detail["attempts"] == 2
        assert isinstance(exc_info.value.__cause__, RedisConnectionError)

    async def test_ping_failure_returns_false(self, redis_harness_factory):
        harness = redis_harness_factory()
        harness.fake.fail_times = 1

        assert await harness.store.ping() is False

    async def test_close_closes_client(self, redis_harness_factory):
        harness = redis_harness_factory()

        await harness.store.close()

        assert harness.fake.closed is True


class TestPrincipalFieldSessionStore:
    """Tests specific to the principal-record backend."""

    async def test_expired_record_is_cleared_on_read(self, record_harness_factory):
        """Expiry is enforced by the application and stale fields are removed."""
        harness = record_harness_factory()
        pid = harness.principal_ids[0]
        await harness.store.set(pid, "hash-a", 5)
        harness.advance(6)

        assert await harness.store.get(pid) is NOT_FOUND
        assert harness.principals.get_refresh_record(pid) is None

    async def test_set_for_unknown_principal_raises(self, record_harness_factory):
        harness = record_harness_factory()

        with pytest.raises(ConstraintViolation) as exc_info:
            await harness.store.set("missing", "hash-a", 60)

        assert exc_info.value.message == "principal not found for session"
        assert exc_info.value.detail == {"principal_id": "missing"}

    async def test_session_fields_survive_restart(self, tmp_path):
        """The JSON snapshot carries session fields across store instances."""
        first = MemoryStore(fs_root=str(tmp_path))
        principal = first.create_principal("+15551230000", "secret-hash")
        await PrincipalFieldSessionStore(first).set(principal.id, "hash-a", 3600)

        reloaded = MemoryStore(fs_root=str(tmp_path))

        assert await PrincipalFieldSessionStore(reloaded).get(principal.id) == "hash-a"


class TestMemoryStorePrincipals:
    def test_create_and_lookup(self, memory_store):
        principal = memory_store.create_principal("+15551234567", "h", name="Ada")

        assert memory_store.get_principal(principal.id) == principal
        assert memory_store.get_principal_by_identity("+15551234567") == principal
        assert memory_store.get_secret_hash(principal.id) == "h"
        assert principal.created_at.tzinfo is not None

    def test_duplicate_identity_raises(self, memory_store):
        memory_store.create_principal("+15551234567", "h")

        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_principal("+15551234567", "h2")

        assert exc_info.value.detail == {"field": "identity"}

    def test_unknown_lookups_return_none(self, memory_store):
        assert memory_store.get_principal("nope") is None
        assert memory_store.get_principal_by_identity("+15550000000") is None
        assert memory_store.get_secret_hash("nope") is None

    def test_clear_with_expected_hash_is_conditional(self, memory_store):
        principal = memory_store.create_principal("+15551234567", "h")
        now = datetime.now(timezone.utc)
        memory_store.set_refresh_record(principal.id, "hash-a", issued_at=now, ttl_seconds=60)

        assert memory_store.clear_refresh_record(principal.id, expected_hash="other") is False
        assert memory_store.clear_refresh_record(principal.id, expected_hash="hash-a") is True
        assert memory_store.get_refresh_record(principal.id) is None


class TestCallWithRetry:
    async def test_non_transient_errors_propagate_immediately(self):
        attempts = {"n": 0}

        async def _boom():
            attempts["n"] += 1
            raise KeyError("not transient")

        with pytest.raises(KeyError):
            await call_with_retry(
                "get", _boom, transient=(RedisConnectionError,), backoff_ms=0
            )

        assert attempts["n"] == 1

    async def test_returns_first_success(self):
        attempts = {"n": 0}

        async def _flaky():
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise RedisConnectionError("down")
            return "ok"

        result = await call_with_retry(
            "get", _flaky, transient=(RedisConnectionError,), max_retries=2, backoff_ms=0
        )

        assert result == "ok"
        assert attempts["n"] == 3


class FakeSyncRedis:
    """Blocking client double that records which thread served each command."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.threads: list[int] = []
        self.closed = False

    def _seen(self) -> None:
        self.threads.append(threading.get_ident())

    def get(self, key):
        self._seen()
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self._seen()
        self.data[key] = value
        return True

    def delete(self, key):
        self._seen()
        return 1 if self.data.pop(key, None) is not None else 0

    def exists(self, key):
        self._seen()
        return 1 if key in self.data else 0

    def ping(self):
        self._seen()
        return True

    def close(self):
        self._seen()
        self.closed = True

    def register_script(self, script):
        def _script(keys, args):
            self._seen()
            expected, new_value, _ttl = args
            if self.data.get(keys[0]) != expected:
                return 0
            self.data[keys[0]] = new_value
            return 1

        return _script


class TestSyncClientAdapter:
    """The sync-client path keeps blocking I/O off the event loop thread."""

    async def test_commands_run_off_the_loop_thread(self):
        sync = FakeSyncRedis()
        store = RedisSessionStore(
            "redis://fake:6379/0", client=_SyncClientAdapter(sync), backoff_ms=0
        )
        loop_thread = threading.get_ident()

        await store.set("abc", "hash-a", 60)
        assert await store.get("abc") == "hash-a"
        assert await store.compare_and_set("abc", "hash-a", "hash-b", 60) is True
        assert await store.exists("abc") is True
        assert await store.ping() is True
        await store.delete("abc")
        await store.close()

        assert len(sync.threads) == 7
        assert loop_thread not in sync.threads
        assert sync.closed is True
        assert sync.data == {}
