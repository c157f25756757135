from __future__ import annotations

import asyncio
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from sessionrotor.logging import get_logger
from sessionrotor.storage.session_store import (
    DEFAULT_STORAGE_BACKOFF_MS,
    DEFAULT_STORAGE_MAX_RETRIES,
    NOT_FOUND,
    LookupResult,
    call_with_retry,
    validate_ttl,
)

logger = get_logger(__name__)

_TRANSIENT_ERRORS = (RedisConnectionError, RedisTimeoutError)


class RedisSessionStore:
    """Session store kept in Redis; expiry is the key's native TTL."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    KEY_PREFIX = "auth:refresh:"

    # Atomic check-and-replace of the stored hash. Missing keys never match.
    _COMPARE_AND_SET_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current == ARGV[1] then
  redis.call('SET', KEYS[1], ARGV[2], 'EX', tonumber(ARGV[3]))
  return 1
end
return 0
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        max_retries: int = DEFAULT_STORAGE_MAX_RETRIES,
        backoff_ms: int = DEFAULT_STORAGE_BACKOFF_MS,
        use_sync_client: bool = False,
        client: Any = None,
    ) -> None:
        self.redis_url = redis_url
        self.max_retries = max_retries
        self.backoff_ms = backoff_ms
        if client is not None:
            self.client = client
        elif use_sync_client:
            # Sync client avoids binding connections to a short-lived event loop
            self.client = _SyncClientAdapter(
                Redis.from_url(
                    redis_url,
                    decode_responses=True,
                    socket_timeout=socket_timeout,
                    socket_connect_timeout=socket_timeout,
                )
            )
        else:
            self.client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self._compare_and_set = self.client.register_script(
            self._COMPARE_AND_SET_SCRIPT
        )

    @classmethod
    def _key(cls, principal_id: str) -> str:
        return f"{cls.KEY_PREFIX}{principal_id}"

    async def _call(self, operation: str, principal_id: Optional[str], func):
        return await call_with_retry(
            operation,
            func,
            transient=_TRANSIENT_ERRORS,
            max_retries=self.max_retries,
            backoff_ms=self.backoff_ms,
            backend="redis",
            principal_id=principal_id,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so startup checks do not bind the async
        # client to a temporary event loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set(self, principal_id: str, refresh_hash: str, ttl_seconds: int) -> None:
        key = self._key(principal_id)
        ttl = validate_ttl(ttl_seconds)
        await self._call(
            "set",
            principal_id,
            lambda: self.client.set(key, refresh_hash, ex=ttl),
        )

    async def get(self, principal_id: str) -> LookupResult:
        key = self._key(principal_id)
        value = await self._call("get", principal_id, lambda: self.client.get(key))
        if value is None:
            return NOT_FOUND
        return value

    async def delete(self, principal_id: str) -> None:
        key = self._key(principal_id)
        await self._call("delete", principal_id, lambda: self.client.delete(key))

    async def exists(self, principal_id: str) -> bool:
        key = self._key(principal_id)
        count = await self._call("exists", principal_id, lambda: self.client.exists(key))
        return int(count) == 1

    async def compare_and_set(
        self,
        principal_id: str,
        expected_hash: str,
        new_hash: str,
        ttl_seconds: int,
    ) -> bool:
        key = self._key(principal_id)
        ttl = validate_ttl(ttl_seconds)
        swapped = await self._call(
            "compare_and_set",
            principal_id,
            lambda: self._compare_and_set(keys=[key], args=[expected_hash, new_hash, ttl]),
        )
        return int(swapped) == 1

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except _TRANSIENT_ERRORS as exc:
            logger.warning("redis_ping_failed", error=str(exc))
            return False

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()


class _SyncClientAdapter:
    """Wraps a sync Redis client behind the awaitable subset the store uses.

    Each blocking call runs in a worker thread so the event loop keeps
    serving other requests while Redis answers.
    """

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._sync.get, key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return await asyncio.to_thread(self._sync.set, key, value, ex=ex)

    async def delete(self, key: str) -> int:
        return await asyncio.to_thread(self._sync.delete, key)

    async def exists(self, key: str) -> int:
        return await asyncio.to_thread(self._sync.exists, key)

    async def ping(self) -> bool:
        return await asyncio.to_thread(self._sync.ping)

    async def aclose(self) -> None:
        await asyncio.to_thread(self._sync.close)

    def register_script(self, script: str):
        sync_script = self._sync.register_script(script)

        async def _run(keys: list[str], args: list[Any]) -> Any:
            return await asyncio.to_thread(sync_script, keys=keys, args=args)

        return _run


__all__ = ["RedisSessionStore"]
