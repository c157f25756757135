from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Protocol, TypeVar, Union

from sessionrotor.logging import get_logger
from sessionrotor.service.errors import StorageUnavailable

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_STORAGE_MAX_RETRIES = 2  # 3 attempts in total
DEFAULT_STORAGE_BACKOFF_MS = 50  # quadruples each retry: 50ms, 200ms
MAX_RETRIES_HARD_CAP = 5


class _NotFound:
    """Sentinel returned by ``SessionStore.get`` for an absent or expired session."""

    _instance: "_NotFound | None" = None

    def __new__(cls) -> "_NotFound":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND = _NotFound()

LookupResult = Union[str, _NotFound]


class SessionStore(Protocol):
    """Keyed, TTL-bearing map of principal id to current refresh-credential hash.

    Every method is a single round trip to the backing store. Backends must
    be indistinguishable to callers, including expiry: once the TTL of the
    last ``set`` elapses, ``get`` returns ``NOT_FOUND`` and ``exists`` False.
    A ``ttl_seconds`` below 1 is a ``ValueError`` on every backend.
    """

    async def set(self, principal_id: str, refresh_hash: str, ttl_seconds: int) -> None: ...

    async def get(self, principal_id: str) -> LookupResult: ...

    async def delete(self, principal_id: str) -> None: ...

    async def exists(self, principal_id: str) -> bool: ...

    async def compare_and_set(
        self,
        principal_id: str,
        expected_hash: str,
        new_hash: str,
        ttl_seconds: int,
    ) -> bool: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def validate_ttl(ttl_seconds: int) -> int:
    """Return ``ttl_seconds`` as an int, refusing lifetimes under one second."""
    ttl = int(ttl_seconds)
    if ttl < 1:
        raise ValueError(f"ttl_seconds must be at least 1, got {ttl_seconds!r}")
    return ttl


async def call_with_retry(
    operation: str,
    func: Callable[[], Awaitable[T]],
    *,
    transient: tuple[type[BaseException], ...],
    max_retries: int = DEFAULT_STORAGE_MAX_RETRIES,
    backoff_ms: int = DEFAULT_STORAGE_BACKOFF_MS,
    **log_fields: Any,
) -> T:
    """Run a store call, retrying transport failures with exponential backoff.

    Only exceptions listed in ``transient`` are retried; anything else
    propagates untouched. When retries are exhausted the last transport error
    is wrapped in ``StorageUnavailable``.
    """
    max_retries = min(max(max_retries, 0), MAX_RETRIES_HARD_CAP)
    last_error: BaseException | None = None
    attempt = 0
    while attempt <= max_retries:
        try:
            return await func()
        except transient as exc:
            last_error = exc
            logger.warning(
                "session_store_retry",
                operation=operation,
                attempt=attempt + 1,
                max_retries=max_retries,
                error=str(exc),
                **log_fields,
            )
        attempt += 1
        if attempt <= max_retries and backoff_ms > 0:
            # backoff_ms * 4^(attempt-1): 50ms, 200ms, 800ms...
            await asyncio.sleep(backoff_ms * (4 ** (attempt - 1)) / 1000.0)

    logger.error(
        "session_store_unavailable",
        operation=operation,
        attempts=attempt,
        error=str(last_error),
        **log_fields,
    )
    raise StorageUnavailable(
        detail={"operation": operation, "attempts": attempt}
    ) from last_error


__all__ = [
    "DEFAULT_STORAGE_BACKOFF_MS",
    "DEFAULT_STORAGE_MAX_RETRIES",
    "LookupResult",
    "NOT_FOUND",
    "SessionStore",
    "call_with_retry",
    "validate_ttl",
]
