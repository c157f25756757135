from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

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


class PrincipalFieldSessionStore:
    """Session store kept as nullable fields on the principal's own record.

    The record has no native expiry, so ``issued_at + ttl`` is checked on
    every read. An expired record reads as ``NOT_FOUND`` and is cleared.
    """

    def __init__(
        self,
        store: Any,
        *,
        max_retries: int = DEFAULT_STORAGE_MAX_RETRIES,
        backoff_ms: int = DEFAULT_STORAGE_BACKOFF_MS,
    ) -> None:
        self.store = store
        self.max_retries = max_retries
        self.backoff_ms = backoff_ms
        self._transient = tuple(getattr(store, "TRANSIENT_ERRORS", ()))

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _call(self, operation: str, principal_id: Optional[str], func, *args, **kwargs):
        return await call_with_retry(
            operation,
            lambda: asyncio.to_thread(func, *args, **kwargs),
            transient=self._transient,
            max_retries=self.max_retries,
            backoff_ms=self.backoff_ms,
            backend="record",
            principal_id=principal_id,
        )

    async def set(self, principal_id: str, refresh_hash: str, ttl_seconds: int) -> None:
        ttl = validate_ttl(ttl_seconds)
        await self._call(
            "set",
            principal_id,
            self.store.set_refresh_record,
            principal_id,
            refresh_hash,
            issued_at=self._now(),
            ttl_seconds=ttl,
        )

    async def get(self, principal_id: str) -> LookupResult:
        record = await self._call(
            "get", principal_id, self.store.get_refresh_record, principal_id
        )
        if record is None:
            return NOT_FOUND
        if record.is_expired(self._now()):
            logger.info("session_record_expired", principal_id=principal_id)
            # Conditional so a concurrent fresh set is not wiped
            await self._call(
                "expire",
                principal_id,
                self.store.clear_refresh_record,
                principal_id,
                expected_hash=record.refresh_hash,
            )
            return NOT_FOUND
        return record.refresh_hash

    async def delete(self, principal_id: str) -> None:
        await self._call(
            "delete", principal_id, self.store.clear_refresh_record, principal_id
        )

    async def exists(self, principal_id: str) -> bool:
        return await self.get(principal_id) is not NOT_FOUND

    async def compare_and_set(
        self,
        principal_id: str,
        expected_hash: str,
        new_hash: str,
        ttl_seconds: int,
    ) -> bool:
        ttl = validate_ttl(ttl_seconds)
        return bool(
            await self._call(
                "compare_and_set",
                principal_id,
                self.store.compare_and_set_refresh_record,
                principal_id,
                expected_hash,
                new_hash,
                issued_at=self._now(),
                ttl_seconds=ttl,
            )
        )

    async def ping(self) -> bool:
        try:
            await asyncio.to_thread(self.store.verify_connection)
        except Exception as exc:
            logger.warning("record_store_ping_failed", error=str(exc))
            return False
        return True

    async def close(self) -> None:
        # The principal store is owned by the runtime and closed there
        return None


__all__ = ["PrincipalFieldSessionStore"]
