from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionrotor.config import (
    PrincipalStoreKind,
    SessionBackend,
    get_settings,
    reset_settings_cache,
)
from sessionrotor.logging import get_logger
from sessionrotor.service.hashing import CredentialHasher
from sessionrotor.service.lifecycle import TokenLifecycleManager
from sessionrotor.service.tokens import TokenCodec
from sessionrotor.storage.memory import MemoryStore
from sessionrotor.storage.postgres import PostgresStore
from sessionrotor.storage.record_field import PrincipalFieldSessionStore
from sessionrotor.storage.redis_cache import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            principal_store=self.settings.principal_store.value,
            session_backend=self.settings.session_backend.value,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                PostgresStore(self.settings.database_url)
                if self.settings.principal_store == PrincipalStoreKind.POSTGRES
                else MemoryStore(fs_root=self.settings.data_root)
            )
            logger.info(
                "runtime_store_initialized",
                store_type=self.settings.principal_store.value,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=self.settings.principal_store.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.sessions = self._build_session_store()
        self.hasher = CredentialHasher(
            time_cost=self.settings.argon2_time_cost,
            memory_cost=self.settings.argon2_memory_cost,
        )
        self.codec = TokenCodec(
            self.settings.jwt_access_secret,
            self.settings.jwt_refresh_secret,
            access_ttl_seconds=self.settings.access_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_ttl_seconds,
            leeway_seconds=self.settings.jwt_leeway_seconds,
        )
        self.lifecycle = TokenLifecycleManager(
            self.store,
            self.sessions,
            self.codec,
            self.hasher,
            revoke_on_token_mismatch=self.settings.revoke_on_token_mismatch,
        )

    def _build_record_store(self) -> PrincipalFieldSessionStore:
        return PrincipalFieldSessionStore(
            self.store,
            max_retries=self.settings.storage_max_retries,
            backoff_ms=self.settings.storage_backoff_ms,
        )

    def _build_session_store(self):
        if self.settings.session_backend == SessionBackend.RECORD:
            return self._build_record_store()

        redis_error: Exception | None = None
        try:
            # Sync client in test mode avoids event loop binding across TestClients
            sessions = RedisSessionStore(
                self.settings.redis_url,
                socket_timeout=self.settings.redis_socket_timeout,
                max_retries=self.settings.storage_max_retries,
                backoff_ms=self.settings.storage_backoff_ms,
                use_sync_client=self.settings.test_mode,
            )
            sessions.verify_connection()
            return sessions
        except Exception as exc:
            redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for SESSION_BACKEND=redis; start Redis, set "
                "SESSION_BACKEND=record, or set ALLOW_REDIS_FALLBACK_DEV=true."
            ) from redis_error

        fallback_mode = (
            "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        )
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
            message=f"Running without Redis under {fallback_mode}; sessions live on principal records.",
            mode=fallback_mode,
        )
        return self._build_record_store()

    async def close(self) -> None:
        await self.sessions.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


_pending_close_tasks: set[asyncio.Task] = set()


def _on_close_done(task: asyncio.Task) -> None:
    _pending_close_tasks.discard(task)
    if task.cancelled():
        logger.warning("runtime_close_cancelled")
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("runtime_close_failed", error=str(exc))


def _close_quietly(current: Runtime) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    try:
        if loop is not None:
            # Strong reference until done; the loop only keeps a weak one
            task = loop.create_task(current.close())
            _pending_close_tasks.add(task)
            task.add_done_callback(_on_close_done)
        else:
            asyncio.run(current.close())
    except Exception as exc:
        # Connection may already be closed
        logger.warning("runtime_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_quietly(runtime)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
