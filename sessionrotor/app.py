from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sessionrotor.api.error_handling import register_exception_handlers
from sessionrotor.api.routes import router
from sessionrotor.config import Settings
from sessionrotor.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release store connections on shutdown."""
    from sessionrotor.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info(
        "startup_complete",
        session_backend=type(runtime.sessions).__name__,
        principal_store=type(runtime.store).__name__,
    )

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="SessionRotor", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation ID for logs and the X-Request-ID header.

    Taken from the client's X-Request-ID header when present, otherwise
    generated.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report connectivity of the principal store and the session store."""
    from sessionrotor.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, probe) -> bool:
        try:
            return bool(await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS))
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    async def _store_probe() -> bool:
        await asyncio.to_thread(runtime.store.verify_connection)
        return True

    store_ok = await _run_bounded("principal_store", _store_probe)
    checks["principal_store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": type(runtime.store).__name__,
    }
    sessions_ok = await _run_bounded("session_store", runtime.sessions.ping)
    checks["session_store"] = {
        "status": "healthy" if sessions_ok else "unhealthy",
        "type": type(runtime.sessions).__name__,
    }

    healthy = store_ok and sessions_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app() -> FastAPI:
    return app
