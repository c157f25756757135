from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from sessionrotor.api.schemas import (
    Envelope,
    LoginRequest,
    PrincipalResponse,
    RegisterRequest,
    TokenPairResponse,
)
from sessionrotor.logging import get_logger
from sessionrotor.service.errors import TokenError
from sessionrotor.service.runtime import get_runtime
from sessionrotor.service.tokens import Claims, TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _pair_envelope(pair: TokenPair) -> Envelope:
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=pair.access_token, refresh_token=pair.refresh_token
        ),
    )


async def get_principal_claims(
    authorization: Optional[str] = Header(None),
) -> Claims:
    token = _extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return get_runtime().lifecycle.authenticate(token)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a principal and open its session.

    Raises:
        400: identity already registered, or the two secrets differ
    """
    runtime = get_runtime()
    pair = await runtime.lifecycle.register(
        body.identity,
        body.secret,
        body.secret_confirmation,
        name=body.name,
    )
    return _pair_envelope(pair)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with identity and secret; replaces any existing session.

    Raises:
        401: unknown identity or wrong secret (indistinguishable)
    """
    runtime = get_runtime()
    pair = await runtime.lifecycle.login(body.identity, body.secret)
    return _pair_envelope(pair)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(authorization: Optional[str] = Header(None)):
    """Rotate the session using the refresh credential in the Authorization header.

    Raises:
        401: missing, malformed, expired or wrongly signed refresh credential
        403: session revoked or the credential was already rotated away
    """
    token = _extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    runtime = get_runtime()
    pair = await runtime.lifecycle.refresh_with_token(token)
    return _pair_envelope(pair)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    # Always 200: an unusable access credential simply has nothing to revoke
    token = _extract_bearer(authorization)
    if token:
        runtime = get_runtime()
        try:
            claims = runtime.lifecycle.authenticate(token)
        except TokenError as exc:
            logger.info("logout_without_valid_token", error_code=exc.error_code)
        else:
            await runtime.lifecycle.logout(claims.subject_id)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(claims: Claims = Depends(get_principal_claims)):
    runtime = get_runtime()
    principal = await runtime.lifecycle.info(claims.subject_id)
    active = await runtime.lifecycle.has_active_session(principal.id)
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            id=principal.id,
            identity=principal.identity,
            name=principal.name,
            created_at=principal.created_at,
            session_active=active,
        ),
    )
