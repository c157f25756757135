from __future__ import annotations

import asyncio
import hmac
from typing import Optional, Protocol

from sessionrotor.logging import get_logger
from sessionrotor.service.errors import (
    DuplicateIdentity,
    InvalidCredentials,
    PasswordConfirmationMismatch,
    PrincipalNotFound,
    SessionRevoked,
    TokenMismatch,
)
from sessionrotor.service.hashing import CredentialHasher
from sessionrotor.service.tokens import Claims, TokenCodec, TokenKind, TokenPair
from sessionrotor.storage.errors import ConstraintViolation
from sessionrotor.storage.models import Principal
from sessionrotor.storage.session_store import NOT_FOUND, SessionStore

logger = get_logger(__name__)

_INVALID_CREDENTIALS_MESSAGE = "invalid identity or password"


class PrincipalStore(Protocol):
    def create_principal(
        self, identity: str, secret_hash: str, *, name: Optional[str] = None
    ) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_identity(self, identity: str) -> Optional[Principal]: ...

    def get_secret_hash(self, principal_id: str) -> Optional[str]: ...


class TokenLifecycleManager:
    """Register, login, refresh-with-rotation and logout for single-session principals.

    Per principal the session moves NoSession -> Active -> (Rotated -> Active)*
    -> Revoked. The session store holds only the hash of the current refresh
    credential, so issuing a new pair always invalidates the previous one.
    Errors are raised as typed ``ServiceError`` subclasses and never retried
    here; storage retries belong to the session store.
    """

    def __init__(
        self,
        principals: PrincipalStore,
        sessions: SessionStore,
        codec: TokenCodec,
        hasher: CredentialHasher,
        *,
        revoke_on_token_mismatch: bool = True,
    ) -> None:
        self.principals = principals
        self.sessions = sessions
        self.codec = codec
        self.hasher = hasher
        self.revoke_on_token_mismatch = revoke_on_token_mismatch
        self.logger = logger

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.codec.ttl_for(TokenKind.REFRESH)

    async def register(
        self,
        identity: str,
        secret: str,
        secret_confirmation: str,
        *,
        name: Optional[str] = None,
    ) -> TokenPair:
        existing = await asyncio.to_thread(self.principals.get_principal_by_identity, identity)
        if existing:
            raise DuplicateIdentity("identity already registered")
        if not hmac.compare_digest(secret.encode(), secret_confirmation.encode()):
            raise PasswordConfirmationMismatch("passwords do not match")

        secret_hash = await asyncio.to_thread(self.hasher.hash, secret)
        try:
            principal = await asyncio.to_thread(
                self.principals.create_principal, identity, secret_hash, name=name
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration of the same identity
            raise DuplicateIdentity("identity already registered", detail=exc.detail)

        pair = await self._start_session(principal)
        self.logger.info("principal_registered", principal_id=principal.id)
        return pair

    async def login(self, identity: str, secret: str) -> TokenPair:
        principal = await asyncio.to_thread(self.principals.get_principal_by_identity, identity)
        if principal is None:
            await asyncio.to_thread(self.hasher.burn_compare, secret)
            self.logger.warning("login_failed", reason="unknown_identity")
            raise InvalidCredentials(_INVALID_CREDENTIALS_MESSAGE)

        stored_hash = await asyncio.to_thread(self.principals.get_secret_hash, principal.id)
        if not await asyncio.to_thread(self.hasher.compare, secret, stored_hash):
            self.logger.warning(
                "login_failed", reason="secret_mismatch", principal_id=principal.id
            )
            raise InvalidCredentials(_INVALID_CREDENTIALS_MESSAGE)

        # Any prior session is overwritten: one active session per principal
        pair = await self._start_session(principal)
        self.logger.info("login_succeeded", principal_id=principal.id)
        return pair

    async def refresh(self, principal_id: str, presented_refresh_token: str) -> TokenPair:
        """Rotate the session: accept the current refresh credential exactly once.

        Raises:
            SessionRevoked: no live session (logged out, expired, never created)
                or the principal no longer exists.
            TokenMismatch: the credential is not the current one, including
                the loser of two concurrent refreshes with the same credential.
        """
        stored_hash = await self.sessions.get(principal_id)
        if stored_hash is NOT_FOUND:
            self.logger.info("refresh_rejected", principal_id=principal_id, reason="no_session")
            raise SessionRevoked("session has been revoked or has expired")

        matches = await asyncio.to_thread(
            self.hasher.compare, presented_refresh_token, stored_hash
        )
        if not matches:
            await self._handle_mismatch(principal_id, reason="stale_credential")

        principal = await asyncio.to_thread(self.principals.get_principal, principal_id)
        if principal is None:
            await self.sessions.delete(principal_id)
            raise SessionRevoked("session has been revoked or has expired")

        pair = self.codec.issue_pair(principal)
        new_hash = await asyncio.to_thread(self.hasher.hash, pair.refresh_token)
        swapped = await self.sessions.compare_and_set(
            principal_id, stored_hash, new_hash, self.refresh_ttl_seconds
        )
        if not swapped:
            # A concurrent refresh (or logout) replaced the record first
            self.logger.warning(
                "refresh_rejected", principal_id=principal_id, reason="lost_rotation_race"
            )
            raise TokenMismatch("refresh token has already been used")

        self.logger.info("session_rotated", principal_id=principal_id)
        return pair

    async def refresh_with_token(self, presented_refresh_token: str) -> TokenPair:
        claims = self.codec.verify(presented_refresh_token, TokenKind.REFRESH)
        return await self.refresh(claims.subject_id, presented_refresh_token)

    async def logout(self, principal_id: str) -> None:
        await self.sessions.delete(principal_id)
        self.logger.info("session_revoked", principal_id=principal_id)

    def authenticate(self, access_token: str) -> Claims:
        return self.codec.verify(access_token, TokenKind.ACCESS)

    async def has_active_session(self, principal_id: str) -> bool:
        return await self.sessions.exists(principal_id)

    async def info(self, principal_id: str) -> Principal:
        principal = await asyncio.to_thread(self.principals.get_principal, principal_id)
        if principal is None:
            raise PrincipalNotFound("principal not found")
        return principal

    async def _start_session(self, principal: Principal) -> TokenPair:
        pair = self.codec.issue_pair(principal)
        refresh_hash = await asyncio.to_thread(self.hasher.hash, pair.refresh_token)
        await self.sessions.set(principal.id, refresh_hash, self.refresh_ttl_seconds)
        return pair

    async def _handle_mismatch(self, principal_id: str, *, reason: str) -> None:
        self.logger.warning("refresh_rejected", principal_id=principal_id, reason=reason)
        if self.revoke_on_token_mismatch:
            # A replayed credential means the pair may be compromised; end the session
            await self.sessions.delete(principal_id)
            self.logger.warning("session_revoked_on_mismatch", principal_id=principal_id)
        raise TokenMismatch("refresh token does not match the active session")


__all__ = ["PrincipalStore", "TokenLifecycleManager"]
