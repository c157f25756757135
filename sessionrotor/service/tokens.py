from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sessionrotor.logging import get_logger
from sessionrotor.service.errors import (
    TokenExpired,
    TokenInvalidSignature,
    TokenMalformed,
)
from sessionrotor.storage.models import Principal

logger = get_logger(__name__)

CLAIMS_VERSION = 1

# Issued tokens are a few hundred bytes; anything far larger is not ours
MAX_TOKEN_LENGTH = 4096

_HEADER = {"alg": "HS256", "typ": "JWT"}
_CLAIM_KEYS = frozenset({"v", "sub", "attr", "iat", "exp", "jti"})


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class Claims:
    """Signed payload shared by access and refresh credentials."""

    subject_id: str
    display_attribute: str
    issued_at: int
    expires_at: int
    token_id: str
    version: int = CLAIMS_VERSION

    @classmethod
    def new(
        cls,
        subject_id: str,
        display_attribute: str,
        ttl_seconds: int,
        *,
        now: int | None = None,
    ) -> "Claims":
        issued_at = int(time.time()) if now is None else now
        return cls(
            subject_id=subject_id,
            display_attribute=display_attribute,
            issued_at=issued_at,
            expires_at=issued_at + ttl_seconds,
            token_id=uuid.uuid4().hex,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "v": self.version,
            "sub": self.subject_id,
            "attr": self.display_attribute,
            "iat": self.issued_at,
            "exp": self.expires_at,
            "jti": self.token_id,
        }

    @classmethod
    def from_payload(cls, payload: Any) -> "Claims":
        """Build claims from a decoded payload, rejecting any schema drift."""
        if not isinstance(payload, dict):
            raise TokenMalformed("token payload is not an object")
        keys = set(payload.keys())
        if keys != _CLAIM_KEYS:
            raise TokenMalformed(
                "token payload does not match claims schema",
                detail={
                    "unexpected": sorted(keys - _CLAIM_KEYS),
                    "missing": sorted(_CLAIM_KEYS - keys),
                },
            )
        if payload["v"] != CLAIMS_VERSION or not _is_int(payload["v"]):
            raise TokenMalformed("unsupported claims version")
        for key in ("iat", "exp"):
            if not _is_int(payload[key]):
                raise TokenMalformed(f"claim {key} must be an integer")
        for key in ("sub", "attr", "jti"):
            if not isinstance(payload[key], str) or (key != "attr" and not payload[key]):
                raise TokenMalformed(f"claim {key} must be a non-empty string")
        return cls(
            subject_id=payload["sub"],
            display_attribute=payload["attr"],
            issued_at=payload["iat"],
            expires_at=payload["exp"],
            token_id=payload["jti"],
            version=payload["v"],
        )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


class TokenCodec:
    """Signs and verifies access and refresh credentials.

    The two kinds use distinct secrets and lifetimes so a credential of one
    kind never verifies as the other. No I/O happens here.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        leeway_seconds: int = 0,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("token secrets must be non-empty")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {
            TokenKind.ACCESS: access_secret.encode(),
            TokenKind.REFRESH: refresh_secret.encode(),
        }
        self._ttls = {
            TokenKind.ACCESS: access_ttl_seconds,
            TokenKind.REFRESH: refresh_ttl_seconds,
        }
        self.leeway_seconds = leeway_seconds

    def _now(self) -> int:
        return int(time.time())

    def ttl_for(self, kind: TokenKind) -> int:
        return self._ttls[kind]

    def claims_for(self, principal: Principal, kind: TokenKind) -> Claims:
        return Claims.new(
            principal.id, principal.identity, self._ttls[kind], now=self._now()
        )

    def issue_access(self, claims: Claims) -> str:
        return self._encode(claims, TokenKind.ACCESS)

    def issue_refresh(self, claims: Claims) -> str:
        return self._encode(claims, TokenKind.REFRESH)

    def issue_pair(self, principal: Principal) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access(self.claims_for(principal, TokenKind.ACCESS)),
            refresh_token=self.issue_refresh(
                self.claims_for(principal, TokenKind.REFRESH)
            ),
        )

    def verify(self, token: str, kind: TokenKind) -> Claims:
        """Return the claims of ``token`` if it is a valid, unexpired ``kind`` credential.

        Raises:
            TokenMalformed: oversized, not three base64url segments, bad or
                overly nested JSON, foreign algorithm, or a payload outside
                the claims schema.
            TokenInvalidSignature: signature does not match the ``kind`` secret.
            TokenExpired: signature is fine but ``exp`` has passed.
        """
        if not isinstance(token, str):
            raise TokenMalformed("token must be a string")
        if len(token) > MAX_TOKEN_LENGTH:
            raise TokenMalformed("token is too long")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenMalformed("token must have three segments")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, RecursionError):
            logger.warning("jwt_header_decode_failed", kind=kind.value)
            raise TokenMalformed("token header is not valid JSON")
        # Algorithm pinning; "none" and asymmetric algorithms are never accepted
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenMalformed("unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._sign(signing_input, kind)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalidSignature("token signature is invalid")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformed("token payload is not valid JSON")
        claims = Claims.from_payload(payload)
        if claims.expires_at + self.leeway_seconds <= self._now():
            raise TokenExpired("token has expired")
        return claims

    def _encode(self, claims: Claims, kind: TokenKind) -> str:
        header_enc = self._encode_segment(
            json.dumps(_HEADER, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def _sign(self, signing_input: str, kind: TokenKind) -> str:
        return self._encode_segment(
            hmac.new(
                self._secrets[kind], signing_input.encode(), hashlib.sha256
            ).digest()
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)


__all__ = ["CLAIMS_VERSION", "Claims", "TokenCodec", "TokenKind", "TokenPair"]
