"""Tests for token signing and verification.

Tests for:
- Access/refresh round trips and kind separation
- Expiry with and without leeway
- Malformed, tampered and foreign-algorithm tokens
- Strict claims schema
"""

import json

import pytest

from sessionrotor.service.errors import (
    TokenExpired,
    TokenInvalidSignature,
    TokenMalformed,
)
from sessionrotor.service.tokens import MAX_TOKEN_LENGTH, Claims, TokenCodec, TokenKind
from sessionrotor.storage.models import Principal

NOW = 1_700_000_000


@pytest.fixture
def codec():
    codec = TokenCodec(
        "access-secret-for-tests",
        "refresh-secret-for-tests",
        access_ttl_seconds=900,
        refresh_ttl_seconds=604800,
    )
    codec._now = lambda: NOW
    return codec


@pytest.fixture
def principal():
    return Principal.new("+15551234567", name="Ada")


def _segment(text):
    return TokenCodec._encode_segment(text.encode())


def _forge(codec, header, payload, kind=TokenKind.ACCESS):
    """Build a correctly signed token around arbitrary header and payload."""
    header_enc = codec._encode_segment(json.dumps(header).encode())
    payload_enc = codec._encode_segment(json.dumps(payload).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{codec._sign(signing_input, kind)}"


class TestRoundTrip:
    def test_access_token_verifies_as_access(self, codec, principal):
        pair = codec.issue_pair(principal)

        claims = codec.verify(pair.access_token, TokenKind.ACCESS)

        assert claims.subject_id == principal.id
        assert claims.display_attribute == "+15551234567"
        assert claims.issued_at == NOW
        assert claims.expires_at == NOW + 900
        assert claims.version == 1

    def test_refresh_token_uses_refresh_lifetime(self, codec, principal):
        pair = codec.issue_pair(principal)

        claims = codec.verify(pair.refresh_token, TokenKind.REFRESH)

        assert claims.expires_at == NOW + 604800

    def test_consecutive_pairs_differ(self, codec, principal):
        """Pairs issued within the same second are still distinct credentials."""
        first = codec.issue_pair(principal)
        second = codec.issue_pair(principal)

        assert first.refresh_token != second.refresh_token
        assert first.access_token != second.access_token


class TestKindSeparation:
    def test_access_token_rejected_as_refresh(self, codec, principal):
        pair = codec.issue_pair(principal)

        with pytest.raises(TokenInvalidSignature):
            codec.verify(pair.access_token, TokenKind.REFRESH)

    def test_refresh_token_rejected_as_access(self, codec, principal):
        pair = codec.issue_pair(principal)

        with pytest.raises(TokenInvalidSignature):
            codec.verify(pair.refresh_token, TokenKind.ACCESS)

    def test_identical_secrets_rejected(self):
        with pytest.raises(ValueError):
            TokenCodec("same", "same", access_ttl_seconds=1, refresh_ttl_seconds=2)

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenCodec("", "other", access_ttl_seconds=1, refresh_ttl_seconds=2)


class TestExpiry:
    def test_token_expires_at_exp(self, codec, principal):
        token = codec.issue_access(codec.claims_for(principal, TokenKind.ACCESS))
        codec._now = lambda: NOW + 900

        with pytest.raises(TokenExpired) as exc_info:
            codec.verify(token, TokenKind.ACCESS)

        assert exc_info.value.error_code == "token_expired"
        assert exc_info.value.status_code == 401

    def test_token_valid_one_second_before_exp(self, codec, principal):
        token = codec.issue_access(codec.claims_for(principal, TokenKind.ACCESS))
        codec._now = lambda: NOW + 899

        assert codec.verify(token, TokenKind.ACCESS).subject_id == principal.id

    def test_leeway_extends_acceptance(self, codec, principal):
        token = codec.issue_access(codec.claims_for(principal, TokenKind.ACCESS))
        codec.leeway_seconds = 30
        codec._now = lambda: NOW + 910

        assert codec.verify(token, TokenKind.ACCESS).subject_id == principal.id


class TestMalformedTokens:
    @pytest.mark.parametrize(
        "token",
        [
            "",
            "garbage",
            "a.b",
            "a.b.c.d",
            "!!!.@@@.###",
            # Deeply nested header, both within and beyond the length cap
            pytest.param(f"{_segment('[' * 3000)}.{_segment('{}')}.sig", id="nested-header"),
            pytest.param(f"{_segment('[' * 100000)}.{_segment('{}')}.sig", id="oversized-nested-header"),
        ],
    )
    def test_structurally_invalid_tokens(self, codec, token):
        with pytest.raises(TokenMalformed):
            codec.verify(token, TokenKind.ACCESS)

    def test_non_string_token(self, codec):
        with pytest.raises(TokenMalformed):
            codec.verify(None, TokenKind.ACCESS)

    def test_tampered_signature(self, codec, principal):
        token = codec.issue_pair(principal).access_token
        header, payload, signature = token.split(".")
        flipped = ("A" if signature[0] != "A" else "B") + signature[1:]

        with pytest.raises(TokenInvalidSignature):
            codec.verify(f"{header}.{payload}.{flipped}", TokenKind.ACCESS)

    def test_tampered_payload(self, codec, principal):
        token = codec.issue_pair(principal).access_token
        header, _, signature = token.split(".")
        claims = Claims.new("someone-else", "+15550000000", 900, now=NOW)
        forged_payload = codec._encode_segment(json.dumps(claims.to_payload()).encode())

        with pytest.raises(TokenInvalidSignature):
            codec.verify(f"{header}.{forged_payload}.{signature}", TokenKind.ACCESS)

    def test_alg_none_rejected(self, codec, principal):
        claims = codec.claims_for(principal, TokenKind.ACCESS)
        token = _forge(codec, {"alg": "none", "typ": "JWT"}, claims.to_payload())

        with pytest.raises(TokenMalformed):
            codec.verify(token, TokenKind.ACCESS)


class TestClaimsSchema:
    def test_unknown_claim_rejected(self, codec, principal):
        """A validly signed payload with extra fields is still refused."""
        payload = codec.claims_for(principal, TokenKind.ACCESS).to_payload()
        payload["role"] = "admin"
        token = _forge(codec, {"alg": "HS256", "typ": "JWT"}, payload)

        with pytest.raises(TokenMalformed) as exc_info:
            codec.verify(token, TokenKind.ACCESS)

        assert exc_info.value.detail["unexpected"] == ["role"]

    def test_missing_claim_rejected(self, codec, principal):
        payload = codec.claims_for(principal, TokenKind.ACCESS).to_payload()
        del payload["jti"]
        token = _forge(codec, {"alg": "HS256", "typ": "JWT"}, payload)

        with pytest.raises(TokenMalformed):
            codec.verify(token, TokenKind.ACCESS)

    def test_future_version_rejected(self, codec, principal):
        payload = codec.claims_for(principal, TokenKind.ACCESS).to_payload()
        payload["v"] = 2
        token = _forge(codec, {"alg": "HS256", "typ": "JWT"}, payload)

        with pytest.raises(TokenMalformed):
            codec.verify(token, TokenKind.ACCESS)

    def test_boolean_timestamps_rejected(self):
        payload = Claims.new("p-1", "+15551234567", 900, now=NOW).to_payload()
        payload["exp"] = True

        with pytest.raises(TokenMalformed):
            Claims.from_payload(payload)

    def test_payload_round_trip(self):
        claims = Claims.new("p-1", "+15551234567", 900, now=NOW)

        assert Claims.from_payload(claims.to_payload()) == claims


class TestHostileInput:
    """Inputs that make the JSON decoder itself fail still map to TokenMalformed."""

    def test_header_recursion_error(self, codec, principal, monkeypatch):
        token = codec.issue_pair(principal).access_token

        def _explode(segment):
            raise RecursionError("maximum recursion depth exceeded")

        monkeypatch.setattr(codec, "_decode_segment", _explode)

        with pytest.raises(TokenMalformed):
            codec.verify(token, TokenKind.ACCESS)

    def test_signed_nested_payload(self, codec):
        """A correctly signed but deeply nested payload is rejected, not raised."""
        header_enc = _segment(json.dumps({"alg": "HS256", "typ": "JWT"}))
        payload_enc = _segment("[" * 2000)
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{codec._sign(signing_input, TokenKind.ACCESS)}"

        with pytest.raises(TokenMalformed):
            codec.verify(token, TokenKind.ACCESS)

    def test_oversized_token(self, codec):
        with pytest.raises(TokenMalformed) as exc_info:
            codec.verify("a" * (MAX_TOKEN_LENGTH + 1), TokenKind.ACCESS)

        assert exc_info.value.message == "token is too long"
