from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from sessionrotor.logging import get_correlation_id

# Stable error codes exposed in the envelope
_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "duplicate_identity",
        "password_confirmation_mismatch",
        "unauthorized",
        "invalid_credentials",
        "token_expired",
        "token_invalid_signature",
        "token_malformed",
        "forbidden",
        "session_revoked",
        "token_mismatch",
        "not_found",
        "conflict",
        "server_error",
        "storage_unavailable",
    }
)

# E.164-style phone number, optional leading "+"
_IDENTITY_PATTERN = re.compile(r"^\+?[1-9]\d{6,14}$")

MAX_SECRET_LENGTH = 256


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Envelope error body with a stable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _validate_identity(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("identity must be a string")
    normalized = unicodedata.normalize("NFKC", value).strip().replace(" ", "")
    if not _IDENTITY_PATTERN.match(normalized):
        raise ValueError("identity must be a phone number such as +15551234567")
    return normalized


def _validate_secret(value: str) -> str:
    if not value:
        raise ValueError("password must not be empty")
    return value


class RegisterRequest(BaseModel):
    identity: str = Field(..., max_length=32)
    secret: str = Field(..., max_length=MAX_SECRET_LENGTH)
    secret_confirmation: str = Field(..., max_length=MAX_SECRET_LENGTH)
    name: Optional[str] = Field(default=None, max_length=64)

    @field_validator("identity")
    @classmethod
    def _validate_register_identity(cls, value: str) -> str:
        return _validate_identity(value)

    @field_validator("secret", "secret_confirmation")
    @classmethod
    def _validate_register_secret(cls, value: str) -> str:
        return _validate_secret(value)

    @model_validator(mode="after")
    def _strip_name(self):
        if self.name is not None:
            self.name = self.name.strip() or None
        return self


class LoginRequest(BaseModel):
    identity: str = Field(..., max_length=32)
    secret: str = Field(..., max_length=MAX_SECRET_LENGTH)

    @field_validator("identity")
    @classmethod
    def _validate_login_identity(cls, value: str) -> str:
        return _validate_identity(value)

    @field_validator("secret")
    @classmethod
    def _validate_login_secret(cls, value: str) -> str:
        return _validate_secret(value)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class PrincipalResponse(BaseModel):
    id: str
    identity: str
    name: Optional[str] = None
    created_at: datetime
    session_active: bool = False
