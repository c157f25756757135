from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A principal or session write conflicts with what is already stored.

    Raised for a second principal claiming an existing identity, and for a
    session written against a principal that does not exist. ``detail``
    names the offending field or id and is safe to return to clients.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @classmethod
    def duplicate_identity(cls) -> "ConstraintViolation":
        return cls("identity already exists", {"field": "identity"})

    @classmethod
    def missing_principal(cls, principal_id: str) -> "ConstraintViolation":
        return cls("principal not found for session", {"principal_id": principal_id})


__all__ = ["ConstraintViolation"]
