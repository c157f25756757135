from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Principal:
    id: str
    identity: str
    name: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, identity: str, name: Optional[str] = None) -> "Principal":
        return cls(id=str(uuid.uuid4()), identity=identity, name=name)


@dataclass
class SessionRecord:
    """The single active session of a principal: hash of its current refresh credential."""

    principal_id: str
    refresh_hash: str
    ttl_seconds: int
    issued_at: datetime = field(default_factory=_utcnow)

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now
