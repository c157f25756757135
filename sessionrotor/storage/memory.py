from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from sessionrotor.logging import get_logger
from sessionrotor.storage.errors import ConstraintViolation
from sessionrotor.storage.models import Principal, SessionRecord


class MemoryStore:
    """In-process principal store with a JSON snapshot on disk.

    Holds principals, their secret hashes, and the session fields used by
    the principal-record session backend.
    """

    def __init__(self, fs_root: str = "/tmp/sessionrotor") -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.credentials: Dict[str, str] = {}
        self.refresh_records: Dict[str, SessionRecord] = {}
        # RLock for all data operations; nested acquisition happens on persist
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        if not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

    def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    # -- principals -------------------------------------------------------

    def create_principal(
        self, identity: str, secret_hash: str, *, name: Optional[str] = None
    ) -> Principal:
        with self._data_lock:
            if any(p.identity == identity for p in self.principals.values()):
                raise ConstraintViolation.duplicate_identity()
            principal = Principal.new(identity, name=name)
            self.principals[principal.id] = principal
            self.credentials[principal.id] = secret_hash
            self._persist_state()
            return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            return self.principals.get(principal_id)

    def get_principal_by_identity(self, identity: str) -> Optional[Principal]:
        with self._data_lock:
            return next(
                (p for p in self.principals.values() if p.identity == identity), None
            )

    def get_secret_hash(self, principal_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(principal_id)

    # -- session fields ---------------------------------------------------

    def get_refresh_record(self, principal_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            return self.refresh_records.get(principal_id)

    def set_refresh_record(
        self,
        principal_id: str,
        refresh_hash: str,
        *,
        issued_at: datetime,
        ttl_seconds: int,
    ) -> None:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation.missing_principal(principal_id)
            self.refresh_records[principal_id] = SessionRecord(
                principal_id=principal_id,
                refresh_hash=refresh_hash,
                ttl_seconds=ttl_seconds,
                issued_at=issued_at,
            )
            self._persist_state()

    def clear_refresh_record(
        self, principal_id: str, *, expected_hash: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            record = self.refresh_records.get(principal_id)
            if record is None:
                return False
            if expected_hash is not None and record.refresh_hash != expected_hash:
                return False
            del self.refresh_records[principal_id]
            self._persist_state()
            return True

    def compare_and_set_refresh_record(
        self,
        principal_id: str,
        expected_hash: str,
        new_hash: str,
        *,
        issued_at: datetime,
        ttl_seconds: int,
    ) -> bool:
        with self._data_lock:
            record = self.refresh_records.get(principal_id)
            if record is None or record.refresh_hash != expected_hash:
                return False
            if record.is_expired(issued_at):
                return False
            self.refresh_records[principal_id] = SessionRecord(
                principal_id=principal_id,
                refresh_hash=new_hash,
                ttl_seconds=ttl_seconds,
                issued_at=issued_at,
            )
            self._persist_state()
            return True

    # -- persistence ------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "principals": [self._serialize_principal(p) for p in self.principals.values()],
            "credentials": [
                {"principal_id": principal_id, "secret_hash": secret_hash}
                for principal_id, secret_hash in self.credentials.items()
            ],
            "refresh_records": [
                self._serialize_record(r) for r in self.refresh_records.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: self._deserialize_principal(p) for p in data.get("principals", [])
        }
        self.credentials = {
            entry["principal_id"]: entry["secret_hash"]
            for entry in data.get("credentials", [])
        }
        self.refresh_records = {
            r["principal_id"]: self._deserialize_record(r)
            for r in data.get("refresh_records", [])
        }
        self.logger.info(
            "memory_store_loaded",
            principals=len(self.principals),
            sessions=len(self.refresh_records),
        )
        return True

    @staticmethod
    def _serialize_principal(principal: Principal) -> dict:
        return {
            "id": principal.id,
            "identity": principal.identity,
            "name": principal.name,
            "created_at": principal.created_at.isoformat(),
        }

    @staticmethod
    def _deserialize_principal(data: dict) -> Principal:
        return Principal(
            id=data["id"],
            identity=data["identity"],
            name=data.get("name"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )

    @staticmethod
    def _serialize_record(record: SessionRecord) -> dict:
        return {
            "principal_id": record.principal_id,
            "refresh_hash": record.refresh_hash,
            "ttl_seconds": record.ttl_seconds,
            "issued_at": record.issued_at.isoformat(),
        }

    @staticmethod
    def _deserialize_record(data: dict) -> SessionRecord:
        return SessionRecord(
            principal_id=data["principal_id"],
            refresh_hash=data["refresh_hash"],
            ttl_seconds=int(data["ttl_seconds"]),
            issued_at=datetime.fromisoformat(data["issued_at"]),
        )
