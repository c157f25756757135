from __future__ import annotations

import contextlib
from datetime import datetime, timezone
from typing import Iterator, Optional

from psycopg import InterfaceError, OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionrotor.logging import get_logger
from sessionrotor.service.errors import StorageUnavailable
from sessionrotor.storage.errors import ConstraintViolation
from sessionrotor.storage.models import Principal, SessionRecord

_CLEAR_REFRESH_FIELDS = (
    "refresh_hash = NULL, refresh_issued_at = NULL, refresh_ttl_seconds = NULL"
)


class PostgresStore:
    """Postgres-backed principal store; the session fields live on the principal row."""

    # Raised by _connect for transport failures; retried by session callers
    TRANSIENT_ERRORS = (StorageUnavailable,)

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, InterfaceError) as exc:
            self.logger.warning(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StorageUnavailable(
                "principal storage unavailable", detail={"backend": "postgres"}
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the ``principal`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS principal (
                    id TEXT PRIMARY KEY,
                    identity TEXT NOT NULL UNIQUE,
                    name TEXT,
                    secret_hash TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    refresh_hash TEXT,
                    refresh_issued_at TIMESTAMPTZ,
                    refresh_ttl_seconds INTEGER
                )
                """
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _principal_from_row(row: dict) -> Principal:
        return Principal(
            id=str(row["id"]),
            identity=row["identity"],
            name=row.get("name"),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    # -- principals -------------------------------------------------------

    def create_principal(
        self, identity: str, secret_hash: str, *, name: Optional[str] = None
    ) -> Principal:
        principal = Principal.new(identity, name=name)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal (id, identity, name, secret_hash, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        principal.id,
                        identity,
                        name,
                        secret_hash,
                        principal.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation.duplicate_identity()
        return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, identity, name, created_at FROM principal WHERE id = %s",
                (principal_id,),
            ).fetchone()
        if not row:
            return None
        return self._principal_from_row(row)

    def get_principal_by_identity(self, identity: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, identity, name, created_at FROM principal WHERE identity = %s",
                (identity,),
            ).fetchone()
        if not row:
            return None
        return self._principal_from_row(row)

    def get_secret_hash(self, principal_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT secret_hash FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        if not row:
            return None
        return str(row["secret_hash"])

    # -- session fields ---------------------------------------------------

    def get_refresh_record(self, principal_id: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT refresh_hash, refresh_issued_at, refresh_ttl_seconds
                FROM principal WHERE id = %s
                """,
                (principal_id,),
            ).fetchone()
        if not row or row.get("refresh_hash") is None:
            return None
        return SessionRecord(
            principal_id=principal_id,
            refresh_hash=row["refresh_hash"],
            ttl_seconds=int(row["refresh_ttl_seconds"] or 0),
            issued_at=row["refresh_issued_at"],
        )

    def set_refresh_record(
        self,
        principal_id: str,
        refresh_hash: str,
        *,
        issued_at: datetime,
        ttl_seconds: int,
    ) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE principal
                SET refresh_hash = %s, refresh_issued_at = %s, refresh_ttl_seconds = %s
                WHERE id = %s
                """,
                (refresh_hash, issued_at, ttl_seconds, principal_id),
            )
            updated = cur.rowcount
        if updated != 1:
            raise ConstraintViolation.missing_principal(principal_id)

    def clear_refresh_record(
        self, principal_id: str, *, expected_hash: Optional[str] = None
    ) -> bool:
        with self._connect() as conn:
            if expected_hash is None:
                cur = conn.execute(
                    f"UPDATE principal SET {_CLEAR_REFRESH_FIELDS} "
                    "WHERE id = %s AND refresh_hash IS NOT NULL",
                    (principal_id,),
                )
            else:
                cur = conn.execute(
                    f"UPDATE principal SET {_CLEAR_REFRESH_FIELDS} "
                    "WHERE id = %s AND refresh_hash = %s",
                    (principal_id, expected_hash),
                )
            return cur.rowcount == 1

    def compare_and_set_refresh_record(
        self,
        principal_id: str,
        expected_hash: str,
        new_hash: str,
        *,
        issued_at: datetime,
        ttl_seconds: int,
    ) -> bool:
        # Single conditional UPDATE; the row lock serialises racing rotations
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE principal
                SET refresh_hash = %s, refresh_issued_at = %s, refresh_ttl_seconds = %s
                WHERE id = %s
                  AND refresh_hash = %s
                  AND refresh_issued_at + make_interval(secs => refresh_ttl_seconds) > %s
                """,
                (new_hash, issued_at, ttl_seconds, principal_id, expected_hash, issued_at),
            )
            return cur.rowcount == 1
