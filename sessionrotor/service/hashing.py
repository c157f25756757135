from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionrotor.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """argon2id hashing for account secrets and refresh credentials.

    argon2 hashes the full input, so long refresh credentials are never
    truncated before comparison.
    """

    algorithm = "argon2id"

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )
        self._dummy_hash: str | None = None

    def hash(self, plain: str) -> str:
        return self._pwd_hasher.hash(plain)

    def compare(self, plain: str, hashed: str | None) -> bool:
        if not hashed:
            return False
        try:
            return self._pwd_hasher.verify(hashed, plain)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("credential_hash_unverifiable", algorithm=self.algorithm)
            return False

    def burn_compare(self, plain: str) -> None:
        """Spend one comparison's worth of work against a throwaway hash.

        Used when no stored hash exists so the response time does not reveal
        whether the identity is registered.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash("sessionrotor-dummy-secret")
        self.compare(plain, self._dummy_hash)


__all__ = ["CredentialHasher"]
