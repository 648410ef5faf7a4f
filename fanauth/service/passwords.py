from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from fanauth.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """One-way salted password hashing (argon2id).

    ``hash`` lets hashing errors propagate so registration aborts;
    ``verify`` never raises and reports any failure as a mismatch.
    """

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )
        # Fixed hash burned for unknown accounts so lookups cost the same
        self._dummy_hash = self._hasher.hash("fanauth-timing-equalizer")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, hashed: str) -> bool:
        if not hashed:
            return False
        try:
            return self._hasher.verify(hashed, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error_type=type(exc).__name__)
            return False

    def needs_rehash(self, hashed: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(hashed)
        except InvalidHash:
            return True

    def dummy_verify(self, password: str) -> None:
        self.verify(password, self._dummy_hash)


__all__ = ["CredentialHasher"]
