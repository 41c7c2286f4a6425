from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from apiguard.config import Settings
from apiguard.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """argon2id password hashing with a fixed, configured work factor.

    A mismatch is a ``False`` result, never an exception, so callers can answer
    every login failure with the same message.
    """

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # verified against when the account is unknown so both paths cost the same
        self._dummy_digest = self._hasher.hash("apiguard-timing-equalizer")

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialHasher":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: Optional[str]) -> bool:
        if not digest:
            self._burn(plaintext)
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            logger.warning("password_digest_invalid", algorithm=self.algorithm)
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHashError:
            return True

    def _burn(self, plaintext: str) -> None:
        try:
            self._hasher.verify(self._dummy_digest, plaintext)
        except VerificationError:
            pass
