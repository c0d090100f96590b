from __future__ import annotations

from argon2 import PasswordHasher as Argon2Hasher
from argon2.exceptions import InvalidHash, VerificationError
from argon2.low_level import Type

from gatehouse.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing; the salt and parameters live inside the encoded hash."""

    algorithm = "argon2id"

    def __init__(self) -> None:
        self._hasher = Argon2Hasher(type=Type.ID)

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, password_hash: str | None, plaintext: str) -> bool:
        """Return True only for a matching, well-formed hash.

        Mismatches and corrupt hashes both come back as False so callers can
        treat them as the same invalid-credentials outcome.
        """
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except InvalidHash:
            logger.warning("password_hash_invalid")
            return False
        except VerificationError:
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except (InvalidHash, ValueError):
            return True
