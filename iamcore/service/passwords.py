from __future__ import annotations

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from iamcore.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing with library-default cost parameters.

    ``verify`` never raises for a bad candidate or a corrupt stored hash; it
    returns False so callers can render one opaque credentials error.
    """

    algorithm = "argon2id"

    def __init__(self) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: str, candidate: str) -> bool:
        if not stored_hash or candidate is None:
            return False
        try:
            return self._hasher.verify(stored_hash, candidate)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False
