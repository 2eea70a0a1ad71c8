from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from eventauth.logging import get_logger

logger = get_logger(__name__)


class PasswordService:
    """argon2id hashing for account passwords."""

    algo = "argon2id"

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False
