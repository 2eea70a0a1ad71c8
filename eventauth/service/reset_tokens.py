from __future__ import annotations

import hashlib
import hmac
import threading
from datetime import timedelta
from typing import Dict, Optional

from eventauth.clock import Clock, RandomSource, SecureRandom, SystemClock
from eventauth.logging import email_hash, get_logger
from eventauth.service.results import FailureKind, Outcome
from eventauth.storage.models import ResetTokenRecord, normalize_account_key

logger = get_logger(__name__)

DEFAULT_RESET_TOKEN_TTL_MINUTES = 15
RESET_TOKEN_BYTES = 32


def hash_token(token: str) -> str:
    """One-way digest stored in place of the plaintext reset token."""
    return hashlib.sha256(token.encode()).hexdigest()


class ResetTokenStore:
    """Password reset tokens keyed by account email, stored hashed.

    The plaintext token leaves this class exactly once, as the return value
    of :meth:`issue`; a dump of ``_records`` never yields a usable token.
    """

    def __init__(
        self,
        *,
        ttl_minutes: int = DEFAULT_RESET_TOKEN_TTL_MINUTES,
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
    ) -> None:
        if ttl_minutes <= 0:
            raise ValueError("ttl_minutes must be positive")
        self.ttl = timedelta(minutes=ttl_minutes)
        self.clock: Clock = clock or SystemClock()
        self.random: RandomSource = random_source or SecureRandom()
        self._records: Dict[str, ResetTokenRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def issue(self, account_key: str, subject_id: int) -> str:
        key = normalize_account_key(account_key)
        plaintext = self.random.token_hex(RESET_TOKEN_BYTES)
        now = self.clock.now()
        record = ResetTokenRecord(
            account_key=key,
            token_hash=hash_token(plaintext),
            subject_id=subject_id,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        with self._lock:
            self._records[key] = record
            swept = self._sweep_locked(now)
        logger.info(
            "password_reset_token_issued",
            email_hash=email_hash(key),
            subject_id=subject_id,
            swept=swept,
        )
        return plaintext

    def verify(self, account_key: str, candidate: str) -> Outcome[int]:
        key = normalize_account_key(account_key)
        try:
            candidate_hash = hash_token(candidate) if isinstance(candidate, str) else ""
        except UnicodeEncodeError:
            candidate_hash = ""
        now = self.clock.now()
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return Outcome.fail(FailureKind.NOT_FOUND)
            if record.is_expired(now):
                self._records.pop(key, None)
                return Outcome.fail(FailureKind.EXPIRED)
            if not hmac.compare_digest(record.token_hash, candidate_hash):
                return Outcome.fail(FailureKind.MISMATCH)
            self._records.pop(key, None)
        return Outcome.success(record.subject_id)

    def peek(self, account_key: str) -> Optional[ResetTokenRecord]:
        with self._lock:
            return self._records.get(normalize_account_key(account_key))

    def discard(self, account_key: str, *, token: Optional[str] = None) -> bool:
        key = normalize_account_key(account_key)
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return False
            if token is not None and not hmac.compare_digest(
                record.token_hash, hash_token(token)
            ):
                return False
            del self._records[key]
            return True

    def sweep_expired(self) -> int:
        now = self.clock.now()
        with self._lock:
            return self._sweep_locked(now)

    def _sweep_locked(self, now) -> int:
        expired = [key for key, record in self._records.items() if record.is_expired(now)]
        for key in expired:
            self._records.pop(key, None)
        return len(expired)
