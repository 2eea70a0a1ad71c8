from __future__ import annotations

import hmac
import threading
from datetime import timedelta
from typing import Dict, Optional

from eventauth.clock import Clock, RandomSource, SecureRandom, SystemClock
from eventauth.logging import email_hash, get_logger
from eventauth.service.results import FailureKind, Outcome
from eventauth.storage.models import OtpRecord, normalize_account_key

logger = get_logger(__name__)

# Login codes default to a 30 second window; override with OTP_TTL_SECONDS.
DEFAULT_OTP_TTL_SECONDS = 30
OTP_MIN = 100000
OTP_SPAN = 900000  # codes fall in [100000, 999999]


def _codes_match(expected: str, candidate: object) -> bool:
    if not isinstance(candidate, str):
        return False
    try:
        presented = candidate.encode()
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected.encode(), presented)


class OtpStore:
    """Single-use six digit login codes keyed by account email.

    At most one code is live per account; issuing again replaces the previous
    code. All read-modify-write sequences run under one lock so concurrent
    verifications of the same code cannot both succeed.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int = DEFAULT_OTP_TTL_SECONDS,
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock: Clock = clock or SystemClock()
        self.random: RandomSource = random_source or SecureRandom()
        self._records: Dict[str, OtpRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def generate_code(self) -> str:
        return str(OTP_MIN + self.random.randbelow(OTP_SPAN))

    def issue(self, account_key: str, subject_id: int) -> str:
        key = normalize_account_key(account_key)
        code = self.generate_code()
        now = self.clock.now()
        record = OtpRecord(
            account_key=key,
            code=code,
            subject_id=subject_id,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        with self._lock:
            replaced = key in self._records
            self._records[key] = record
            swept = self._sweep_locked(now)
        logger.info(
            "otp_issued",
            email_hash=email_hash(key),
            subject_id=subject_id,
            replaced=replaced,
            swept=swept,
            expires_at=record.expires_at.isoformat(),
        )
        return code

    def verify(self, account_key: str, candidate: str) -> Outcome[int]:
        key = normalize_account_key(account_key)
        now = self.clock.now()
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return Outcome.fail(FailureKind.NOT_FOUND)
            if record.is_expired(now):
                self._records.pop(key, None)
                return Outcome.fail(FailureKind.EXPIRED)
            if not _codes_match(record.code, candidate):
                return Outcome.fail(FailureKind.MISMATCH)
            self._records.pop(key, None)
        return Outcome.success(record.subject_id)

    def peek(self, account_key: str) -> Optional[OtpRecord]:
        """Return the live record for inspection without consuming it."""
        with self._lock:
            return self._records.get(normalize_account_key(account_key))

    def discard(self, account_key: str, *, code: Optional[str] = None) -> bool:
        """Drop the live code for ``account_key``.

        When ``code`` is given the record is only dropped if it still holds
        that code, so a newer issuance is left alone.
        """
        key = normalize_account_key(account_key)
        with self._lock:
            record = self._records.get(key)
            if record is None or (code is not None and record.code != code):
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
