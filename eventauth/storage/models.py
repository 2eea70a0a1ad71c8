from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_account_key(email: str) -> str:
    """Lookup key for ephemeral records: trimmed, lowercased email."""
    return (email or "").strip().lower()


@dataclass
class AccountRecord:
    id: int
    email: str
    name: Optional[str] = None
    password_hash: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class OtpRecord:
    account_key: str
    code: str
    subject_id: int
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class ResetTokenRecord:
    account_key: str
    token_hash: str
    subject_id: int
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class RevocationEntry:
    token: str
    revoked_at: datetime
    # Expiry embedded in the token, if it could be read; None keeps it forever
    expires_at: Optional[datetime] = None

    def is_evictable(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at
