from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Optional

from eventauth.clock import Clock, SystemClock
from eventauth.logging import get_logger
from eventauth.storage.models import RevocationEntry

logger = get_logger(__name__)


class RevocationRegistry:
    """Tokens that must be rejected even though they still verify.

    Entries carrying the token's own expiry are evicted once that expiry has
    passed; an expired token fails verification anyway. Entries without an
    expiry stay for the life of the process.
    """

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self.clock: Clock = clock or SystemClock()
        self._entries: Dict[str, RevocationEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, token: object) -> bool:
        return isinstance(token, str) and self.is_revoked(token)

    def revoke(self, token: str, expires_at: Optional[datetime] = None) -> bool:
        """Record ``token`` as revoked. Returns False if it already was."""
        if not token:
            return False
        now = self.clock.now()
        with self._lock:
            swept = self._sweep_locked(now)
            existing = self._entries.get(token)
            if existing is not None:
                return False
            self._entries[token] = RevocationEntry(
                token=token, revoked_at=now, expires_at=expires_at
            )
            size = len(self._entries)
        logger.info("token_revoked", registry_size=size, swept=swept)
        return True

    def is_revoked(self, token: str) -> bool:
        with self._lock:
            return token in self._entries

    def sweep_expired(self) -> int:
        now = self.clock.now()
        with self._lock:
            return self._sweep_locked(now)

    def _sweep_locked(self, now: datetime) -> int:
        stale = [token for token, entry in self._entries.items() if entry.is_evictable(now)]
        for token in stale:
            self._entries.pop(token, None)
        return len(stale)
