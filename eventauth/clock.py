from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class RandomSource(Protocol):
    def randbelow(self, upper: int) -> int: ...

    def token_hex(self, nbytes: int) -> str: ...


class SystemClock:
    """Timezone-aware UTC wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SecureRandom:
    """RandomSource backed by the OS CSPRNG via :mod:`secrets`."""

    def randbelow(self, upper: int) -> int:
        return secrets.randbelow(upper)

    def token_hex(self, nbytes: int) -> str:
        return secrets.token_hex(nbytes)


__all__ = ["Clock", "RandomSource", "SystemClock", "SecureRandom"]
