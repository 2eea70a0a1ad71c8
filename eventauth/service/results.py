from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class FailureKind(str, Enum):
    """Closed set of reasons a credential check can fail.

    These are for logs and metrics only. Anything returned to an end user
    collapses them into a single "invalid or expired" signal.
    """

    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    REVOKED = "revoked"
    DELIVERY_FAILED = "delivery_failed"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a verification: either a value or a failure kind."""

    value: Optional[T] = None
    failure: Optional[FailureKind] = None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, kind: FailureKind) -> "Outcome[T]":
        return cls(failure=kind)

    @property
    def ok(self) -> bool:
        return self.failure is None

    def __bool__(self) -> bool:
        return self.ok

    def unwrap_or_none(self) -> Optional[T]:
        return self.value if self.ok else None


__all__ = ["FailureKind", "Outcome"]
