from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class FailureKind(str, Enum):
    ILLEGAL_TRANSITION = "illegal_transition"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"


@dataclass
class OperationResult(Generic[T]):
    """Outcome of a domain operation.

    Expected failures (illegal transition, missing record, unmet scheduling rule) are
    reported here instead of raised so callers can render ``reason`` directly.
    """

    ok: bool
    value: T | None = None
    reason: str | None = None
    kind: FailureKind | None = None

    @classmethod
    def success(cls, value: T | None = None) -> OperationResult[T]:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: FailureKind, reason: str) -> OperationResult[T]:
        return cls(ok=False, reason=reason, kind=kind)

    @classmethod
    def not_found(cls, what: str) -> OperationResult[T]:
        return cls.failure(FailureKind.NOT_FOUND, f"{what} not found.")

    @classmethod
    def illegal(cls, reason: str) -> OperationResult[T]:
        return cls.failure(FailureKind.ILLEGAL_TRANSITION, reason)

    @classmethod
    def invalid(cls, reason: str) -> OperationResult[T]:
        return cls.failure(FailureKind.VALIDATION, reason)

    @classmethod
    def conflict(cls, reason: str) -> OperationResult[T]:
        return cls.failure(FailureKind.CONFLICT, reason)

    def cast(self) -> OperationResult:
        """Re-type a failure so it can be returned from an operation with another value type."""
        return OperationResult(ok=self.ok, value=None, reason=self.reason, kind=self.kind)

    def __bool__(self) -> bool:
        return self.ok
