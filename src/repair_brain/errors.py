"""Result values for operations that must never raise into the host.

The repair subsystem has no fatal errors: store and handler failures are
caught where they happen and handed back as a ``Result`` carrying a
``RepairError`` so callers and tests can still observe them.
"""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

import structlog

T = TypeVar("T")


class ErrorCode(Enum):
    """Categories of recoverable failure."""

    STORE_UNAVAILABLE = "store_unavailable"
    STORE_FAILED = "store_failed"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    FIX_FAILED = "fix_failed"
    FIX_TIMEOUT = "fix_timeout"
    NO_ACTION = "no_action"


@dataclass(frozen=True)
class RepairError:
    """A recoverable failure description."""

    code: ErrorCode
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "message": self.message}


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a ``RepairError``."""

    value: T | None = None
    error: RepairError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, code: ErrorCode, message: str) -> Result[T]:
        return cls(error=RepairError(code=code, message=message))

    def unwrap_or(self, default: T) -> T:
        """Return the value, or *default* on failure or a ``None`` value."""
        if self.error is not None or self.value is None:
            return default
        return self.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "error": self.error.to_dict() if self.error else None,
        }


async def guarded(
    operation: str,
    awaitable: Awaitable[T],
    log: structlog.stdlib.BoundLogger,
    **context: Any,
) -> Result[T]:
    """Await a store call and turn any exception into a failed ``Result``."""
    try:
        return Result.success(await awaitable)
    except Exception as exc:
        log.warning(f"{operation}_failed", error=str(exc), **context)
        return Result.failure(ErrorCode.STORE_FAILED, f"{operation}: {exc}")
