"""Typed results for the remote and persistence seams of a trading cycle.

Broker calls, data fetches and repository writes return a ``Result``
instead of raising, so the orchestrator can decide per error kind whether
to abort the cycle, record a rejection or carry on.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Failure classes a cycle distinguishes."""

    CONNECTIVITY = "CONNECTIVITY"
    DATA_UNAVAILABLE = "DATA_UNAVAILABLE"
    ORDER_REJECTED = "ORDER_REJECTED"
    PERSISTENCE = "PERSISTENCE"


@dataclass(frozen=True)
class CycleError:
    """A classified failure with a human-readable message."""

    kind: ErrorKind
    message: str

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value (``ok``) or a ``CycleError``."""

    value: Optional[T] = None
    error: Optional[CycleError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, raising ``RuntimeError`` on an error result."""
        if self.error is not None:
            raise RuntimeError(str(self.error))
        return self.value  # type: ignore[return-value]


def Ok(value: Any = None) -> Result:
    return Result(value=value)


def Err(kind: ErrorKind, message: str) -> Result:
    return Result(error=CycleError(kind=kind, message=message))
