from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from portalauth.service.errors import ServiceError

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a session-manager operation: a value or a typed error."""

    value: Optional[T] = None
    error: Optional[ServiceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ServiceError) -> "Outcome[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error for the HTTP layer."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
