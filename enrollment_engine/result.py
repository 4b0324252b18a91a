"""Canonical tagged result type returned by the public service surface."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from enrollment_engine.errors import EnrollmentError

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E", bound=EnrollmentError)


@dataclass(frozen=True)
class Result(Generic[T, E]):
    """Either a value (success) or an error (failure), never both.

    Example:
        >>> result = service.enroll(request)
        >>> if result.ok:
        ...     print(result.value.employee_id)
        ... else:
        ...     print(result.error.code, result.error.message)
    """

    value: Optional[T] = None
    error: Optional[E] = None

    def __post_init__(self) -> None:
        if self.value is not None and self.error is not None:
            raise ValueError("Result cannot carry both a value and an error")

    @classmethod
    def success(cls, value: Optional[T] = None) -> Result[T, E]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: E) -> Result[T, E]:
        if error is None:
            raise ValueError("Failure result requires an error")
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Optional[T]:
        """Return the value, raising the carried error on failure."""
        if self.error is not None:
            raise self.error
        return self.value

    def map(self, fn: Callable[[T], U]) -> Result[U, E]:
        if self.error is not None:
            return Result(error=self.error)
        return Result(value=fn(self.value))

    def __repr__(self) -> str:
        if self.ok:
            return f"Result.success({self.value!r})"
        return f"Result.failure({self.error!r})"
