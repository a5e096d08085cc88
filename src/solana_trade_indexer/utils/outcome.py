"""Tagged results for lookups that may legitimately produce nothing."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar, Union

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """A lookup that produced a usable value."""

    value: T

    @property
    def is_ok(self) -> bool:
        return True

    def value_or(self, default: Any) -> T:
        return self.value

    def map(self, func: Callable[[T], U]) -> "Outcome[U]":
        return Ok(func(self.value))

    def or_else(self, other: "Outcome[T]") -> "Outcome[T]":
        return self


class _Absent:
    """A lookup that produced nothing usable. Use the ``ABSENT`` singleton."""

    __slots__ = ()
    _instance: Optional["_Absent"] = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def is_ok(self) -> bool:
        return False

    def value_or(self, default: Any) -> Any:
        return default

    def map(self, func: Callable[[Any], Any]) -> "_Absent":
        return self

    def or_else(self, other: "Outcome[T]") -> "Outcome[T]":
        return other

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()

Outcome = Union[Ok[T], _Absent]


def is_usable_number(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return False
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return False
    return math.isfinite(number)


def positive_price(value: Any) -> Outcome[float]:
    """Return ``Ok`` only for finite, strictly positive numbers."""

    if not is_usable_number(value):
        return ABSENT
    number = float(value)
    if number <= 0:
        return ABSENT
    return Ok(number)


def safe_ratio(numerator: Any, denominator: Any) -> Outcome[float]:
    """Divide two magnitudes, treating zero or non-finite inputs as no result."""

    if not is_usable_number(numerator) or not is_usable_number(denominator):
        return ABSENT
    denominator = float(denominator)
    if denominator == 0:
        return ABSENT
    return positive_price(float(numerator) / denominator)


__all__ = [
    "ABSENT",
    "Ok",
    "Outcome",
    "is_usable_number",
    "positive_price",
    "safe_ratio",
]
