"""Explicit success/failure result type for billing writes.

Writes that can fail for domain reasons return either ``Ok(value)`` or
``Err(error)``; callers branch on the variant instead of probing optional
``data``/``error`` attributes:

    result = await ledger.upsert_adjustment(...)
    if isinstance(result, Err):
        ...  # result.error is a BillingError
    else:
        adjustment = result.value
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from billing_engine.errors import BillingError

T = TypeVar("T")
E = TypeVar("E", bound=BillingError)


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome carrying a value."""

    value: T

    @property
    def is_ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed outcome carrying a typed error."""

    error: E

    @property
    def is_ok(self) -> bool:
        return False

    def unwrap(self):
        raise self.error


Result = Union[Ok[T], Err[E]]
