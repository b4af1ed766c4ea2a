"""
Explicit outcome type passed through the dispatch pipeline.

Retry and circuit breaker stages exchange Success/Failure values instead of
raising; only the façade boundary turns a Failure back into an exception.
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from persyste.services.errors import ServiceError

T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    error: ServiceError

    @property
    def ok(self) -> bool:
        return False


Outcome = Union[Success[T], Failure]


def unwrap(outcome: "Outcome[T]") -> T:
    """Return the success value or raise the classified error untouched."""
    if isinstance(outcome, Failure):
        raise outcome.error
    return outcome.value
