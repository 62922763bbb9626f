"""Explicit success/failure values for collaborator lookups"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from .errors import UnwrapError

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err[E]]


def unwrap(result: Result, msg: str = "expected result to not be error:"):
    """Return the Ok value or raise UnwrapError"""
    if isinstance(result, Ok):
        return result.value
    raise UnwrapError(f"{msg} {result.error}")
