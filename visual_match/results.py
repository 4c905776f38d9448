"""
Tagged results for loosely-typed external payloads.

Provider and remote responses are validated exactly once at the
boundary and turned into either Ok(data) or Err(kind, message). Nothing
downstream ever sees the raw JSON.
"""

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    data: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: str
    message: str

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[Any], Err]
