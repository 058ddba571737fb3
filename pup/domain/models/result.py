from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from domain.errors import PupError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful component outcome"""
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap_or(self, default: T) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    """Degraded component outcome carrying the classified error"""
    error: PupError

    @property
    def ok(self) -> bool:
        return False

    @property
    def kind(self) -> str:
        return type(self.error).__name__

    def unwrap_or(self, default: T) -> T:
        return default


Result = Union[Ok[T], Err]
