"""Error taxonomy and the Outcome result type returned by public operations."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, List, Optional, TypeVar

T = TypeVar("T")


class LiveQuizError(Exception):
    """Base class for all livequiz errors."""


class TransportError(LiveQuizError):
    """The message bus is unavailable or disconnected."""


class ValidationError(LiveQuizError):
    """Client-side validation failed; the action is blocked."""

    def __init__(self, message: str, indices: Optional[List[int]] = None):
        super().__init__(message)
        self.indices = list(indices or [])


class BackendError(LiveQuizError):
    """Non-2xx or malformed response from the backend."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SessionCreationError(BackendError):
    """The backend refused to create a session."""


class DuplicateAnswerError(LiveQuizError):
    """An answer for this (participant, question) was already recorded."""


class StaleEventError(LiveQuizError):
    """Reducer guard: the event is behind the current state. Never surfaced."""


@dataclass
class Outcome(Generic[T]):
    ok: bool
    message: str = ""
    value: Optional[T] = None
    error: Optional[Exception] = None

    @classmethod
    def success(cls, value: Any = None, message: str = "") -> "Outcome":
        return cls(ok=True, message=message, value=value)

    @classmethod
    def failure(cls, error: Exception | str, message: str | None = None) -> "Outcome":
        if isinstance(error, str):
            return cls(ok=False, message=error)
        return cls(ok=False, message=message if message is not None else str(error), error=error)

    def __bool__(self) -> bool:
        return self.ok
