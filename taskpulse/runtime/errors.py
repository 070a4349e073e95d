from __future__ import annotations

from typing import Any


class RunError(RuntimeError):
    """Base class for client-facing run engine errors."""

    code = "internal"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class RunNotFoundError(RunError):
    code = "not_found"


class TaskNotFoundError(RunError):
    code = "not_found"


class InvalidStateError(RunError):
    code = "invalid_state"


class IllegalTransitionError(InvalidStateError):
    pass


class RetryLimitExceededError(RunError):
    code = "limit_exceeded"


class InputValidationError(RunError, ValueError):
    code = "invalid_argument"
