"""Typed errors raised by the assignment and response engine.

Callers branch on ``kind`` (or the subclass); ``status_code`` is the
suggested HTTP status for whatever transport fronts the engine.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    DEADLINE_PASSED = "deadline_passed"
    LOCK_TIMEOUT = "lock_timeout"


class ChoreError(Exception):
    """Base class for every error the engine raises on purpose."""

    kind: ErrorKind
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ConflictError(ChoreError):
    """The task was already accepted, or the record changed underneath us."""

    kind = ErrorKind.CONFLICT
    status_code = 409


class ForbiddenError(ChoreError):
    """The responder is not allowed to act on this task."""

    kind = ErrorKind.FORBIDDEN
    status_code = 403


class NotFoundError(ChoreError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ValidationError(ChoreError):
    """A template or request is invalid for its rule type."""

    kind = ErrorKind.VALIDATION
    status_code = 422


class DeadlinePassedError(ChoreError):
    kind = ErrorKind.DEADLINE_PASSED
    status_code = 410


class LockTimeoutError(ChoreError):
    """The task lock could not be taken in time. Safe to retry."""

    kind = ErrorKind.LOCK_TIMEOUT
    status_code = 503
    retryable = True
