"""Exception taxonomy for task lifecycle operations.

The HTTP layer maps these to status codes; the core never translates them.
"""

from __future__ import annotations


class TaskLifecycleError(Exception):
    """Base class for all task lifecycle failures."""


class ValidationError(TaskLifecycleError):
    """Malformed transition request, e.g. waiting without ``waitingFor``."""


class NotFoundError(TaskLifecycleError):
    """Task or step does not exist, or is not visible to the caller."""


class AuthorizationError(NotFoundError):
    """Task exists but belongs to another owner.

    Subclasses ``NotFoundError`` so callers that only handle the parent cannot
    tell the two cases apart.
    """


class ConflictError(TaskLifecycleError):
    """A conditional update lost a race: the row changed since it was read."""

    def __init__(self, message: str, *, expected_status: str | None = None) -> None:
        super().__init__(message)
        self.expected_status = expected_status


class PersistenceError(TaskLifecycleError):
    """Underlying store failure."""
