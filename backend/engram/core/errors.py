"""Error taxonomy shared by every engram component."""

from __future__ import annotations


class EngramError(Exception):
    """Base class for all engram errors."""

    @property
    def error_type(self) -> str:
        return type(self).__name__


class ConfigurationError(EngramError):
    """Unresolvable backend, missing credentials or dimension mismatch.

    Raised while building the engine at startup; never recovered at runtime.
    """


class BackendError(EngramError):
    """A backend rejected the call in a way retrying cannot fix (auth, bad input)."""


class TransientBackendError(EngramError):
    """A backend kept failing with retryable errors until the retry budget ran out."""


class DataIntegrityError(EngramError):
    """Referenced document, segment or vector entry is missing."""


class MalformedInputError(EngramError):
    """Caller supplied input (or a generation produced output) that cannot be used."""


class InvalidTransitionError(EngramError):
    """A task state change was requested that the state machine does not allow."""

    def __init__(self, task_id: int, current: str | None, target: str) -> None:
        self.task_id = task_id
        self.current = current
        self.target = target
        if current is None:
            message = f"Task {task_id} does not exist"
        else:
            message = f"Task {task_id} cannot move from {current} to {target}"
        super().__init__(message)


__all__ = [
    "EngramError",
    "ConfigurationError",
    "BackendError",
    "TransientBackendError",
    "DataIntegrityError",
    "MalformedInputError",
    "InvalidTransitionError",
]
