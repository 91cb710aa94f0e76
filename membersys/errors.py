"""Error taxonomy shared by every store backend.

Backends translate driver exceptions into these classes at their boundary,
so callers only ever see a ``StoreError`` whose ``kind`` survives from the
backend up to the HTTP/RPC layer that maps it to a status code.
"""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Kinds of store failures."""
    NOT_FOUND = "NOT_FOUND"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    FAILED_PRECONDITION = "FAILED_PRECONDITION"
    UNAVAILABLE = "UNAVAILABLE"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    DATA_LOSS = "DATA_LOSS"
    INTERNAL = "INTERNAL"


_TRANSIENT_KINDS = frozenset({ErrorKind.UNAVAILABLE, ErrorKind.DEADLINE_EXCEEDED})


class StoreError(Exception):
    """Base class for all membership store failures."""
    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.key = key

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class NotFoundError(StoreError):
    """Raised when a key is absent in the requested state."""
    kind = ErrorKind.NOT_FOUND


class InvalidArgumentError(StoreError):
    """Raised for malformed keys, cursors or arguments."""
    kind = ErrorKind.INVALID_ARGUMENT


class FailedPreconditionError(StoreError):
    """Raised when a transition or mutation is not allowed in the current state."""
    kind = ErrorKind.FAILED_PRECONDITION


class UnavailableError(StoreError):
    """Raised when the backend cannot be reached."""
    kind = ErrorKind.UNAVAILABLE


class DeadlineExceededError(StoreError):
    """Raised when an operation ran past its deadline."""
    kind = ErrorKind.DEADLINE_EXCEEDED


class DataLossError(StoreError):
    """Raised when stored bytes do not decode into a membership record."""
    kind = ErrorKind.DATA_LOSS


class InternalError(StoreError):
    """Raised for serialization errors and unclassified backend failures."""
    kind = ErrorKind.INTERNAL


def is_transient(exc: BaseException) -> bool:
    """Check whether an error may succeed when retried by the caller."""
    return isinstance(exc, StoreError) and exc.kind in _TRANSIENT_KINDS
