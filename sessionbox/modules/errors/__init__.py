"""
Errors Module - Black Box Interface

Purpose: Typed failures shared by the session and storage modules
Interface: SessionError, BackendError, TokenGenerationError
Hidden: Driver-specific exception types (wrapped at the backend boundary)

RecordMissing and DeserializationMismatch are named conditions that are
logged by the session handle and never raised to request code.
"""

from typing import Optional


class SessionError(Exception):
    """Base class for all session manager errors."""


class BackendError(SessionError):
    """
    Durable store unreachable or rejected a query.

    Raised by persistence backends and propagated by store-level
    administrative operations such as count() and clear_store().
    """

    def __init__(self, operation: str, message: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {message}")


class TokenGenerationError(SessionError):
    """Token minting hit an implausible number of collisions."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Could not mint an unused session token after {attempts} attempts")


class RecordMissing(SessionError):
    """In-memory record absent when a handle operation expected one."""


class DeserializationMismatch(SessionError):
    """Stored value does not match the requested type."""


__all__ = [
    "SessionError",
    "BackendError",
    "TokenGenerationError",
    "RecordMissing",
    "DeserializationMismatch",
]
