"""
Error taxonomy for usage refreshes.

Parse and degraded-currency conditions never surface as exceptions; they
are logged and absorbed where they happen.
"""

from typing import Optional


class UsageError(Exception):
    """Base class for errors that propagate out of a refresh."""


class AuthError(UsageError):
    """The session credential was rejected by the upstream service."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransportError(UsageError):
    """A network call failed or returned an unusable body."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(UsageError):
    """The team roster and team usage responses disagree."""
