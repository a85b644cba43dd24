"""Exception types shared by the scoring pipeline, store, and API."""
from __future__ import annotations


class GoNoGoError(Exception):
    """Base class for application errors."""


class ProviderError(GoNoGoError):
    """AI endpoint unreachable, timed out, or returned a non-2xx status."""
    def __init__(self, message: str, status: int | None = None, retryable: bool = False):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class MalformedResponseError(GoNoGoError):
    """Model output could not be parsed by an extraction strategy."""


class ValidationError(GoNoGoError, ValueError):
    """Submitted data or configuration is missing or invalid."""
    def __init__(self, message: str, fields: list[str] | None = None):
        super().__init__(message)
        self.fields = fields or []


class NotFoundError(GoNoGoError, LookupError):
    """Requested entity does not exist."""
