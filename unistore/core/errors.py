"""Error taxonomy for storage operations.

Expected outcomes (validation failures, security rejections, missing files,
rate limiting, content mismatches) are reported through result objects
tagged with an :class:`ErrorKind`. The exception classes here are raised
only for precondition failures and for backend errors that are retried and
then converted into failure results at the operation boundary.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Category attached to every failed storage outcome."""
    VALIDATION = "validation"
    SECURITY = "security"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    BACKEND = "backend"
    MISMATCH = "mismatch"
    UNSUPPORTED = "unsupported"


class StorageError(Exception):
    """Base class for storage exceptions."""
    pass


class ConfigurationError(StorageError):
    """Raised when a storage configuration cannot be used."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = list(errors or [])


class BackendFailure(StorageError):
    """Raised by drivers when the underlying filesystem or SDK call fails."""
    pass
