"""
Shared error handling for the coordination layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class PlatformException(Exception):
    """Base exception for platform services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthorizationError(PlatformException):
    """Caller is not allowed to perform the operation."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class StoreUnavailableError(PlatformException):
    """The shared key/value store could not be reached."""

    status_code = 503

    def __init__(self, message: str = "Shared store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)


class MutexLockError(PlatformException):
    """Base class for lock acquisition failures.

    Never raised for errors coming out of the protected work itself.
    """

    status_code = 503

    def __init__(self, key: str, code: str = "LOCK_ERROR", message: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.key = key
        details = {"lock": key, **(details or {})}
        super().__init__(code, message or f"Failed to acquire lock for key {key}", details)


class LockTimeoutError(MutexLockError):
    """Lock could not be acquired before the acquire timeout elapsed."""

    def __init__(self, key: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(
            key,
            "LOCK_TIMEOUT",
            f"Timeout to acquire lock for key {key} after {timeout_ms}ms",
            {"timeout_ms": timeout_ms},
        )


class LockAcquisitionError(MutexLockError):
    """Lock is held by someone else and the caller asked not to wait."""

    def __init__(self, key: str):
        super().__init__(key, "LOCK_UNAVAILABLE", f"Failed to acquire lock for key {key}")
