"""Verification exceptions.

Business-rule errors are raised inside the engine and converted to typed
results at its public boundary; they never reach callers as exceptions.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    VALIDATION_FAILED = "VALIDATION_FAILED"
    INVALID_CODE = "INVALID_CODE"
    EXPIRED_CODE = "EXPIRED_CODE"
    MAX_ATTEMPTS_EXCEEDED = "MAX_ATTEMPTS_EXCEEDED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    EMAIL_NOT_FOUND = "EMAIL_NOT_FOUND"
    EMAIL_ALREADY_EXISTS = "EMAIL_ALREADY_EXISTS"
    EMAIL_ALREADY_VERIFIED = "EMAIL_ALREADY_VERIFIED"
    DISPATCH_FAILED = "DISPATCH_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class VerificationError(Exception):
    """Base verification exception with HTTP status and error code."""

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 400

    def __init__(self, message: str, status_code: int | None = None, data: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.data = data or {}


class ValidationError(VerificationError):
    """Malformed email or code. Caller's fault, not retryable."""

    error_code = ErrorCode.VALIDATION_FAILED
    status_code = 400


class NotFoundError(VerificationError):
    """Unknown email. The message never confirms whether the address exists."""

    error_code = ErrorCode.EMAIL_NOT_FOUND
    status_code = 404

    def __init__(self, message: str = "no signup found with that email", **kwargs: Any):
        super().__init__(message, **kwargs)


class AlreadyExistsError(VerificationError):
    error_code = ErrorCode.EMAIL_ALREADY_EXISTS
    status_code = 409


class RateLimitError(VerificationError):
    error_code = ErrorCode.RATE_LIMIT_EXCEEDED
    status_code = 429

    def __init__(self, message: str = "slow down.", retry_after_seconds: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class LockedError(VerificationError):
    error_code = ErrorCode.ACCOUNT_LOCKED
    status_code = 423

    def __init__(self, retry_minutes: int, message: str | None = None, **kwargs: Any):
        plural = "" if retry_minutes == 1 else "s"
        super().__init__(message or f"Locked. Try again in {retry_minutes} minute{plural}.", **kwargs)
        self.retry_minutes = retry_minutes


class ExpiredError(VerificationError):
    error_code = ErrorCode.EXPIRED_CODE
    status_code = 400

    def __init__(self, message: str = "Code expired. Request a new one.", **kwargs: Any):
        super().__init__(message, **kwargs)


class AlreadyVerifiedError(VerificationError):
    error_code = ErrorCode.EMAIL_ALREADY_VERIFIED
    status_code = 400

    def __init__(self, message: str = "Already verified", **kwargs: Any):
        super().__init__(message, **kwargs)


class StorageError(VerificationError):
    """Persistence failure. Logged in full, surfaced only as a generic error."""

    error_code = ErrorCode.INTERNAL_ERROR
    status_code = 500


class DispatchError(VerificationError):
    """The sender could not deliver. Committed record changes stay in place."""

    error_code = ErrorCode.DISPATCH_FAILED
    status_code = 502

    def __init__(self, message: str = "connection failed. retry?", **kwargs: Any):
        super().__init__(message, **kwargs)


class AttemptsExhaustedError(VerificationError):
    """Lock has lapsed but the current code already used every attempt."""

    error_code = ErrorCode.MAX_ATTEMPTS_EXCEEDED
    status_code = 429

    def __init__(self, message: str = "Too many failed attempts. Request a new code.", **kwargs: Any):
        super().__init__(message, **kwargs)


class InvalidCodeError(VerificationError):
    error_code = ErrorCode.INVALID_CODE
    status_code = 400

    def __init__(self, message: str = "Incorrect code.", **kwargs: Any):
        super().__init__(message, **kwargs)
