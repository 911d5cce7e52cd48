"""Verification records and result schemas."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from verification.exceptions import (
    ErrorCode,
    ExpiredError,
    LockedError,
    RateLimitError,
    StorageError,
    VerificationError,
)

RESEND_MARKER = "RESEND"
INTERNAL_ERROR_MESSAGE = "something broke. our fault."


class ActionKind(str, Enum):
    SIGNUP = "signup"
    VERIFICATION = "verification"
    RESEND = "resend"


class SendKind(str, Enum):
    VERIFICATION_CODE = "verification_code"
    CONFIRMATION = "confirmation"


class ClientMeta(BaseModel):
    ip_address: str = "unknown"
    browser_client: str = "unknown"
    referral_source: str | None = None


class SignupRecord(BaseModel):
    """One waitlist signup, keyed by normalized email.

    ``updated_at`` doubles as the issue time of the current code.
    """

    email: str
    verification_code: str
    is_verified: bool = False
    verified_at: datetime | None = None
    verification_attempts: int = 0
    locked_until: datetime | None = None
    created_at: datetime
    updated_at: datetime
    welcome_message_id: int | None = None
    welcome_message_text: str | None = None
    calculated_number: int | None = None
    browser_client: str | None = None
    ip_address: str | None = None
    referral_source: str | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


class GuessGuard(BaseModel):
    """Conditions a guess must still meet when its write lands.

    Stores check these inside the same atomic update as the write, so a
    guess read against a stale record can neither verify nor count.
    """

    max_attempts: int
    now: datetime
    issued_after: datetime | None = None
    lock_until: datetime | None = Field(
        default=None, description="Lock applied by the update that spends the last attempt"
    )

    def admits(self, signup: SignupRecord) -> bool:
        return (
            not signup.is_verified
            and signup.verification_attempts < self.max_attempts
            and not signup.is_locked(self.now)
            and (self.issued_after is None or signup.updated_at >= self.issued_after)
        )


class DerivedFields(BaseModel):
    welcome_message_id: int
    welcome_message_text: str | None = None
    calculated_number: int


class VerificationAttempt(BaseModel):
    email: str
    attempted_code: str
    was_successful: bool
    ip_address: str
    timestamp: datetime


class AttemptStats(BaseModel):
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    unique_emails: int = 0


class MaintenanceReport(BaseModel):
    locks_cleared: int = 0
    attempts_deleted: int = 0
    cutoff: datetime


# =============================================================================
# Engine results
# =============================================================================


class OperationResult(BaseModel):
    success: bool
    message: str
    error: ErrorCode | None = None
    retry_after_seconds: int | None = None
    retry_minutes: int | None = None

    @classmethod
    def from_error(cls, exc: VerificationError, **extra):
        message = INTERNAL_ERROR_MESSAGE if isinstance(exc, StorageError) else exc.message
        payload = {"success": False, "message": message, "error": exc.error_code}
        if isinstance(exc, RateLimitError):
            payload["retry_after_seconds"] = exc.retry_after_seconds
        if isinstance(exc, LockedError):
            payload["retry_minutes"] = exc.retry_minutes
        payload.update(extra)
        return cls(**payload)


class CodeRequestResult(OperationResult):
    """Outcome of request_code / resend_code."""

    sent: bool = False
    email: str | None = Field(default=None, description="Masked recipient address")
    already_verified: bool = False


class VerifyResult(OperationResult):
    verified: bool = False
    welcome_message_id: int | None = None
    calculated_number: int | None = None
    attempts_remaining: int | None = None
    locked: bool = False
    expired: bool = False
    already_verified: bool = False

    @classmethod
    def from_error(cls, exc: VerificationError, **extra):
        if isinstance(exc, LockedError):
            extra.setdefault("locked", True)
        if isinstance(exc, ExpiredError):
            extra.setdefault("expired", True)
        if exc.error_code is ErrorCode.EMAIL_ALREADY_VERIFIED:
            extra.setdefault("already_verified", True)
        return super().from_error(exc, **extra)


class StatsResult(OperationResult):
    verified_count: int = 0


class SignupNumberResult(OperationResult):
    signup_number: int | None = None


class AttemptStatsResult(OperationResult):
    stats: AttemptStats | None = None
