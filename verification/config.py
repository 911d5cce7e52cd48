"""Verification configuration management."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

AMBIGUOUS_CHARACTERS = frozenset("0O1Il")


class VerificationSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Code issuance
    CODE_LENGTH: int = Field(default=6, description="Characters per verification code")
    CODE_ALPHABET: str = Field(
        default="ABCDEFGHJKLMNPQRSTUVWXYZ23456789",
        description="Characters codes are drawn from (no ambiguous glyphs)",
    )
    CODE_EXPIRY_SECONDS: int = Field(default=15 * 60, description="Code lifetime measured from updated_at")
    MAX_ATTEMPTS: int = Field(default=4, description="Wrong guesses allowed before lockout")
    LOCKOUT_DURATION_SECONDS: int = Field(default=60 * 60, description="Lockout length after MAX_ATTEMPTS")

    # Request-level rate limits (all share RATE_LIMIT_WINDOW_SECONDS)
    RATE_LIMIT_WINDOW_SECONDS: int = Field(default=60 * 60, description="Window for every request limiter")
    SIGNUP_PER_IP_LIMIT: int = Field(default=3, description="Signups per IP per window")
    SIGNUP_PER_EMAIL_LIMIT: int = Field(default=5, description="Signups per email per window")
    VERIFY_PER_IP_LIMIT: int = Field(default=10, description="Verification requests per IP per window")
    RESEND_PER_EMAIL_LIMIT: int = Field(default=3, description="Resends per email per window")
    RESEND_PER_IP_LIMIT: int = Field(default=10, description="Resends per IP per window")

    # Outbound email limits
    EMAIL_SEND_PER_EMAIL_LIMIT: int = Field(default=5, description="Emails sent to one address per window")
    EMAIL_SEND_PER_IP_LIMIT: int = Field(default=10, description="Emails triggered by one IP per window")

    RATE_LIMIT_CLEANUP_INTERVAL_SECONDS: int = Field(default=5 * 60, description="Limiter sweep interval")
    RATE_LIMIT_MAX_ENTRIES: int = Field(default=10_000, description="Tracked identifiers before eviction")

    # Ban tracking
    BAN_THRESHOLD: int = Field(default=20, description="Failures before a temporary ban")
    BAN_DURATION_SECONDS: int = Field(default=60 * 60, description="Ban length")
    BAN_ENTRY_TTL_SECONDS: int = Field(default=24 * 60 * 60, description="Idle ban entries are purged after this")

    # Derived fields and stats
    SIGNUP_NUMBER_BASE: int = Field(default=3246, description="Offset added to record counts for public numbers")
    STATS_CACHE_SECONDS: int = Field(default=60, description="Public stats cache lifetime")
    STATS_ROUNDING_THRESHOLD: int = Field(default=1000, description="Counts above this are rounded down to 100s")
    ATTEMPT_LOG_RETENTION_DAYS: int = Field(default=30, description="Attempt log rows older than this are purged")
    MAINTENANCE_INTERVAL_SECONDS: int = Field(default=60 * 60, description="Interval between maintenance sweeps")

    # Storage: "postgres" (production) or "memory" (testing)
    SIGNUP_STORE: Literal["postgres", "memory"] = Field(default="postgres", description="Signup store backend")
    DATABASE_URL: str = Field(
        default="postgresql://postgres@localhost:5432/waitlist",
        description="SQLAlchemy database URL",
    )
    DB_ECHO: bool = Field(default=False, description="Enable SQL query logging")
    DB_POOL_SIZE: int = Field(default=10, description="Database connection pool size")

    # Email
    EMAIL_PROVIDER: Literal["resend", "console"] = Field(default="resend", description="Email provider")
    EMAIL_FROM_NAME: str = Field(default="StartSpooling", description="From name displayed in emails")
    EMAIL_FROM_ADDRESS: str = Field(default="noreply@startspooling.com", description="Sender email address")
    RESEND_API_KEY: str | None = Field(default=None, description="Resend API key")
    RESEND_API_URL: str = Field(default="https://api.resend.com/emails", description="Resend send endpoint")
    EMAIL_MAX_RETRIES: int = Field(default=2, description="Transport retries after the first send attempt")
    EMAIL_TIMEOUT_SECONDS: float = Field(default=10.0, description="HTTP timeout per send attempt")

    @field_validator("CODE_ALPHABET")
    @classmethod
    def validate_alphabet(cls, v: str) -> str:
        ambiguous = AMBIGUOUS_CHARACTERS.intersection(v)
        if ambiguous:
            raise ValueError(f"CODE_ALPHABET contains ambiguous characters: {''.join(sorted(ambiguous))}")
        if len(set(v)) != len(v):
            raise ValueError("CODE_ALPHABET must not repeat characters")
        if len(v) < 2:
            raise ValueError("CODE_ALPHABET needs at least two characters")
        return v

    @field_validator(
        "CODE_LENGTH",
        "CODE_EXPIRY_SECONDS",
        "MAX_ATTEMPTS",
        "LOCKOUT_DURATION_SECONDS",
        "RATE_LIMIT_WINDOW_SECONDS",
        "SIGNUP_PER_IP_LIMIT",
        "SIGNUP_PER_EMAIL_LIMIT",
        "VERIFY_PER_IP_LIMIT",
        "RESEND_PER_EMAIL_LIMIT",
        "RESEND_PER_IP_LIMIT",
        "EMAIL_SEND_PER_EMAIL_LIMIT",
        "EMAIL_SEND_PER_IP_LIMIT",
        "RATE_LIMIT_CLEANUP_INTERVAL_SECONDS",
        "RATE_LIMIT_MAX_ENTRIES",
        "BAN_THRESHOLD",
        "BAN_DURATION_SECONDS",
        "BAN_ENTRY_TTL_SECONDS",
        "STATS_CACHE_SECONDS",
        "ATTEMPT_LOG_RETENTION_DAYS",
        "MAINTENANCE_INTERVAL_SECONDS",
    )
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return v

    @property
    def code_expiry(self) -> timedelta:
        return timedelta(seconds=self.CODE_EXPIRY_SECONDS)

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(seconds=self.LOCKOUT_DURATION_SECONDS)


settings = VerificationSettings()
