"""
Waitlist models.

WaitlistSignup: one row per email, carries the live verification code
VerificationAttempt: append-only log of guesses and resend events
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)

from db.engine import Base


class WaitlistSignup(Base):
    """
    Signup keyed by normalized email.

    updated_at is the issue time of the current code and drives expiry.
    """
    __tablename__ = "waitlist_signups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(254), unique=True, nullable=False, index=True)
    verification_code = Column(String(16), nullable=False)
    is_verified = Column(Boolean, nullable=False, default=False, index=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    verification_attempts = Column(Integer, nullable=False, default=0)
    locked_until = Column(DateTime(timezone=True), nullable=True)

    # Set once, at the verification that flips is_verified
    welcome_message_id = Column(Integer, nullable=True)
    welcome_message_text = Column(Text, nullable=True)
    calculated_number = Column(Integer, nullable=True)

    # Client metadata captured at signup
    browser_client = Column(String(255), nullable=True)
    ip_address = Column(String(64), nullable=True)
    referral_source = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<WaitlistSignup(email={self.email}, verified={self.is_verified})>"


class VerificationAttempt(Base):
    """
    One verification guess, or a resend event (attempted_code = "RESEND").
    """
    __tablename__ = "verification_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(254), nullable=False)
    attempted_code = Column(String(16), nullable=False)
    was_successful = Column(Boolean, nullable=False, default=False)
    ip_address = Column(String(64), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        Index("ix_verification_attempts_email_timestamp", "email", "timestamp"),
    )

    def __repr__(self):
        return f"<VerificationAttempt(email={self.email}, successful={self.was_successful})>"
