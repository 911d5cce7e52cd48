"""
SQLAlchemy models for the waitlist database.

All models inherit from db.engine.Base for Alembic migrations.
"""

from db.models.signup import VerificationAttempt, WaitlistSignup

__all__ = [
    "WaitlistSignup",
    "VerificationAttempt",
]
