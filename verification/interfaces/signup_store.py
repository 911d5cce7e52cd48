"""Signup store interface.

Every mutating call is a single atomic row update in the backing store.
Implementations raise ``StorageError`` for backend failures.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from verification.schemas import (
    AttemptStats,
    ClientMeta,
    DerivedFields,
    GuessGuard,
    MaintenanceReport,
    SignupRecord,
    VerificationAttempt,
)


class SignupStore(Protocol):
    async def create(self, email: str, code: str, client_meta: ClientMeta) -> SignupRecord:
        """Insert a new signup. Raises ``AlreadyExistsError`` if the email is taken."""
        ...

    async def find_by_email(self, email: str) -> SignupRecord | None:
        ...

    async def update_code(self, email: str, new_code: str) -> SignupRecord:
        """Set the code, zero the attempts, clear the lock and stamp ``updated_at``."""
        ...

    async def increment_attempts(self, email: str, guard: GuessGuard | None = None) -> int | None:
        """Atomically add one wrong guess and return the post-increment count.

        With a guard the update only applies while ``guard.admits`` the row,
        and returns None otherwise. The update that reaches
        ``guard.max_attempts`` also sets ``locked_until = guard.lock_until``.
        """
        ...

    async def lock(self, email: str, until: datetime) -> SignupRecord:
        ...

    async def mark_verified(
        self,
        email: str,
        derived: DerivedFields | None = None,
        code: str | None = None,
        guard: GuessGuard | None = None,
    ) -> SignupRecord | None:
        """Flip ``is_verified``, stamp ``verified_at`` once, reset attempts and lock.

        With ``code`` and ``guard`` the update only applies while that code is
        still current and the guard admits the row; otherwise returns None.
        """
        ...

    async def count_all(self) -> int:
        ...

    async def count_created_before(self, timestamp: datetime) -> int:
        """Count signups created at or before ``timestamp``."""
        ...

    async def count_verified(self) -> int:
        ...

    async def log_attempt(
        self, email: str, attempted_code: str, was_successful: bool, ip_address: str
    ) -> VerificationAttempt:
        ...

    async def get_attempt_stats(self, since: datetime, email: str | None = None) -> AttemptStats:
        ...

    async def cleanup_expired(self, attempts_before: datetime) -> MaintenanceReport:
        """Clear lapsed locks and delete attempt log rows older than ``attempts_before``."""
        ...
