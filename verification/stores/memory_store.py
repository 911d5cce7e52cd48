"""In-memory verification stores."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any

from verification.clock import utcnow
from verification.exceptions import AlreadyExistsError, NotFoundError
from verification.schemas import (
    AttemptStats,
    ClientMeta,
    DerivedFields,
    GuessGuard,
    MaintenanceReport,
    SignupRecord,
    VerificationAttempt,
)

logger = logging.getLogger(__name__)


class MemorySignupStore:
    def __init__(self, now: Callable[[], datetime] = utcnow) -> None:
        self._lock = asyncio.Lock()
        self._now = now
        self._signups: dict[str, SignupRecord] = {}
        self._attempts: list[VerificationAttempt] = []

    def _require(self, email: str) -> SignupRecord:
        signup = self._signups.get(email.lower())
        if not signup:
            raise NotFoundError()
        return signup

    async def create(self, email: str, code: str, client_meta: ClientMeta) -> SignupRecord:
        async with self._lock:
            key = email.lower()
            if key in self._signups:
                raise AlreadyExistsError("Email already exists in waitlist")
            now = self._now()
            signup = SignupRecord(
                email=key,
                verification_code=code,
                created_at=now,
                updated_at=now,
                browser_client=client_meta.browser_client,
                ip_address=client_meta.ip_address,
                referral_source=client_meta.referral_source,
            )
            self._signups[key] = signup
            return signup.model_copy()

    async def find_by_email(self, email: str) -> SignupRecord | None:
        async with self._lock:
            signup = self._signups.get(email.lower())
            return signup.model_copy() if signup else None

    async def update_code(self, email: str, new_code: str) -> SignupRecord:
        async with self._lock:
            signup = self._require(email)
            signup.verification_code = new_code
            signup.verification_attempts = 0
            signup.locked_until = None
            signup.updated_at = self._now()
            return signup.model_copy()

    async def increment_attempts(self, email: str, guard: GuessGuard | None = None) -> int | None:
        async with self._lock:
            signup = self._require(email)
            if guard is not None and not guard.admits(signup):
                return None
            signup.verification_attempts += 1
            if guard is not None and guard.lock_until and signup.verification_attempts >= guard.max_attempts:
                signup.locked_until = guard.lock_until
            return signup.verification_attempts

    async def lock(self, email: str, until: datetime) -> SignupRecord:
        async with self._lock:
            signup = self._require(email)
            signup.locked_until = until
            return signup.model_copy()

    async def mark_verified(
        self,
        email: str,
        derived: DerivedFields | None = None,
        code: str | None = None,
        guard: GuessGuard | None = None,
    ) -> SignupRecord | None:
        async with self._lock:
            signup = self._require(email)
            if code is not None and signup.verification_code != code:
                return None
            if guard is not None and not guard.admits(signup):
                return None
            if not signup.is_verified:
                signup.is_verified = True
                signup.verified_at = self._now()
            signup.verification_attempts = 0
            signup.locked_until = None
            if derived:
                signup.welcome_message_id = derived.welcome_message_id
                signup.welcome_message_text = derived.welcome_message_text
                signup.calculated_number = derived.calculated_number
            return signup.model_copy()

    async def count_all(self) -> int:
        async with self._lock:
            return len(self._signups)

    async def count_created_before(self, timestamp: datetime) -> int:
        async with self._lock:
            return sum(1 for signup in self._signups.values() if signup.created_at <= timestamp)

    async def count_verified(self) -> int:
        async with self._lock:
            return sum(1 for signup in self._signups.values() if signup.is_verified)

    async def log_attempt(
        self, email: str, attempted_code: str, was_successful: bool, ip_address: str
    ) -> VerificationAttempt:
        async with self._lock:
            attempt = VerificationAttempt(
                email=email.lower(),
                attempted_code=attempted_code,
                was_successful=was_successful,
                ip_address=ip_address,
                timestamp=self._now(),
            )
            self._attempts.append(attempt)
            return attempt.model_copy()

    async def list_attempts(self, email: str) -> list[VerificationAttempt]:
        async with self._lock:
            return [a.model_copy() for a in self._attempts if a.email == email.lower()]

    async def get_attempt_stats(self, since: datetime, email: str | None = None) -> AttemptStats:
        async with self._lock:
            window = [
                a for a in self._attempts
                if a.timestamp >= since and (email is None or a.email == email.lower())
            ]
            successful = sum(1 for a in window if a.was_successful)
            return AttemptStats(
                total_attempts=len(window),
                successful_attempts=successful,
                failed_attempts=len(window) - successful,
                unique_emails=len({a.email for a in window}),
            )

    async def cleanup_expired(self, attempts_before: datetime) -> MaintenanceReport:
        async with self._lock:
            now = self._now()
            locks_cleared = 0
            for signup in self._signups.values():
                if signup.locked_until is not None and signup.locked_until < now:
                    signup.locked_until = None
                    locks_cleared += 1
            kept = [a for a in self._attempts if a.timestamp >= attempts_before]
            deleted = len(self._attempts) - len(kept)
            self._attempts = kept
            return MaintenanceReport(
                locks_cleared=locks_cleared, attempts_deleted=deleted, cutoff=attempts_before
            )


class MemoryKeyValueStore:
    """Process-local key-value map. Single-instance deployments only."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            self._data[key] = value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def scan(self, prefix: str = "") -> AsyncIterator[tuple[str, Any]]:
        async with self._lock:
            snapshot = [(k, v) for k, v in self._data.items() if k.startswith(prefix)]
        for item in snapshot:
            yield item

    async def size(self, prefix: str = "") -> int:
        async with self._lock:
            if not prefix:
                return len(self._data)
            return sum(1 for key in self._data if key.startswith(prefix))


class MemoryEmailSender:
    """Outbox that records messages instead of delivering them."""

    def __init__(self, fail: bool = False) -> None:
        self._lock = asyncio.Lock()
        self.fail = fail
        self.outbox: list[dict[str, str]] = []

    async def send(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
        if self.fail:
            logger.warning(f"[Outbox] Simulated delivery failure to {to_email}")
            return False
        async with self._lock:
            self.outbox.append(
                {"to": to_email, "subject": subject, "text": text_body, "html": html_body}
            )
        return True

    def sent_to(self, email: str) -> list[dict[str, str]]:
        return [message for message in self.outbox if message["to"] == email]
