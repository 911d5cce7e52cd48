"""Outbound email gate.

Send limits are separate from the request-level limiters: a caller can pass
signup or resend limiting and still be refused another email.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from verification.interfaces.rate_limiter import RateLimiter
from verification.schemas import SendKind
from verification.security import mask_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendAuthorization:
    allowed: bool
    limited_by: str | None = None
    retry_after_seconds: int | None = None


class EmailDispatchGate:
    def __init__(
        self,
        email_limiter: RateLimiter,
        ip_limiter: RateLimiter,
        per_email_limit: int = 5,
        per_ip_limit: int = 10,
        window_seconds: float = 60 * 60,
    ) -> None:
        self._email_limiter = email_limiter
        self._ip_limiter = ip_limiter
        self.per_email_limit = per_email_limit
        self.per_ip_limit = per_ip_limit
        self.window_seconds = window_seconds
        self._lock = asyncio.Lock()

    async def authorize_send(self, email: str, ip_address: str, kind: SendKind) -> SendAuthorization:
        # Both dimensions are peeked first so a refusal on one never spends a slot on the other.
        async with self._lock:
            for name, limiter, identifier, limit in self._dimensions(email, ip_address):
                status = await limiter.peek(identifier, limit, self.window_seconds)
                if not status.allowed:
                    return self._refuse(name, email, kind, status.retry_after_seconds)

            for name, limiter, identifier, limit in self._dimensions(email, ip_address):
                result = await limiter.check(identifier, limit, self.window_seconds)
                if not result.allowed:
                    return self._refuse(name, email, kind, result.retry_after_seconds)

        return SendAuthorization(allowed=True)

    def _dimensions(self, email: str, ip_address: str):
        return (
            ("email", self._email_limiter, email, self.per_email_limit),
            ("ip", self._ip_limiter, ip_address, self.per_ip_limit),
        )

    def _refuse(self, name: str, email: str, kind: SendKind, retry_after: int | None) -> SendAuthorization:
        logger.warning(
            f"[Dispatch] {SendKind(kind).value} email to {mask_email(email)} refused by {name} limit"
        )
        return SendAuthorization(allowed=False, limited_by=name, retry_after_seconds=retry_after)
