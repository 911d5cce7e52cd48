"""Rate limiter interface."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after_seconds: int | None = None


class RateLimiter(Protocol):
    async def check(self, identifier: str, limit: int, window_seconds: float) -> RateLimitResult:
        """Check and, when allowed, consume one request in a single atomic step."""
        ...

    async def peek(self, identifier: str, limit: int, window_seconds: float) -> RateLimitResult:
        ...

    async def reset(self, identifier: str, window_seconds: float) -> None:
        ...
