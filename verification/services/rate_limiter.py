"""Sliding-window rate limiter over a pluggable key-value store.

Each entry holds the request timestamps inside the window, so retry-after is
exact: the oldest timestamp plus the window length. One limiter instance is
created per concern (signup by IP, resend by email, ...) and its ``scope``
keeps its keys apart from every other instance sharing the same store.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from verification.interfaces.kv_store import KeyValueStore
from verification.interfaces.rate_limiter import RateLimitResult
from verification.services.maintenance import KeyedLock, PeriodicTask

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit"
DEFAULT_CLEANUP_INTERVAL_SECONDS = 5 * 60
DEFAULT_MAX_ENTRIES = 10_000


def _as_datetime(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


@dataclass(frozen=True)
class CleanupStats:
    entries_checked: int
    entries_removed: int


class SlidingWindowRateLimiter:
    def __init__(
        self,
        store: KeyValueStore,
        scope: str,
        clock: Callable[[], float] = time.time,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self.scope = scope
        self._store = store
        self._clock = clock
        self._max_entries = max_entries
        self._locks = KeyedLock()
        self._prefix = f"{KEY_PREFIX}:{scope}:"
        self._cleanup_task = PeriodicTask(
            f"rate-limit-cleanup:{scope}", cleanup_interval_seconds, self.cleanup
        )

    def _key(self, identifier: str, window_seconds: float) -> str:
        return f"{self._prefix}{identifier}:{window_seconds:g}"

    async def _load_hits(self, key: str, window_seconds: float, now: float) -> list[float]:
        entry = await self._store.get(key)
        hits = entry["hits"] if entry else []
        return [ts for ts in hits if now - ts < window_seconds]

    def _result(self, hits: list[float], limit: int, window_seconds: float, now: float) -> RateLimitResult:
        remaining = max(0, limit - len(hits))
        if not hits:
            return RateLimitResult(allowed=True, remaining=remaining, reset_at=_as_datetime(now + window_seconds))
        reset_at = hits[0] + window_seconds
        if remaining > 0:
            return RateLimitResult(allowed=True, remaining=remaining, reset_at=_as_datetime(reset_at))
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_at=_as_datetime(reset_at),
            retry_after_seconds=max(1, math.ceil(reset_at - now)),
        )

    async def check(self, identifier: str, limit: int, window_seconds: float) -> RateLimitResult:
        now = self._clock()
        key = self._key(identifier, window_seconds)
        try:
            async with self._locks(key):
                hits = await self._load_hits(key, window_seconds, now)
                if len(hits) >= limit:
                    await self._store.set(key, {"window": window_seconds, "hits": hits})
                    result = self._result(hits, limit, window_seconds, now)
                    logger.warning(
                        f"[RateLimiter] {self.scope} limit reached for {identifier}, "
                        f"retry in {result.retry_after_seconds}s"
                    )
                    return result
                hits.append(now)
                await self._store.set(key, {"window": window_seconds, "hits": hits})
                return RateLimitResult(
                    allowed=True,
                    remaining=limit - len(hits),
                    reset_at=_as_datetime(hits[0] + window_seconds),
                )
        except Exception:
            logger.exception(f"[RateLimiter] {self.scope} store error for {identifier}, allowing request")
            return RateLimitResult(allowed=True, remaining=limit, reset_at=_as_datetime(now + window_seconds))

    async def peek(self, identifier: str, limit: int, window_seconds: float) -> RateLimitResult:
        """Report the current status without consuming a request."""
        now = self._clock()
        key = self._key(identifier, window_seconds)
        try:
            hits = await self._load_hits(key, window_seconds, now)
        except Exception:
            logger.exception(f"[RateLimiter] {self.scope} store error for {identifier}, allowing request")
            hits = []
        return self._result(hits, limit, window_seconds, now)

    async def reset(self, identifier: str, window_seconds: float) -> None:
        key = self._key(identifier, window_seconds)
        async with self._locks(key):
            await self._store.delete(key)

    async def cleanup(self) -> CleanupStats:
        """Drop fully elapsed windows, then evict least recently active keys over the cap."""
        now = self._clock()
        checked = 0
        removed = 0
        survivors: list[tuple[float, str]] = []

        async for key, _ in self._store.scan(self._prefix):
            checked += 1
            async with self._locks(key):
                entry = await self._store.get(key)
                if entry is None:
                    continue
                window = entry["window"]
                hits = [ts for ts in entry["hits"] if now - ts < window]
                if not hits:
                    await self._store.delete(key)
                    removed += 1
                    continue
                if len(hits) != len(entry["hits"]):
                    await self._store.set(key, {"window": window, "hits": hits})
                survivors.append((hits[-1], key))

        overflow = len(survivors) - self._max_entries
        if overflow > 0:
            survivors.sort()
            for _, key in survivors[:overflow]:
                async with self._locks(key):
                    await self._store.delete(key)
                removed += 1

        if removed:
            logger.info(f"[RateLimiter] {self.scope} cleanup removed {removed}/{checked} entries")
        return CleanupStats(entries_checked=checked, entries_removed=removed)

    async def stats(self) -> dict[str, int | float | str]:
        return {
            "scope": self.scope,
            "total_entries": await self._store.size(self._prefix),
            "cleanup_interval": self._cleanup_task.interval_seconds,
        }

    def start_cleanup(self) -> None:
        self._cleanup_task.start()

    async def stop_cleanup(self) -> None:
        await self._cleanup_task.stop()


@dataclass
class RequestLimiters:
    """The request-level limiter instances, one per concern."""

    signup_by_ip: SlidingWindowRateLimiter
    signup_by_email: SlidingWindowRateLimiter
    verify_by_ip: SlidingWindowRateLimiter
    resend_by_email: SlidingWindowRateLimiter
    resend_by_ip: SlidingWindowRateLimiter

    @classmethod
    def create(
        cls,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
    ) -> RequestLimiters:
        def limiter(scope: str) -> SlidingWindowRateLimiter:
            return SlidingWindowRateLimiter(
                store,
                scope,
                clock=clock,
                max_entries=max_entries,
                cleanup_interval_seconds=cleanup_interval_seconds,
            )

        return cls(
            signup_by_ip=limiter("signup-ip"),
            signup_by_email=limiter("signup-email"),
            verify_by_ip=limiter("verify-ip"),
            resend_by_email=limiter("resend-email"),
            resend_by_ip=limiter("resend-ip"),
        )

    def all(self) -> list[SlidingWindowRateLimiter]:
        return [
            self.signup_by_ip,
            self.signup_by_email,
            self.verify_by_ip,
            self.resend_by_email,
            self.resend_by_ip,
        ]
