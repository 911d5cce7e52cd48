"""Failure-count bans per (identifier, action kind).

Counts failures rather than requests, so a caller can be inside every rate
limit and still end up banned. Bans resolve lazily on the next query.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable

from verification.interfaces.kv_store import KeyValueStore
from verification.schemas import ActionKind
from verification.services.maintenance import KeyedLock, PeriodicTask

logger = logging.getLogger(__name__)

KEY_PREFIX = "ban"
DEFAULT_THRESHOLD = 20
DEFAULT_BAN_DURATION_SECONDS = 60 * 60
DEFAULT_ENTRY_TTL_SECONDS = 24 * 60 * 60
DEFAULT_CLEANUP_INTERVAL_SECONDS = 60 * 60


def _fresh_record() -> dict:
    return {"count": 0, "last_attempt": 0.0, "banned": False, "ban_expiry": None}


class FailureBanTracker:
    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
        threshold: int = DEFAULT_THRESHOLD,
        ban_duration_seconds: float = DEFAULT_BAN_DURATION_SECONDS,
        entry_ttl_seconds: float = DEFAULT_ENTRY_TTL_SECONDS,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self._store = store
        self._clock = clock
        self.threshold = threshold
        self.ban_duration_seconds = ban_duration_seconds
        self.entry_ttl_seconds = entry_ttl_seconds
        self._locks = KeyedLock()
        self._cleanup_task = PeriodicTask("ban-cleanup", cleanup_interval_seconds, self.cleanup)

    @staticmethod
    def _key(identifier: str, kind: ActionKind) -> str:
        return f"{KEY_PREFIX}:{ActionKind(kind).value}:{identifier}"

    async def track_failed_attempt(self, identifier: str, kind: ActionKind) -> bool:
        """Record one failure. Returns False from the call that reaches the threshold onwards."""
        key = self._key(identifier, kind)
        now = self._clock()
        try:
            async with self._locks(key):
                record = await self._store.get(key) or _fresh_record()
                if record["banned"]:
                    if now < record["ban_expiry"]:
                        return False
                    record = _fresh_record()

                record = {**record, "count": record["count"] + 1, "last_attempt": now}
                if record["count"] >= self.threshold:
                    record["banned"] = True
                    record["ban_expiry"] = now + self.ban_duration_seconds
                    logger.warning(
                        f"[BanTracker] Banned {identifier} for {ActionKind(kind).value} after "
                        f"{record['count']} failures"
                    )
                await self._store.set(key, record)
                return not record["banned"]
        except Exception:
            logger.exception(f"[BanTracker] Store error tracking {identifier}, allowing request")
            return True

    async def is_banned(self, identifier: str, kind: ActionKind) -> bool:
        key = self._key(identifier, kind)
        now = self._clock()
        try:
            async with self._locks(key):
                record = await self._store.get(key)
                if not record or not record["banned"]:
                    return False
                if now < record["ban_expiry"]:
                    return True
                await self._store.set(key, {**_fresh_record(), "last_attempt": now})
                logger.info(f"[BanTracker] Ban lapsed for {identifier} ({ActionKind(kind).value})")
                return False
        except Exception:
            logger.exception(f"[BanTracker] Store error checking {identifier}, allowing request")
            return False

    async def ban_remaining_seconds(self, identifier: str, kind: ActionKind) -> int:
        record = await self._store.get(self._key(identifier, kind))
        if not record or not record["banned"]:
            return 0
        return max(0, math.ceil(record["ban_expiry"] - self._clock()))

    async def failure_count(self, identifier: str, kind: ActionKind) -> int:
        record = await self._store.get(self._key(identifier, kind))
        return record["count"] if record else 0

    async def cleanup(self) -> int:
        """Purge entries idle for longer than the entry TTL whose ban, if any, has lapsed."""
        now = self._clock()
        removed = 0
        async for key, _ in self._store.scan(f"{KEY_PREFIX}:"):
            async with self._locks(key):
                record = await self._store.get(key)
                if record is None:
                    continue
                active_ban = record["banned"] and now < record["ban_expiry"]
                if not active_ban and now - record["last_attempt"] > self.entry_ttl_seconds:
                    await self._store.delete(key)
                    removed += 1
        if removed:
            logger.info(f"[BanTracker] Cleanup removed {removed} idle entries")
        return removed

    def start_cleanup(self) -> None:
        self._cleanup_task.start()

    async def stop_cleanup(self) -> None:
        await self._cleanup_task.stop()
