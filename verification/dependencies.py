"""Verification wiring.

Limiter and ban state lives in one process-local key-value store. Swapping
in a shared store behind ``KeyValueStore`` is enough for multi-instance
deployments; nothing else changes.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timezone

from verification.config import VerificationSettings, settings as default_settings
from verification.interfaces.email_sender import EmailSender
from verification.interfaces.kv_store import KeyValueStore
from verification.interfaces.signup_store import SignupStore
from verification.services.ban_tracker import FailureBanTracker
from verification.services.dispatch_gate import EmailDispatchGate
from verification.services.email_service import create_email_sender
from verification.services.notifications import NotificationDispatcher
from verification.services.rate_limiter import RequestLimiters, SlidingWindowRateLimiter
from verification.services.verification_service import VerificationService
from verification.stores.memory_store import MemoryKeyValueStore, MemorySignupStore
from verification.stores.postgres_store import PostgresSignupStore


_memory_signup_store = MemorySignupStore()
_kv_store = MemoryKeyValueStore()

_postgres_signup_store: PostgresSignupStore | None = None
_verification_service: VerificationService | None = None


def _get_signup_store() -> SignupStore:
    """Get the signup store based on the SIGNUP_STORE setting."""
    if default_settings.SIGNUP_STORE == "postgres":
        global _postgres_signup_store
        if _postgres_signup_store is None:
            _postgres_signup_store = PostgresSignupStore()
        return _postgres_signup_store
    # Memory store for development/testing
    return _memory_signup_store


def build_verification_service(
    config: VerificationSettings | None = None,
    signup_store: SignupStore | None = None,
    sender: EmailSender | None = None,
    kv_store: KeyValueStore | None = None,
    clock: Callable[[], float] = time.time,
    code_generator: Callable[[], str] | None = None,
) -> VerificationService:
    """Assemble a service; limiters, bans and the engine all read the same clock."""
    config = config or default_settings
    kv_store = kv_store if kv_store is not None else MemoryKeyValueStore()
    sender = sender or create_email_sender(config)

    def now() -> datetime:
        return datetime.fromtimestamp(clock(), tz=timezone.utc)

    def limiter(scope: str) -> SlidingWindowRateLimiter:
        return SlidingWindowRateLimiter(
            kv_store,
            scope,
            clock=clock,
            max_entries=config.RATE_LIMIT_MAX_ENTRIES,
            cleanup_interval_seconds=config.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS,
        )

    gate = EmailDispatchGate(
        email_limiter=limiter("send-email"),
        ip_limiter=limiter("send-ip"),
        per_email_limit=config.EMAIL_SEND_PER_EMAIL_LIMIT,
        per_ip_limit=config.EMAIL_SEND_PER_IP_LIMIT,
        window_seconds=config.RATE_LIMIT_WINDOW_SECONDS,
    )
    bans = FailureBanTracker(
        kv_store,
        clock=clock,
        threshold=config.BAN_THRESHOLD,
        ban_duration_seconds=config.BAN_DURATION_SECONDS,
        entry_ttl_seconds=config.BAN_ENTRY_TTL_SECONDS,
        cleanup_interval_seconds=config.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS,
    )
    limiters = RequestLimiters.create(
        kv_store,
        clock=clock,
        max_entries=config.RATE_LIMIT_MAX_ENTRIES,
        cleanup_interval_seconds=config.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS,
    )
    return VerificationService(
        store=signup_store or MemorySignupStore(now=now),
        sender=sender,
        gate=gate,
        limiters=limiters,
        bans=bans,
        notifications=NotificationDispatcher(gate, sender),
        config=config,
        now=now,
        code_generator=code_generator,
    )


def get_verification_service() -> VerificationService:
    """Process-wide service bound to the configured store and the shared limiter state."""
    global _verification_service
    if _verification_service is None:
        _verification_service = build_verification_service(
            signup_store=_get_signup_store(),
            kv_store=_kv_store,
        )
    return _verification_service
