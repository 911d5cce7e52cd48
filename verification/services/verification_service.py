"""Verification engine.

Per email the record moves Unregistered -> Pending <-> Locked -> Verified.
Locks and code expiry are resolved lazily on the next request; there are no
timers. Business errors are raised internally and converted into typed
results here, so nothing but a result object leaves a public method.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta
from functools import partial

from verification.clock import utcnow
from verification.config import VerificationSettings, settings as default_settings
from verification.exceptions import (
    AlreadyExistsError,
    AlreadyVerifiedError,
    AttemptsExhaustedError,
    DispatchError,
    ErrorCode,
    ExpiredError,
    InvalidCodeError,
    LockedError,
    NotFoundError,
    RateLimitError,
    StorageError,
    ValidationError,
    VerificationError,
)
from verification.interfaces.ban_tracker import BanTracker
from verification.interfaces.email_sender import EmailSender
from verification.interfaces.rate_limiter import RateLimiter
from verification.interfaces.signup_store import SignupStore
from verification.schemas import (
    RESEND_MARKER,
    ActionKind,
    AttemptStatsResult,
    ClientMeta,
    CodeRequestResult,
    DerivedFields,
    GuessGuard,
    MaintenanceReport,
    OperationResult,
    SendKind,
    SignupNumberResult,
    SignupRecord,
    StatsResult,
    VerifyResult,
)
from verification.security import (
    generate_verification_code,
    is_well_formed,
    mask_email,
    sanitize_code_input,
    sanitize_email,
    validate_email,
)
from verification.services.dispatch_gate import EmailDispatchGate
from verification.services.maintenance import PeriodicTask
from verification.services.notifications import NotificationDispatcher, VerificationCompleted
from verification.services.rate_limiter import RequestLimiters
from verification.services.templates import verification_code_template
from verification.welcome_messages import get_random_welcome_message

logger = logging.getLogger(__name__)

BANNED_MESSAGE = "Access temporarily restricted"
SEND_LIMITED_MESSAGE = "Rate limit exceeded. Please try again later."


def _minutes_until(moment: datetime, now: datetime) -> int:
    return max(1, math.ceil((moment - now).total_seconds() / 60))


def _describe_duration(seconds: int) -> str:
    if seconds % 3600 == 0:
        hours = seconds // 3600
        return "1 hour" if hours == 1 else f"{hours} hours"
    minutes = max(1, math.ceil(seconds / 60))
    return "1 minute" if minutes == 1 else f"{minutes} minutes"


def round_for_display(count: int, threshold: int = 1000) -> int:
    """Public counts above ``threshold`` are rounded down to the nearest hundred."""
    if count > threshold:
        return count // 100 * 100
    return count


class VerificationService:
    def __init__(
        self,
        store: SignupStore,
        sender: EmailSender,
        gate: EmailDispatchGate,
        limiters: RequestLimiters,
        bans: BanTracker,
        notifications: NotificationDispatcher | None = None,
        config: VerificationSettings | None = None,
        now: Callable[[], datetime] = utcnow,
        code_generator: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._sender = sender
        self._gate = gate
        self._limiters = limiters
        self._bans = bans
        self._notifications = notifications
        self._config = config or default_settings
        self._now = now
        self._generate_code = code_generator or partial(
            generate_verification_code, self._config.CODE_LENGTH, self._config.CODE_ALPHABET
        )
        self._stats_cache: tuple[int, datetime] | None = None
        self._maintenance_task = PeriodicTask(
            "signup-maintenance", self._config.MAINTENANCE_INTERVAL_SECONDS, self.run_maintenance
        )

    @property
    def notifications(self) -> NotificationDispatcher | None:
        return self._notifications

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start background sweeps and the confirmation worker. Needs a running loop."""
        for limiter in self._limiters.all():
            limiter.start_cleanup()
        start_ban_cleanup = getattr(self._bans, "start_cleanup", None)
        if start_ban_cleanup:
            start_ban_cleanup()
        self._maintenance_task.start()
        if self._notifications:
            self._notifications.start()

    async def stop(self) -> None:
        for limiter in self._limiters.all():
            await limiter.stop_cleanup()
        stop_ban_cleanup = getattr(self._bans, "stop_cleanup", None)
        if stop_ban_cleanup:
            await stop_ban_cleanup()
        await self._maintenance_task.stop()
        if self._notifications:
            await self._notifications.stop()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def request_code(
        self,
        email: str,
        ip_address: str = "unknown",
        browser_client: str = "unknown",
        referral_source: str | None = None,
    ) -> CodeRequestResult:
        """Sign up, or re-issue a code for an existing signup.

        Verified addresses still receive a fresh code; their state does not change.
        """
        try:
            email = self._normalize_email(email)
            await self._ensure_not_banned(ip_address, ActionKind.SIGNUP)
            await self._enforce(self._limiters.signup_by_ip, ip_address, self._config.SIGNUP_PER_IP_LIMIT,
                                ip_address, ActionKind.SIGNUP)
            await self._enforce(self._limiters.signup_by_email, email, self._config.SIGNUP_PER_EMAIL_LIMIT,
                                ip_address, ActionKind.SIGNUP)

            code = self._generate_code()
            client_meta = ClientMeta(
                ip_address=ip_address, browser_client=browser_client, referral_source=referral_source
            )
            signup, created = await self._create_or_load(email, code, client_meta)
            if created:
                logger.info(f"[Verify] New signup {mask_email(email)} from {ip_address}")
            else:
                self._refuse_if_locked(signup)
                await self._store.update_code(email, code)

            await self._send_code(email, code, ip_address)
            return CodeRequestResult(
                success=True,
                message="check your email. code sent.",
                sent=True,
                email=mask_email(email),
                already_verified=signup.is_verified,
            )
        except VerificationError as exc:
            return self._failure(CodeRequestResult, "request_code", exc)

    async def resend_code(self, email: str, ip_address: str = "unknown") -> CodeRequestResult:
        try:
            email = self._normalize_email(email, uniform_not_found=True)
            await self._ensure_not_banned(ip_address, ActionKind.RESEND)
            await self._enforce(self._limiters.resend_by_ip, ip_address, self._config.RESEND_PER_IP_LIMIT,
                                ip_address, ActionKind.RESEND, resend_message=True)
            await self._enforce(self._limiters.resend_by_email, email, self._config.RESEND_PER_EMAIL_LIMIT,
                                ip_address, ActionKind.RESEND, resend_message=True)

            signup = await self._store.find_by_email(email)
            if signup is None:
                raise NotFoundError()
            self._refuse_if_locked(signup)

            code = self._generate_code()
            await self._store.update_code(email, code)
            await self._audit(email, RESEND_MARKER, True, ip_address)
            await self._send_code(email, code, ip_address)
            return CodeRequestResult(
                success=True,
                message="new code sent. check your email.",
                sent=True,
                email=mask_email(email),
                already_verified=signup.is_verified,
            )
        except VerificationError as exc:
            return self._failure(CodeRequestResult, "resend_code", exc)

    async def verify_code(self, email: str, code: str, ip_address: str = "unknown") -> VerifyResult:
        try:
            email = self._normalize_email(email, uniform_not_found=True)
            submitted = sanitize_code_input(code, self._config.CODE_LENGTH, self._config.CODE_ALPHABET)
            if not submitted:
                raise ValidationError("Code is required")
            if not is_well_formed(submitted, self._config.CODE_LENGTH, self._config.CODE_ALPHABET):
                raise ValidationError("Invalid code format")

            await self._ensure_not_banned(ip_address, ActionKind.VERIFICATION)
            await self._enforce(self._limiters.verify_by_ip, ip_address, self._config.VERIFY_PER_IP_LIMIT,
                                ip_address, ActionKind.VERIFICATION, track_failure=False)

            now = self._now()
            signup = self._ensure_guessable(await self._store.find_by_email(email), now)
            guard = GuessGuard(
                max_attempts=self._config.MAX_ATTEMPTS,
                now=now,
                issued_after=now - self._config.code_expiry,
                lock_until=now + self._config.lockout_duration,
            )
            if submitted == signup.verification_code:
                return await self._complete_verification(signup, submitted, ip_address, guard)
            return await self._reject_code(email, submitted, ip_address, guard)
        except VerificationError as exc:
            return self._failure(VerifyResult, "verify_code", exc)

    async def get_public_stats(self) -> StatsResult:
        now = self._now()
        if self._stats_cache and now < self._stats_cache[1]:
            return StatsResult(success=True, message="ok", verified_count=self._stats_cache[0])
        try:
            count = await self._store.count_verified()
        except StorageError as exc:
            return self._failure(StatsResult, "get_public_stats", exc)

        display = round_for_display(count, self._config.STATS_ROUNDING_THRESHOLD)
        self._stats_cache = (display, now + timedelta(seconds=self._config.STATS_CACHE_SECONDS))
        return StatsResult(success=True, message="ok", verified_count=display)

    async def get_signup_number(self, email: str) -> SignupNumberResult:
        """Position of a signup in the public sequence, counted by creation time."""
        try:
            email = self._normalize_email(email, uniform_not_found=True)
            signup = await self._store.find_by_email(email)
            if signup is None:
                raise NotFoundError()
            position = await self._store.count_created_before(signup.created_at)
            return SignupNumberResult(
                success=True, message="ok", signup_number=self._config.SIGNUP_NUMBER_BASE + position
            )
        except VerificationError as exc:
            return self._failure(SignupNumberResult, "get_signup_number", exc)

    async def get_attempt_stats(self, email: str | None = None, hours: int = 24) -> AttemptStatsResult:
        try:
            if email is not None:
                email = self._normalize_email(email)
            since = self._now() - timedelta(hours=hours)
            stats = await self._store.get_attempt_stats(since, email)
            return AttemptStatsResult(success=True, message="ok", stats=stats)
        except VerificationError as exc:
            return self._failure(AttemptStatsResult, "get_attempt_stats", exc)

    async def run_maintenance(self) -> MaintenanceReport:
        """Clear lapsed locks and purge old attempt log rows. Storage errors propagate."""
        cutoff = self._now() - timedelta(days=self._config.ATTEMPT_LOG_RETENTION_DAYS)
        report = await self._store.cleanup_expired(cutoff)
        logger.info(
            f"[Verify] Maintenance cleared {report.locks_cleared} locks, "
            f"deleted {report.attempts_deleted} attempts older than {cutoff:%Y-%m-%d}"
        )
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _normalize_email(self, raw: str, uniform_not_found: bool = False) -> str:
        email = sanitize_email(raw)
        valid, error = validate_email(email)
        if not valid:
            # Lookups answer a malformed address exactly like an unknown one.
            if uniform_not_found:
                raise NotFoundError()
            raise ValidationError(error or "invalid format")
        return email

    async def _ensure_not_banned(self, ip_address: str, kind: ActionKind) -> None:
        if await self._bans.is_banned(ip_address, kind):
            logger.warning(f"[Verify] Banned IP {ip_address} refused for {kind.value}")
            raise RateLimitError(BANNED_MESSAGE)

    async def _enforce(
        self,
        limiter: RateLimiter,
        identifier: str,
        limit: int,
        ip_address: str,
        kind: ActionKind,
        track_failure: bool = True,
        resend_message: bool = False,
    ) -> None:
        result = await limiter.check(identifier, limit, self._config.RATE_LIMIT_WINDOW_SECONDS)
        if result.allowed:
            return
        if track_failure:
            await self._bans.track_failed_attempt(ip_address, kind)
        message = "slow down."
        if resend_message and result.retry_after_seconds:
            wait_minutes = math.ceil(result.retry_after_seconds / 60)
            message = f"too many resend attempts. wait {wait_minutes} minutes."
        raise RateLimitError(message, retry_after_seconds=result.retry_after_seconds)

    def _ensure_guessable(self, signup: SignupRecord | None, now: datetime) -> SignupRecord:
        if signup is None:
            raise NotFoundError()
        if signup.is_verified:
            raise AlreadyVerifiedError()
        if signup.is_locked(now):
            raise LockedError(_minutes_until(signup.locked_until, now))
        if now - signup.updated_at > self._config.code_expiry:
            raise ExpiredError()
        if signup.verification_attempts >= self._config.MAX_ATTEMPTS:
            raise AttemptsExhaustedError()
        return signup

    async def _recheck(self, email: str, guard: GuessGuard) -> SignupRecord:
        """Re-read a record whose guarded write was refused and raise the reason."""
        return self._ensure_guessable(await self._store.find_by_email(email), guard.now)

    def _refuse_if_locked(self, signup: SignupRecord) -> None:
        now = self._now()
        if not signup.is_verified and signup.is_locked(now):
            raise LockedError(_minutes_until(signup.locked_until, now))

    async def _create_or_load(
        self, email: str, code: str, client_meta: ClientMeta
    ) -> tuple[SignupRecord, bool]:
        signup = await self._store.find_by_email(email)
        if signup is not None:
            return signup, False
        try:
            return await self._store.create(email, code, client_meta), True
        except AlreadyExistsError:
            # Lost a race with a concurrent signup for the same address.
            signup = await self._store.find_by_email(email)
            if signup is None:
                raise
            return signup, False

    async def _send_code(self, email: str, code: str, ip_address: str) -> None:
        authorization = await self._gate.authorize_send(email, ip_address, SendKind.VERIFICATION_CODE)
        if not authorization.allowed:
            raise RateLimitError(SEND_LIMITED_MESSAGE, retry_after_seconds=authorization.retry_after_seconds)

        template = verification_code_template(
            code, self._config.CODE_EXPIRY_SECONDS // 60, self._config.MAX_ATTEMPTS
        )
        logger.debug(f"[Verify] Sending code {code} to {email}")
        try:
            delivered = await self._sender.send(email, template.subject, template.text, template.html)
        except Exception as exc:
            raise DispatchError() from exc
        if not delivered:
            # The stored code stays valid; the caller can ask for a resend.
            raise DispatchError()

    async def _audit(self, email: str, attempted_code: str, was_successful: bool, ip_address: str) -> None:
        try:
            await self._store.log_attempt(email, attempted_code, was_successful, ip_address)
        except StorageError:
            logger.exception(f"[Verify] Could not log attempt for {mask_email(email)}")

    async def _complete_verification(
        self, signup: SignupRecord, code: str, ip_address: str, guard: GuessGuard
    ) -> VerifyResult:
        email = signup.email
        welcome_id, welcome_text = get_random_welcome_message()
        try:
            total = await self._store.count_all()
        except StorageError:
            logger.exception("[Verify] Could not count signups, using base offset")
            total = 0
        calculated_number = self._config.SIGNUP_NUMBER_BASE + total
        derived = DerivedFields(
            welcome_message_id=welcome_id,
            welcome_message_text=welcome_text,
            calculated_number=calculated_number,
        )

        try:
            record = await self._store.mark_verified(email, derived, code=code, guard=guard)
        except StorageError:
            logger.exception(f"[Verify] Derived field update failed for {mask_email(email)}, retrying minimal update")
            record = await self._store.mark_verified(email, code=code, guard=guard)

        if record is None:
            await self._recheck(email, guard)
            # Still guessable, so the code was replaced after it was read.
            logger.info(f"[Verify] Code for {mask_email(email)} was replaced before it could be used")
            return await self._reject_code(email, code, ip_address, guard)

        await self._audit(email, code, True, ip_address)
        logger.info(f"[Verify] {mask_email(email)} verified as #{calculated_number}")

        if self._notifications:
            self._notifications.publish(
                VerificationCompleted(
                    email=email,
                    ip_address=ip_address,
                    signup_number=calculated_number,
                    verified_at=record.verified_at or self._now(),
                )
            )

        return VerifyResult(
            success=True,
            message="Verified. Welcome.",
            verified=True,
            welcome_message_id=welcome_id,
            calculated_number=calculated_number,
            attempts_remaining=self._config.MAX_ATTEMPTS,
        )

    async def _reject_code(self, email: str, submitted: str, ip_address: str, guard: GuessGuard) -> VerifyResult:
        attempts = await self._store.increment_attempts(email, guard)
        if attempts is None:
            await self._recheck(email, guard)
            # A new code arrived while this guess was in flight; it was never compared to it.
            raise InvalidCodeError()
        await self._bans.track_failed_attempt(ip_address, ActionKind.VERIFICATION)
        await self._audit(email, submitted, False, ip_address)
        logger.warning(f"[Verify] Wrong code for {mask_email(email)} from {ip_address} (attempt {attempts})")

        max_attempts = guard.max_attempts
        if attempts >= max_attempts:
            # The increment that reached the cap also wrote the lock.
            logger.warning(f"[Verify] Locked {mask_email(email)} after {attempts} failed attempts")
            duration = _describe_duration(self._config.LOCKOUT_DURATION_SECONDS)
            return VerifyResult(
                success=False,
                message=f"Too many failed attempts. Account locked. Try again in {duration}.",
                error=ErrorCode.MAX_ATTEMPTS_EXCEEDED,
                attempts_remaining=0,
                locked=True,
                retry_minutes=math.ceil(self._config.LOCKOUT_DURATION_SECONDS / 60),
            )

        remaining = max(0, max_attempts - attempts)
        plural = "" if remaining == 1 else "s"
        return VerifyResult(
            success=False,
            message=f"Incorrect code. {remaining} attempt{plural} remaining.",
            error=ErrorCode.INVALID_CODE,
            attempts_remaining=remaining,
        )

    def _failure(self, result_cls: type[OperationResult], operation: str, exc: VerificationError):
        if isinstance(exc, StorageError):
            logger.error(f"[Verify] Storage failure in {operation}: {exc.message}", exc_info=exc)
        elif isinstance(exc, DispatchError):
            logger.error(f"[Verify] Dispatch failure in {operation}", exc_info=exc)
        else:
            logger.info(f"[Verify] {operation} refused: {exc.error_code.value}")
        return result_cls.from_error(exc)
