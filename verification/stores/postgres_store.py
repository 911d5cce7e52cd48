"""PostgreSQL signup store using SQLAlchemy.

Each call opens its own session and runs on a worker thread. Mutations are
single UPDATE statements, so concurrent callers never lose an increment.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

from sqlalchemy import ColumnElement, case, delete, distinct, func, literal, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from db.engine import get_session_factory
from db.models.signup import VerificationAttempt as AttemptRow
from db.models.signup import WaitlistSignup
from verification.clock import utcnow
from verification.exceptions import AlreadyExistsError, NotFoundError, StorageError, VerificationError
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

T = TypeVar("T")


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_record(row: WaitlistSignup) -> SignupRecord:
    return SignupRecord(
        email=row.email,
        verification_code=row.verification_code,
        is_verified=row.is_verified,
        verified_at=_aware(row.verified_at),
        verification_attempts=row.verification_attempts,
        locked_until=_aware(row.locked_until),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        welcome_message_id=row.welcome_message_id,
        welcome_message_text=row.welcome_message_text,
        calculated_number=row.calculated_number,
        browser_client=row.browser_client,
        ip_address=row.ip_address,
        referral_source=row.referral_source,
    )


def _guard_clauses(guard: GuessGuard) -> list[ColumnElement[bool]]:
    """SQL form of ``GuessGuard.admits``."""
    clauses = [
        WaitlistSignup.is_verified.is_(False),
        WaitlistSignup.verification_attempts < guard.max_attempts,
        or_(WaitlistSignup.locked_until.is_(None), WaitlistSignup.locked_until <= guard.now),
    ]
    if guard.issued_after is not None:
        clauses.append(WaitlistSignup.updated_at >= guard.issued_after)
    return clauses


class PostgresSignupStore:
    """Signup store backed by PostgreSQL. Any SQLAlchemy URL works (tests use SQLite)."""

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._now = now

    def _get_session(self) -> Session:
        factory = self._session_factory or get_session_factory()
        return factory()

    async def _run(self, operation: str, call: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(call, *args)
        except VerificationError:
            raise
        except SQLAlchemyError as exc:
            logger.error(f"[SignupStore] {operation} failed: {exc}")
            raise StorageError(f"Database error during {operation}") from exc

    def _update_where(
        self, db: Session, email: str, conditions: list[ColumnElement[bool]], **values: Any
    ) -> WaitlistSignup | None:
        result = db.execute(
            update(WaitlistSignup)
            .where(WaitlistSignup.email == email.lower(), *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            return None
        row = db.execute(
            select(WaitlistSignup).where(WaitlistSignup.email == email.lower())
        ).scalar_one()
        db.commit()
        db.refresh(row)
        return row

    def _update_one(self, db: Session, email: str, **values: Any) -> WaitlistSignup:
        row = self._update_where(db, email, [], **values)
        if row is None:
            raise NotFoundError()
        return row

    async def create(self, email: str, code: str, client_meta: ClientMeta) -> SignupRecord:
        def _create() -> SignupRecord:
            now = self._now()
            with self._get_session() as db:
                row = WaitlistSignup(
                    email=email.lower(),
                    verification_code=code,
                    is_verified=False,
                    verification_attempts=0,
                    browser_client=client_meta.browser_client,
                    ip_address=client_meta.ip_address,
                    referral_source=client_meta.referral_source,
                    created_at=now,
                    updated_at=now,
                )
                db.add(row)
                try:
                    db.commit()
                except IntegrityError as exc:
                    db.rollback()
                    raise AlreadyExistsError("Email already exists in waitlist") from exc
                db.refresh(row)
                return _to_record(row)

        return await self._run("create", _create)

    async def find_by_email(self, email: str) -> SignupRecord | None:
        def _find() -> SignupRecord | None:
            with self._get_session() as db:
                row = db.execute(
                    select(WaitlistSignup).where(WaitlistSignup.email == email.lower())
                ).scalar_one_or_none()
                return _to_record(row) if row else None

        return await self._run("find_by_email", _find)

    async def update_code(self, email: str, new_code: str) -> SignupRecord:
        def _update() -> SignupRecord:
            with self._get_session() as db:
                row = self._update_one(
                    db,
                    email,
                    verification_code=new_code,
                    verification_attempts=0,
                    locked_until=None,
                    updated_at=self._now(),
                )
                return _to_record(row)

        return await self._run("update_code", _update)

    async def increment_attempts(self, email: str, guard: GuessGuard | None = None) -> int | None:
        def _increment() -> int | None:
            attempts = WaitlistSignup.verification_attempts + 1
            values: dict[str, Any] = {"verification_attempts": attempts}
            with self._get_session() as db:
                if guard is None:
                    return self._update_one(db, email, **values).verification_attempts
                if guard.lock_until is not None:
                    # SET reads the pre-update row; only the update reaching the cap locks.
                    values["locked_until"] = case(
                        (attempts >= guard.max_attempts, literal(guard.lock_until, WaitlistSignup.locked_until.type)),
                        else_=WaitlistSignup.locked_until,
                    )
                row = self._update_where(db, email, _guard_clauses(guard), **values)
                return row.verification_attempts if row else None

        return await self._run("increment_attempts", _increment)

    async def lock(self, email: str, until: datetime) -> SignupRecord:
        def _lock() -> SignupRecord:
            with self._get_session() as db:
                return _to_record(self._update_one(db, email, locked_until=until))

        return await self._run("lock", _lock)

    async def mark_verified(
        self,
        email: str,
        derived: DerivedFields | None = None,
        code: str | None = None,
        guard: GuessGuard | None = None,
    ) -> SignupRecord | None:
        def _mark() -> SignupRecord | None:
            values: dict[str, Any] = {
                "is_verified": True,
                "verified_at": func.coalesce(WaitlistSignup.verified_at, self._now()),
                "verification_attempts": 0,
                "locked_until": None,
            }
            if derived:
                values.update(
                    welcome_message_id=derived.welcome_message_id,
                    welcome_message_text=derived.welcome_message_text,
                    calculated_number=derived.calculated_number,
                )
            if code is None and guard is None:
                with self._get_session() as db:
                    return _to_record(self._update_one(db, email, **values))

            conditions = _guard_clauses(guard) if guard else []
            if code is not None:
                conditions.append(WaitlistSignup.verification_code == code)
            with self._get_session() as db:
                row = self._update_where(db, email, conditions, **values)
                return _to_record(row) if row else None

        return await self._run("mark_verified", _mark)

    async def count_all(self) -> int:
        def _count() -> int:
            with self._get_session() as db:
                return db.execute(select(func.count()).select_from(WaitlistSignup)).scalar_one()

        return await self._run("count_all", _count)

    async def count_created_before(self, timestamp: datetime) -> int:
        def _count() -> int:
            with self._get_session() as db:
                return db.execute(
                    select(func.count())
                    .select_from(WaitlistSignup)
                    .where(WaitlistSignup.created_at <= timestamp)
                ).scalar_one()

        return await self._run("count_created_before", _count)

    async def count_verified(self) -> int:
        def _count() -> int:
            with self._get_session() as db:
                return db.execute(
                    select(func.count())
                    .select_from(WaitlistSignup)
                    .where(WaitlistSignup.is_verified.is_(True))
                ).scalar_one()

        return await self._run("count_verified", _count)

    async def log_attempt(
        self, email: str, attempted_code: str, was_successful: bool, ip_address: str
    ) -> VerificationAttempt:
        def _log() -> VerificationAttempt:
            with self._get_session() as db:
                row = AttemptRow(
                    email=email.lower(),
                    attempted_code=attempted_code,
                    was_successful=was_successful,
                    ip_address=ip_address,
                    timestamp=self._now(),
                )
                db.add(row)
                db.commit()
                db.refresh(row)
                return VerificationAttempt(
                    email=row.email,
                    attempted_code=row.attempted_code,
                    was_successful=row.was_successful,
                    ip_address=row.ip_address,
                    timestamp=_aware(row.timestamp),
                )

        return await self._run("log_attempt", _log)

    async def get_attempt_stats(self, since: datetime, email: str | None = None) -> AttemptStats:
        def _stats() -> AttemptStats:
            query = select(
                func.count(AttemptRow.id),
                func.sum(case((AttemptRow.was_successful.is_(True), 1), else_=0)),
                func.count(distinct(AttemptRow.email)),
            ).where(AttemptRow.timestamp >= since)
            if email is not None:
                query = query.where(AttemptRow.email == email.lower())
            with self._get_session() as db:
                total, successful, unique_emails = db.execute(query).one()
            total = total or 0
            successful = successful or 0
            return AttemptStats(
                total_attempts=total,
                successful_attempts=successful,
                failed_attempts=total - successful,
                unique_emails=unique_emails or 0,
            )

        return await self._run("get_attempt_stats", _stats)

    async def cleanup_expired(self, attempts_before: datetime) -> MaintenanceReport:
        def _cleanup() -> MaintenanceReport:
            with self._get_session() as db:
                cleared = db.execute(
                    update(WaitlistSignup)
                    .where(WaitlistSignup.locked_until.is_not(None))
                    .where(WaitlistSignup.locked_until < self._now())
                    .values(locked_until=None)
                    .execution_options(synchronize_session=False)
                )
                deleted = db.execute(
                    delete(AttemptRow)
                    .where(AttemptRow.timestamp < attempts_before)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                return MaintenanceReport(
                    locks_cleared=cleared.rowcount,
                    attempts_deleted=deleted.rowcount,
                    cutoff=attempts_before,
                )

        return await self._run("cleanup_expired", _cleanup)
