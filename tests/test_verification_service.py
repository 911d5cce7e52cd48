import asyncio
import os
import tempfile
import unittest

from sqlalchemy.orm import sessionmaker

import db.models  # noqa: F401  registers the tables on Base
from db.engine import Base, create_db_engine
from fakes import (
    BrokenLookupStore,
    CodeSequence,
    DerivedFieldFailureStore,
    FakeClock,
    InterleavingStore,
    make_settings,
)
from verification.dependencies import build_verification_service
from verification.exceptions import ErrorCode
from verification.services.verification_service import round_for_display
from verification.stores.memory_store import MemoryEmailSender, MemoryKeyValueStore, MemorySignupStore
from verification.stores.postgres_store import PostgresSignupStore
from verification.welcome_messages import WELCOME_MESSAGES

EMAIL = "user@example.com"
IP = "1.2.3.4"
WRONG = "ZZZZZZ"


class VerificationServiceTestCase(unittest.IsolatedAsyncioTestCase):
    store_class = MemorySignupStore

    def setUp(self):
        self.clock = FakeClock()
        self.sender = MemoryEmailSender()
        self.store = self.make_store()
        self.codes = CodeSequence("K3X9P4", "ABCDEF", "HJKMNP", "QRSTUV", "WXYZ23")
        self.service = self.build()

    def make_store(self):
        return self.store_class(now=self.clock.now)

    def build(self, **overrides):
        return build_verification_service(
            config=make_settings(**overrides),
            signup_store=self.store,
            sender=self.sender,
            kv_store=MemoryKeyValueStore(),
            clock=self.clock.time,
            code_generator=self.codes,
        )

    async def signup(self, email=EMAIL, ip=IP):
        result = await self.service.request_code(email, ip)
        self.assertTrue(result.success, result.message)
        return result


class TestRequestCode(VerificationServiceTestCase):
    async def test_new_signup_sends_code(self):
        result = await self.service.request_code(EMAIL, IP, browser_client="firefox", referral_source="hn")

        self.assertTrue(result.sent)
        self.assertEqual(result.message, "check your email. code sent.")
        self.assertEqual(result.email, "us***@example.com")
        self.assertFalse(result.already_verified)

        signup = await self.store.find_by_email(EMAIL)
        self.assertEqual(signup.verification_code, "K3X9P4")
        self.assertEqual(signup.referral_source, "hn")
        messages = self.sender.sent_to(EMAIL)
        self.assertEqual(messages[0]["subject"], "your access code")
        self.assertIn("your code: K3X9P4", messages[0]["text"])

    async def test_email_is_normalized(self):
        await self.service.request_code("  User@Example.COM ", IP)
        self.assertIsNotNone(await self.store.find_by_email(EMAIL))

    async def test_malformed_email_is_a_validation_error(self):
        result = await self.service.request_code("not-an-email", IP)
        self.assertFalse(result.success)
        self.assertEqual(result.error, ErrorCode.VALIDATION_FAILED)
        self.assertEqual(result.message, "invalid format")
        self.assertEqual(self.sender.outbox, [])

    async def test_repeat_signup_replaces_code(self):
        await self.signup()
        await self.signup()
        signup = await self.store.find_by_email(EMAIL)
        self.assertEqual(signup.verification_code, "ABCDEF")
        self.assertEqual(len(self.sender.sent_to(EMAIL)), 2)

    async def test_signup_per_ip_limit(self):
        for index in range(3):
            await self.signup(email=f"user{index}@example.com")

        result = await self.service.request_code("late@example.com", IP)
        self.assertEqual(result.error, ErrorCode.RATE_LIMIT_EXCEEDED)
        self.assertEqual(result.message, "slow down.")
        self.assertGreater(result.retry_after_seconds, 0)
        self.assertIsNone(await self.store.find_by_email("late@example.com"))

    async def test_locked_signup_cannot_request_code(self):
        await self.signup()
        for _ in range(4):
            await self.service.verify_code(EMAIL, WRONG, IP)

        result = await self.service.request_code(EMAIL, "5.6.7.8")
        self.assertEqual(result.error, ErrorCode.ACCOUNT_LOCKED)
        self.assertEqual(result.retry_minutes, 60)

        self.clock.advance(minutes=61)
        await self.signup(ip="5.6.7.8")
        signup = await self.store.find_by_email(EMAIL)
        self.assertIsNone(signup.locked_until)
        self.assertEqual(signup.verification_attempts, 0)

    async def test_verified_email_gets_teaser_code_but_stays_verified(self):
        await self.signup()
        await self.service.verify_code(EMAIL, "K3X9P4", IP)

        result = await self.service.request_code(EMAIL, IP)
        self.assertTrue(result.sent)
        self.assertTrue(result.already_verified)
        signup = await self.store.find_by_email(EMAIL)
        self.assertTrue(signup.is_verified)
        self.assertEqual(signup.verification_code, "ABCDEF")

        again = await self.service.verify_code(EMAIL, "ABCDEF", IP)
        self.assertTrue(again.already_verified)
        self.assertEqual(again.error, ErrorCode.EMAIL_ALREADY_VERIFIED)

    async def test_dispatch_failure_keeps_stored_code(self):
        self.sender.fail = True
        result = await self.service.request_code(EMAIL, IP)
        self.assertEqual(result.error, ErrorCode.DISPATCH_FAILED)
        self.assertEqual(result.message, "connection failed. retry?")

        verified = await self.service.verify_code(EMAIL, "K3X9P4", IP)
        self.assertTrue(verified.verified)

    async def test_send_gate_refuses_extra_email(self):
        self.service = self.build(EMAIL_SEND_PER_EMAIL_LIMIT=1)
        await self.signup()
        result = await self.service.resend_code(EMAIL, IP)
        self.assertEqual(result.error, ErrorCode.RATE_LIMIT_EXCEEDED)
        self.assertEqual(result.message, "Rate limit exceeded. Please try again later.")


class TestResendCode(VerificationServiceTestCase):
    async def test_resend_issues_new_code_and_audits(self):
        await self.signup()
        result = await self.service.resend_code(EMAIL, IP)

        self.assertTrue(result.sent)
        self.assertEqual(result.message, "new code sent. check your email.")
        attempts = await self.store.list_attempts(EMAIL)
        self.assertEqual([a.attempted_code for a in attempts], ["RESEND"])
        self.assertTrue(attempts[0].was_successful)

    async def test_fourth_resend_within_an_hour_is_rate_limited(self):
        await self.signup()
        for _ in range(3):
            self.assertTrue((await self.service.resend_code(EMAIL, IP)).sent)

        result = await self.service.resend_code(EMAIL, IP)
        self.assertEqual(result.error, ErrorCode.RATE_LIMIT_EXCEEDED)
        self.assertTrue(result.message.startswith("too many resend attempts."))
        self.assertGreater(result.retry_after_seconds, 0)

    async def test_unknown_and_malformed_emails_look_the_same(self):
        unknown = await self.service.resend_code("ghost@example.com", IP)
        malformed = await self.service.resend_code("ghost@", IP)
        self.assertEqual(unknown.error, ErrorCode.EMAIL_NOT_FOUND)
        self.assertEqual(unknown.message, malformed.message)
        self.assertEqual(unknown.message, "no signup found with that email")

    async def test_resend_refused_while_locked(self):
        await self.signup()
        for _ in range(4):
            await self.service.verify_code(EMAIL, WRONG, IP)
        result = await self.service.resend_code(EMAIL, IP)
        self.assertEqual(result.error, ErrorCode.ACCOUNT_LOCKED)


class TestVerifyCode(VerificationServiceTestCase):
    async def test_case_and_whitespace_insensitive_match(self):
        await self.signup()
        result = await self.service.verify_code(EMAIL, " k3x9 p4 ", IP)

        self.assertTrue(result.verified)
        self.assertEqual(result.message, "Verified. Welcome.")
        self.assertIn(result.welcome_message_id, WELCOME_MESSAGES)
        self.assertEqual(result.calculated_number, 3247)

        signup = await self.store.find_by_email(EMAIL)
        self.assertTrue(signup.is_verified)
        self.assertEqual(signup.verified_at, self.clock.now())
        self.assertEqual(signup.welcome_message_text, WELCOME_MESSAGES[result.welcome_message_id])
        attempts = await self.store.list_attempts(EMAIL)
        self.assertTrue(attempts[-1].was_successful)

    async def test_code_input_validation(self):
        await self.signup()
        empty = await self.service.verify_code(EMAIL, "  ", IP)
        short = await self.service.verify_code(EMAIL, "ABC", IP)
        self.assertEqual(empty.message, "Code is required")
        self.assertEqual(short.error, ErrorCode.VALIDATION_FAILED)
        self.assertEqual((await self.store.find_by_email(EMAIL)).verification_attempts, 0)

    async def test_unknown_email(self):
        result = await self.service.verify_code("ghost@example.com", "K3X9P4", IP)
        self.assertEqual(result.error, ErrorCode.EMAIL_NOT_FOUND)

    async def test_wrong_codes_count_down_then_lock(self):
        await self.signup()
        results = [await self.service.verify_code(EMAIL, WRONG, IP) for _ in range(4)]

        self.assertEqual([r.attempts_remaining for r in results[:3]], [3, 2, 1])
        self.assertEqual(results[0].message, "Incorrect code. 3 attempts remaining.")
        self.assertEqual(results[2].message, "Incorrect code. 1 attempt remaining.")
        self.assertFalse(any(r.locked for r in results[:3]))

        self.assertTrue(results[3].locked)
        self.assertEqual(results[3].attempts_remaining, 0)
        self.assertEqual(results[3].message, "Too many failed attempts. Account locked. Try again in 1 hour.")

        fifth = await self.service.verify_code(EMAIL, "K3X9P4", IP)
        self.assertEqual(fifth.error, ErrorCode.ACCOUNT_LOCKED)
        self.assertTrue(fifth.locked)
        self.assertEqual(fifth.message, "Locked. Try again in 60 minutes.")
        self.assertEqual((await self.store.find_by_email(EMAIL)).verification_attempts, 4)

    async def test_code_valid_just_before_expiry(self):
        await self.signup()
        self.clock.advance(minutes=14, seconds=59)
        self.assertTrue((await self.service.verify_code(EMAIL, "K3X9P4", IP)).verified)

    async def test_code_rejected_just_after_expiry_without_side_effects(self):
        await self.signup()
        before = await self.store.find_by_email(EMAIL)
        self.clock.advance(minutes=15, seconds=1)

        result = await self.service.verify_code(EMAIL, "K3X9P4", IP)
        self.assertTrue(result.expired)
        self.assertEqual(result.error, ErrorCode.EXPIRED_CODE)
        self.assertEqual(await self.store.find_by_email(EMAIL), before)

    async def test_only_newest_code_matches(self):
        await self.signup()
        await self.service.resend_code(EMAIL, IP)

        stale = await self.service.verify_code(EMAIL, "K3X9P4", IP)
        self.assertEqual(stale.error, ErrorCode.INVALID_CODE)
        self.assertTrue((await self.service.verify_code(EMAIL, "ABCDEF", IP)).verified)

    async def test_already_verified(self):
        await self.signup()
        await self.service.verify_code(EMAIL, "K3X9P4", IP)
        result = await self.service.verify_code(EMAIL, "K3X9P4", IP)
        self.assertTrue(result.already_verified)
        self.assertEqual(result.message, "Already verified")

    async def test_exhausted_attempts_after_short_lock(self):
        self.service = self.build(LOCKOUT_DURATION_SECONDS=60)
        await self.signup()
        for _ in range(4):
            await self.service.verify_code(EMAIL, WRONG, IP)
        self.clock.advance(minutes=2)

        result = await self.service.verify_code(EMAIL, "K3X9P4", IP)
        self.assertEqual(result.error, ErrorCode.MAX_ATTEMPTS_EXCEEDED)
        self.assertFalse(result.verified)

    async def test_sequence_numbers_follow_record_count(self):
        await self.signup(email="a@example.com")
        first = await self.service.verify_code("a@example.com", "K3X9P4", IP)
        await self.signup(email="b@example.com")
        second = await self.service.verify_code("b@example.com", "ABCDEF", IP)
        self.assertEqual(first.calculated_number, 3247)
        self.assertEqual(second.calculated_number, 3248)

    async def test_repeated_wrong_codes_ban_the_ip(self):
        self.service = self.build(VERIFY_PER_IP_LIMIT=100)
        emails = [f"user{index}@example.com" for index in range(5)]
        for index, email in enumerate(emails):
            await self.signup(email=email, ip=f"10.0.0.{index}")
        for email in emails:
            for _ in range(4):
                await self.service.verify_code(email, WRONG, IP)

        banned = await self.service.verify_code(emails[0], WRONG, IP)
        self.assertEqual(banned.error, ErrorCode.RATE_LIMIT_EXCEEDED)
        self.assertEqual(banned.message, "Access temporarily restricted")

        other_ip = await self.service.verify_code(emails[0], WRONG, "9.9.9.9")
        self.assertEqual(other_ip.error, ErrorCode.ACCOUNT_LOCKED)

        self.clock.advance(hours=1, seconds=1)
        after_ban = await self.service.verify_code(emails[0], "K3X9P4", IP)
        self.assertEqual(after_ban.error, ErrorCode.EXPIRED_CODE)


COMPARED = (ErrorCode.INVALID_CODE, ErrorCode.MAX_ATTEMPTS_EXCEEDED)


class TestInterleavedGuesses(VerificationServiceTestCase):
    """Every guess reads the record before any of them writes."""

    store_class = InterleavingStore

    def guesses(self, *codes):
        return asyncio.gather(
            *(self.service.verify_code(EMAIL, code, f"10.0.0.{index}") for index, code in enumerate(codes))
        )

    async def test_burst_compares_exactly_max_attempts(self):
        await self.signup()
        results = await self.guesses(*[WRONG] * 8)

        self.assertEqual(
            [r.error for r in results],
            [ErrorCode.INVALID_CODE] * 3 + [ErrorCode.MAX_ATTEMPTS_EXCEEDED] + [ErrorCode.ACCOUNT_LOCKED] * 4,
        )
        signup = await self.store.find_by_email(EMAIL)
        self.assertEqual(signup.verification_attempts, 4)
        self.assertIsNotNone(signup.locked_until)

    async def test_correct_code_after_four_wrong_in_same_burst_is_refused(self):
        await self.signup()
        results = await self.guesses(WRONG, WRONG, WRONG, WRONG, "K3X9P4")

        self.assertFalse(results[4].verified)
        self.assertEqual(results[4].error, ErrorCode.ACCOUNT_LOCKED)
        signup = await self.store.find_by_email(EMAIL)
        self.assertFalse(signup.is_verified)
        self.assertEqual(signup.verification_attempts, 4)

    async def test_wrong_guess_after_verification_leaves_record_clean(self):
        await self.signup()
        correct, wrong = await self.guesses("K3X9P4", WRONG)

        self.assertTrue(correct.verified)
        self.assertEqual(wrong.error, ErrorCode.EMAIL_ALREADY_VERIFIED)
        signup = await self.store.find_by_email(EMAIL)
        self.assertEqual(signup.verification_attempts, 0)
        self.assertIsNone(signup.locked_until)

    async def test_replaced_code_cannot_verify(self):
        await self.signup()
        resent, stale = await asyncio.gather(
            self.service.resend_code(EMAIL, IP),
            self.service.verify_code(EMAIL, "K3X9P4", IP),
        )

        self.assertTrue(resent.sent)
        self.assertFalse(stale.verified)
        self.assertEqual(stale.error, ErrorCode.INVALID_CODE)
        signup = await self.store.find_by_email(EMAIL)
        self.assertFalse(signup.is_verified)
        self.assertEqual(signup.verification_code, "ABCDEF")

        self.assertTrue((await self.service.verify_code(EMAIL, "ABCDEF", IP)).verified)


class TestConcurrentGuessesOnSQL(VerificationServiceTestCase):
    """Store calls run on worker threads against a SQLite file, so the order is up to the database."""

    def make_store(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.engine = create_db_engine(f"sqlite:///{os.path.join(self.tmpdir.name, 'waitlist.db')}")
        Base.metadata.create_all(self.engine)
        return PostgresSignupStore(
            session_factory=sessionmaker(autocommit=False, autoflush=False, bind=self.engine),
            now=self.clock.now,
        )

    def tearDown(self):
        self.engine.dispose()
        self.tmpdir.cleanup()

    async def test_burst_of_wrong_guesses_locks_at_max(self):
        await self.signup()
        results = await asyncio.gather(
            *(self.service.verify_code(EMAIL, WRONG, f"10.0.0.{index}") for index in range(8))
        )

        compared = [r for r in results if r.error in COMPARED]
        self.assertEqual(len(compared), 4)
        self.assertEqual(sum(1 for r in compared if r.locked), 1)
        signup = await self.store.find_by_email(EMAIL)
        self.assertEqual(signup.verification_attempts, 4)
        self.assertIsNotNone(signup.locked_until)

    async def test_burst_with_correct_code_stays_consistent(self):
        await self.signup()
        calls = [self.service.verify_code(EMAIL, WRONG, f"10.0.0.{index}") for index in range(7)]
        calls.append(self.service.verify_code(EMAIL, "K3X9P4", "10.0.1.1"))
        results = await asyncio.gather(*calls)

        correct = results[-1]
        compared = [r for r in results[:-1] if r.error in COMPARED]
        signup = await self.store.find_by_email(EMAIL)
        if correct.verified:
            self.assertLess(len(compared), 4)
            self.assertTrue(signup.is_verified)
            self.assertEqual(signup.verification_attempts, 0)
            self.assertIsNone(signup.locked_until)
        else:
            self.assertEqual(correct.error, ErrorCode.ACCOUNT_LOCKED)
            self.assertEqual(len(compared), 4)
            self.assertFalse(signup.is_verified)
            self.assertEqual(signup.verification_attempts, 4)


class TestDerivedFieldFallback(VerificationServiceTestCase):
    store_class = DerivedFieldFailureStore

    async def test_verification_survives_derived_field_failure(self):
        await self.signup()
        with self.assertLogs("verification.services.verification_service", level="ERROR"):
            result = await self.service.verify_code(EMAIL, "K3X9P4", IP)

        self.assertTrue(result.verified)
        signup = await self.store.find_by_email(EMAIL)
        self.assertTrue(signup.is_verified)
        self.assertIsNotNone(signup.verified_at)
        self.assertIsNone(signup.welcome_message_id)


class TestStorageFailure(VerificationServiceTestCase):
    store_class = BrokenLookupStore

    async def test_storage_error_becomes_generic_result(self):
        with self.assertLogs("verification.services.verification_service", level="ERROR"):
            result = await self.service.request_code(EMAIL, IP)
        self.assertFalse(result.success)
        self.assertEqual(result.error, ErrorCode.INTERNAL_ERROR)
        self.assertEqual(result.message, "something broke. our fault.")


class TestStatsAndMaintenance(VerificationServiceTestCase):
    async def test_public_stats_are_cached(self):
        self.assertEqual((await self.service.get_public_stats()).verified_count, 0)
        await self.signup()
        await self.service.verify_code(EMAIL, "K3X9P4", IP)

        self.assertEqual((await self.service.get_public_stats()).verified_count, 0)
        self.clock.advance(seconds=61)
        self.assertEqual((await self.service.get_public_stats()).verified_count, 1)

    def test_display_rounding(self):
        self.assertEqual(round_for_display(999), 999)
        self.assertEqual(round_for_display(1000), 1000)
        self.assertEqual(round_for_display(1234), 1200)

    async def test_signup_number_by_creation_order(self):
        await self.signup(email="a@example.com")
        self.clock.advance(seconds=1)
        await self.signup(email="b@example.com")

        self.assertEqual((await self.service.get_signup_number("a@example.com")).signup_number, 3247)
        self.assertEqual((await self.service.get_signup_number("b@example.com")).signup_number, 3248)
        missing = await self.service.get_signup_number("ghost@example.com")
        self.assertEqual(missing.error, ErrorCode.EMAIL_NOT_FOUND)

    async def test_attempt_stats(self):
        await self.signup()
        await self.service.verify_code(EMAIL, WRONG, IP)
        await self.service.verify_code(EMAIL, "K3X9P4", IP)

        stats = (await self.service.get_attempt_stats()).stats
        self.assertEqual(stats.total_attempts, 2)
        self.assertEqual(stats.successful_attempts, 1)
        self.assertEqual(stats.failed_attempts, 1)
        self.assertEqual(stats.unique_emails, 1)

        self.clock.advance(hours=25)
        self.assertEqual((await self.service.get_attempt_stats(email=EMAIL)).stats.total_attempts, 0)

    async def test_maintenance_clears_locks_and_old_attempts(self):
        await self.signup()
        for _ in range(4):
            await self.service.verify_code(EMAIL, WRONG, IP)
        self.clock.advance(days=31)

        report = await self.service.run_maintenance()
        self.assertEqual(report.locks_cleared, 1)
        self.assertEqual(report.attempts_deleted, 4)


class TestConfirmationEmail(VerificationServiceTestCase):
    async def test_verification_triggers_confirmation(self):
        self.service.start()
        try:
            await self.signup()
            await self.service.verify_code(EMAIL, "K3X9P4", IP)
            await self.service.notifications.join()
        finally:
            await self.service.stop()

        subjects = [message["subject"] for message in self.sender.sent_to(EMAIL)]
        self.assertEqual(subjects, ["your access code", "Archived"])


if __name__ == "__main__":
    unittest.main()
