import asyncio
import unittest

from fakes import FakeClock
from verification.schemas import SendKind
from verification.services.dispatch_gate import EmailDispatchGate
from verification.services.rate_limiter import SlidingWindowRateLimiter
from verification.stores.memory_store import MemoryKeyValueStore


class YieldingLimiter(SlidingWindowRateLimiter):
    """Gives other sends a turn after every peek."""

    async def peek(self, identifier, limit, window_seconds):
        status = await super().peek(identifier, limit, window_seconds)
        await asyncio.sleep(0)
        return status


class TestEmailDispatchGate(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        store = MemoryKeyValueStore()
        self.email_limiter = SlidingWindowRateLimiter(store, "send-email", clock=self.clock.time)
        self.ip_limiter = SlidingWindowRateLimiter(store, "send-ip", clock=self.clock.time)

    def gate(self, per_email=5, per_ip=10):
        return EmailDispatchGate(self.email_limiter, self.ip_limiter, per_email_limit=per_email, per_ip_limit=per_ip)

    async def test_per_email_limit(self):
        gate = self.gate()
        for _ in range(5):
            self.assertTrue((await gate.authorize_send("user@example.com", "1.2.3.4", SendKind.VERIFICATION_CODE)).allowed)

    async def test_concurrent_sends_never_spend_a_refused_slot(self):
        store = MemoryKeyValueStore()
        email_limiter = YieldingLimiter(store, "send-email", clock=self.clock.time)
        ip_limiter = YieldingLimiter(store, "send-ip", clock=self.clock.time)
        gate = EmailDispatchGate(email_limiter, ip_limiter, per_email_limit=5, per_ip_limit=1)

        first, second = await asyncio.gather(
            gate.authorize_send("first@example.com", "1.2.3.4", SendKind.VERIFICATION_CODE),
            gate.authorize_send("second@example.com", "1.2.3.4", SendKind.VERIFICATION_CODE),
        )

        self.assertTrue(first.allowed)
        self.assertFalse(second.allowed)
        self.assertEqual(second.limited_by, "ip")
        status = await email_limiter.peek("second@example.com", 5, gate.window_seconds)
        self.assertEqual(status.remaining, 5)

        refused = await gate.authorize_send("user@example.com", "5.6.7.8", SendKind.VERIFICATION_CODE)
        self.assertFalse(refused.allowed)
        self.assertEqual(refused.limited_by, "email")
        self.assertGreater(refused.retry_after_seconds, 0)

    async def test_per_ip_limit(self):
        gate = self.gate()
        for index in range(10):
            result = await gate.authorize_send(f"user{index}@example.com", "1.2.3.4", SendKind.CONFIRMATION)
            self.assertTrue(result.allowed)

        refused = await gate.authorize_send("late@example.com", "1.2.3.4", SendKind.CONFIRMATION)
        self.assertFalse(refused.allowed)
        self.assertEqual(refused.limited_by, "ip")

    async def test_refusal_does_not_spend_the_other_dimension(self):
        gate = self.gate(per_email=1, per_ip=3)
        await gate.authorize_send("user@example.com", "1.2.3.4", SendKind.VERIFICATION_CODE)
        refused = await gate.authorize_send("user@example.com", "1.2.3.4", SendKind.VERIFICATION_CODE)
        self.assertEqual(refused.limited_by, "email")

        status = await self.ip_limiter.peek("1.2.3.4", 3, gate.window_seconds)
        self.assertEqual(status.remaining, 2)

    async def test_limits_reset_after_window(self):
        gate = self.gate(per_email=1)
        await gate.authorize_send("user@example.com", "1.2.3.4", SendKind.VERIFICATION_CODE)
        self.clock.advance(hours=1)
        self.assertTrue((await gate.authorize_send("user@example.com", "1.2.3.4", SendKind.VERIFICATION_CODE)).allowed)


if __name__ == "__main__":
    unittest.main()
