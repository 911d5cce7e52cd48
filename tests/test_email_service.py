import json
import unittest
from datetime import datetime, timezone

import httpx

from fakes import make_settings
from verification.services.email_service import ConsoleEmailSender, ResendEmailSender, create_email_sender
from verification.services.templates import confirmation_template, cryptic_status, verification_code_template


class TestResendEmailSender(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.config = make_settings(EMAIL_PROVIDER="resend", RESEND_API_KEY="re_test")
        self.requests = []
        self.sleeps = []

    async def fake_sleep(self, seconds):
        self.sleeps.append(seconds)

    def sender(self, statuses):
        statuses = list(statuses)

        def handler(request):
            self.requests.append(request)
            return httpx.Response(statuses.pop(0) if statuses else 200, json={"id": "email_1"})

        return ResendEmailSender(self.config, transport=httpx.MockTransport(handler), sleep=self.fake_sleep)

    async def test_successful_send(self):
        sender = self.sender([200])
        self.assertTrue(await sender.send("user@example.com", "your access code", "text", "<p>html</p>"))

        request = self.requests[0]
        self.assertEqual(request.headers["Authorization"], "Bearer re_test")
        payload = json.loads(request.content)
        self.assertEqual(payload["to"], ["user@example.com"])
        self.assertEqual(payload["from"], "StartSpooling <noreply@startspooling.com>")
        self.assertEqual(payload["text"], "text")
        self.assertEqual(self.sleeps, [])

    async def test_retries_with_exponential_backoff(self):
        sender = self.sender([500, 503, 200])
        with self.assertLogs("verification.services.email_service", level="ERROR"):
            self.assertTrue(await sender.send("user@example.com", "s", "t", "h"))
        self.assertEqual(len(self.requests), 3)
        self.assertEqual(self.sleeps, [1, 2])

    async def test_gives_up_after_max_retries(self):
        sender = self.sender([500, 500, 500, 500])
        with self.assertLogs("verification.services.email_service", level="ERROR"):
            self.assertFalse(await sender.send("user@example.com", "s", "t", "h"))
        self.assertEqual(len(self.requests), 3)

    async def test_transport_errors_are_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"id": "email_1"})

        sender = ResendEmailSender(self.config, transport=httpx.MockTransport(handler), sleep=self.fake_sleep)
        with self.assertLogs("verification.services.email_service", level="ERROR"):
            self.assertTrue(await sender.send("user@example.com", "s", "t", "h"))
        self.assertEqual(len(calls), 2)

    async def test_missing_api_key_does_not_send(self):
        config = make_settings(EMAIL_PROVIDER="resend", RESEND_API_KEY=None)
        sender = ResendEmailSender(config, transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        with self.assertLogs("verification.services.email_service", level="ERROR"):
            self.assertFalse(await sender.send("user@example.com", "s", "t", "h"))

    async def test_console_sender(self):
        self.assertIsInstance(create_email_sender(make_settings(EMAIL_PROVIDER="console")), ConsoleEmailSender)
        self.assertIsInstance(create_email_sender(self.config), ResendEmailSender)
        self.assertTrue(await ConsoleEmailSender().send("user@example.com", "s", "t", "h"))


class TestTemplates(unittest.TestCase):
    def test_verification_code_template(self):
        template = verification_code_template("K3X9P4")
        self.assertEqual(template.subject, "your access code")
        self.assertIn("your code: K3X9P4", template.text)
        self.assertIn("expires: 15 minutes", template.text)
        self.assertIn("attempts: 4", template.text)
        self.assertIn("K3X9P4", template.html)

    def test_confirmation_template(self):
        template = confirmation_template(3250, datetime(2025, 3, 1, tzinfo=timezone.utc))
        self.assertEqual(template.subject, "Archived")
        self.assertIn("#3250", template.text)
        self.assertIn("Mar 01, 2025", template.text)
        self.assertIn(cryptic_status(3250), template.html)

    def test_cryptic_status_rotates(self):
        self.assertEqual(cryptic_status(1), "building in progress")
        self.assertEqual(cryptic_status(11), "building in progress")
        self.assertEqual(cryptic_status(10), "future crystallizing")


if __name__ == "__main__":
    unittest.main()
