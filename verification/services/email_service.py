"""Email delivery service."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import httpx

from verification.config import VerificationSettings, settings as default_settings
from verification.security import mask_email

logger = logging.getLogger(__name__)


class ResendEmailSender:
    """Sends through the Resend HTTP API, retrying with exponential backoff (1s, 2s, ...)."""

    def __init__(
        self,
        config: VerificationSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config or default_settings
        self._transport = transport
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return bool(self._config.RESEND_API_KEY)

    async def send(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
        if not self.configured:
            logger.error("[Email] RESEND_API_KEY is not configured, cannot send")
            return False

        payload = {
            "from": f"{self._config.EMAIL_FROM_NAME} <{self._config.EMAIL_FROM_ADDRESS}>",
            "to": [to_email],
            "subject": subject,
            "text": text_body,
            "html": html_body,
        }
        headers = {"Authorization": f"Bearer {self._config.RESEND_API_KEY}"}
        max_retries = self._config.EMAIL_MAX_RETRIES

        async with httpx.AsyncClient(
            timeout=self._config.EMAIL_TIMEOUT_SECONDS, transport=self._transport
        ) as client:
            for attempt in range(max_retries + 1):
                try:
                    response = await client.post(self._config.RESEND_API_URL, headers=headers, json=payload)
                    response.raise_for_status()
                    logger.info(f"[Email] Sent '{subject}' to {mask_email(to_email)} (retries: {attempt})")
                    return True
                except httpx.HTTPError as exc:
                    logger.error(
                        f"[Email] Failed to send to {mask_email(to_email)} "
                        f"(attempt {attempt + 1}/{max_retries + 1}): {exc}"
                    )
                    if attempt < max_retries:
                        await self._sleep(2 ** attempt)
        return False


class ConsoleEmailSender:
    """Logs messages instead of sending them. Development only."""

    async def send(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
        logger.info(f"[Email] (console) to={to_email} subject={subject!r}\n{text_body}")
        return True


def create_email_sender(config: VerificationSettings | None = None):
    config = config or default_settings
    if config.EMAIL_PROVIDER == "console":
        return ConsoleEmailSender()
    return ResendEmailSender(config)
