"""Email sender interface."""

from __future__ import annotations

from typing import Protocol


class EmailSender(Protocol):
    async def send(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
        """Deliver one message. Retries are the sender's concern; True on success."""
        ...
