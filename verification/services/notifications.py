"""Post-verification notifications.

The engine publishes an event after a signup is verified and returns at once;
a background worker sends the confirmation email. Delivery problems are
logged and never reach the verification result.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime

from verification.interfaces.email_sender import EmailSender
from verification.schemas import SendKind
from verification.security import mask_email
from verification.services.dispatch_gate import EmailDispatchGate
from verification.services.templates import confirmation_template

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationCompleted:
    email: str
    ip_address: str
    signup_number: int
    verified_at: datetime


class NotificationDispatcher:
    def __init__(self, gate: EmailDispatchGate, sender: EmailSender, max_pending: int = 1000) -> None:
        self._gate = gate
        self._sender = sender
        self._queue: asyncio.Queue[VerificationCompleted] = asyncio.Queue(maxsize=max_pending)
        self._worker: asyncio.Task | None = None
        self.delivered = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="confirmation-emails")
        logger.info("[Notify] Confirmation worker started")

    async def stop(self) -> None:
        if not self._worker:
            return
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        logger.info("[Notify] Confirmation worker stopped")

    def publish(self, event: VerificationCompleted) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"[Notify] Queue full, dropping confirmation for {mask_email(event.email)}")
            return False
        return True

    async def join(self) -> None:
        """Wait until every published event has been handled."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.handle(event)
            except Exception:
                self.failed += 1
                logger.exception(f"[Notify] Confirmation for {mask_email(event.email)} failed")
            finally:
                self._queue.task_done()

    async def handle(self, event: VerificationCompleted) -> bool:
        authorization = await self._gate.authorize_send(event.email, event.ip_address, SendKind.CONFIRMATION)
        if not authorization.allowed:
            self.failed += 1
            return False

        template = confirmation_template(event.signup_number, event.verified_at)
        if not await self._sender.send(event.email, template.subject, template.text, template.html):
            self.failed += 1
            logger.error(f"[Notify] Confirmation email to {mask_email(event.email)} was not delivered")
            return False

        self.delivered += 1
        logger.info(f"[Notify] Confirmation #{event.signup_number} sent to {mask_email(event.email)}")
        return True
