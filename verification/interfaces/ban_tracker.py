"""Ban tracker interface."""

from __future__ import annotations

from typing import Protocol

from verification.schemas import ActionKind


class BanTracker(Protocol):
    async def track_failed_attempt(self, identifier: str, kind: ActionKind) -> bool:
        """Record a failure. Returns False once the identifier is banned."""
        ...

    async def is_banned(self, identifier: str, kind: ActionKind) -> bool:
        ...
