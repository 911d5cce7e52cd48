"""Key-value store interface for ephemeral limiter and ban state."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Any | None:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    def scan(self, prefix: str = "") -> AsyncIterator[tuple[str, Any]]:
        """Yield ``(key, value)`` pairs whose key starts with ``prefix``."""
        ...

    async def size(self, prefix: str = "") -> int:
        ...
