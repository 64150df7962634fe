"""Short-lived handshake state for OAuth callbacks."""

import asyncio
import time
from typing import Any, Callable, Optional

from src.logging_utils import get_logger

logger = get_logger(__name__)


class ExpiringStateStore:
    """In-memory key/value store whose entries expire after a fixed TTL.

    Each application instance owns its own store. Expired entries are never
    returned, whether or not the sweeper has run.
    """

    def __init__(self, ttl_seconds: float = 600, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    def put(self, key: str, value: Any) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def pop(self, key: str) -> Optional[Any]:
        """Remove and return a live entry. Each state can be redeemed once."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            return None
        return value

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired OAuth states")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Sweep forever at the given interval. Cancel the task to stop."""
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep()
