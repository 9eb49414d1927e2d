from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

from halfkey.models.credentials import Credential
from halfkey.models.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 300


@dataclass
class RateWindow:
    count: int
    window_start: float
    limit: int


class RateLimiter:
    """Fixed-window request counter per credential, held in process memory.

    Each credential gets its own ``asyncio.Lock`` so check-and-increment is
    atomic for that credential while different credentials never contend.
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: dict[str, RateWindow] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, credential_id: str) -> asyncio.Lock:
        lock = self._locks.get(credential_id)
        if lock is None:
            lock = self._locks.setdefault(credential_id, asyncio.Lock())
        return lock

    def _is_locked(self, credential_id: str) -> bool:
        lock = self._locks.get(credential_id)
        return lock is not None and lock.locked()

    async def check(self, credential: Credential) -> None:
        limit = credential.rate_limit
        if limit is None:
            return

        async with self._lock_for(credential.id):
            now = self.clock()
            window = self._windows.get(credential.id)
            if window is None or now - window.window_start >= self.window_seconds:
                self._windows[credential.id] = RateWindow(count=1, window_start=now, limit=limit)
                return

            window.limit = limit
            if window.count >= window.limit:
                retry_after = max(1, math.ceil(self.window_seconds - (now - window.window_start)))
                logger.warning(
                    "rate limit exceeded",
                    extra={"credential_id": credential.id, "limit": limit},
                )
                raise RateLimitExceeded(retry_after=retry_after, code="rate_limit_exceeded")

            window.count += 1

    def window_for(self, credential_id: str) -> RateWindow | None:
        return self._windows.get(credential_id)

    def prune(self) -> int:
        """Drop windows that have fully elapsed; returns how many were removed."""
        now = self.clock()
        expired = [
            credential_id
            for credential_id, window in self._windows.items()
            if now - window.window_start >= self.window_seconds and not self._is_locked(credential_id)
        ]
        for credential_id in expired:
            self._windows.pop(credential_id, None)
            self._locks.pop(credential_id, None)
        return len(expired)

    def clear(self) -> None:
        self._windows.clear()
        self._locks.clear()
