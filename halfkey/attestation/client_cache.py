from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    value: T
    created_at: float


class AttestationClientCache(Generic[T]):
    """LRU cache of long-lived attestation clients, bounded by size and age.

    Evicted values are handed to ``on_evict`` (typically a close coroutine).
    """

    def __init__(
        self,
        max_size: int = 256,
        ttl_seconds: float = 3600,
        on_evict: Callable[[T], Awaitable[None]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_size = max(1, max_size)
        self.ttl_seconds = ttl_seconds
        self.on_evict = on_evict
        self.clock = clock
        self._entries: OrderedDict[str, _Entry[T]] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    async def get_or_create(
        self,
        key: str,
        factory: Callable[[], T],
        is_current: Callable[[T], bool] | None = None,
    ) -> T:
        evicted: list[T] = []
        async with self._lock:
            now = self.clock()
            entry = self._entries.get(key)
            if entry is not None:
                expired = now - entry.created_at >= self.ttl_seconds
                stale = is_current is not None and not is_current(entry.value)
                if expired or stale:
                    self._entries.pop(key, None)
                    evicted.append(entry.value)
                    entry = None

            if entry is None:
                entry = _Entry(value=factory(), created_at=now)
                self._entries[key] = entry
            else:
                self._entries.move_to_end(key)

            while len(self._entries) > self.max_size:
                _, oldest = self._entries.popitem(last=False)
                evicted.append(oldest.value)

            value = entry.value

        await self._evict(evicted)
        return value

    async def clear(self) -> None:
        async with self._lock:
            evicted = [entry.value for entry in self._entries.values()]
            self._entries.clear()
        await self._evict(evicted)

    async def _evict(self, values: list[T]) -> None:
        if self.on_evict is None:
            return
        for value in values:
            try:
                await self.on_evict(value)
            except Exception:
                logger.exception("failed to close evicted attestation client")
