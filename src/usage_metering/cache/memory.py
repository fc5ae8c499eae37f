from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Tuple

from .base import AsyncCacheBackend


class InMemoryAsyncCache(AsyncCacheBackend):
    """
    Process-local cache with optional TTL, for tests and single-process
    deployments. ``clock`` defaults to ``time.monotonic``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        self._entries[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)
