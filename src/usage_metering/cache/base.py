from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class AsyncCacheBackend(ABC):
    """
    Minimal async cache abstraction. The ledger store uses it as a
    write-through cache for account balances; it is never the source of
    truth for balances or the active-session index.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


def balance_cache_key(account_id: str) -> str:
    return f"metering:account:{account_id}:balance"
