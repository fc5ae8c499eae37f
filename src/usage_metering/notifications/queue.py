from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List


class AsyncNotificationQueue(ABC):
    """
    Outbound queue for user-facing notifications (depletion, low balance).
    Concrete implementations could use Redis, RabbitMQ, push gateways, etc.
    """

    @abstractmethod
    async def enqueue(self, payload: Dict[str, Any]) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    """
    In-memory queue used for tests and as a reference implementation.
    Consumers may either inspect ``messages`` or await ``get()``.
    """

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []
        self._pending: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        self.messages.append(payload)
        await self._pending.put(payload)

    async def get(self) -> Dict[str, Any]:
        return await self._pending.get()
