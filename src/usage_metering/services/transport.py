"""
Boundary with the external real-time audio transport.

The transport (rooms, media, liveness) lives outside this package. All the
metering core needs from it is a stream of per-account connection-state
changes and an opaque room token to pass through.
"""

from __future__ import annotations

import inspect
import logging
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from ..errors import TransportDisconnected
from ..models.base import utcnow


logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


class TransportEvent(BaseModel):
    account_id: str
    state: ConnectionState
    room_token: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)


TransportListener = Callable[[TransportEvent], Union[None, Awaitable[None]]]


class TransportLiaison:
    """
    Fans transport connection-state events out to subscribers, in order.

    Accounts with no recorded event are treated as connected; liveness is the
    transport's job and no timeout is applied here.
    """

    def __init__(self) -> None:
        self._listeners: List[TransportListener] = []
        self._last_state: Dict[str, ConnectionState] = {}

    def subscribe(self, listener: TransportListener) -> None:
        self._listeners.append(listener)

    def state_of(self, account_id: str) -> Optional[ConnectionState]:
        return self._last_state.get(account_id)

    def is_connected(self, account_id: str) -> bool:
        return self._last_state.get(account_id) != ConnectionState.DISCONNECTED

    def require_connected(self, account_id: str) -> None:
        if not self.is_connected(account_id):
            raise TransportDisconnected(account_id)

    async def publish(self, event: TransportEvent) -> None:
        self._last_state[event.account_id] = event.state
        logger.debug("Transport %s for account %s", event.state.value, event.account_id)
        for listener in list(self._listeners):
            result = listener(event)
            if inspect.isawaitable(result):
                await result

    async def report_disconnected(self, account_id: str) -> None:
        await self.publish(
            TransportEvent(account_id=account_id, state=ConnectionState.DISCONNECTED)
        )
