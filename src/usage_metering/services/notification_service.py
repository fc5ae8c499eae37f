from __future__ import annotations

import inspect
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel

from ..db.base import BaseDBManager
from ..errors import StoreUnavailable
from ..models.base import utcnow
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..models.session import CloseReason, FinalUsage
from ..notifications.queue import AsyncNotificationQueue


logger = logging.getLogger(__name__)


class DepletionNotice(BaseModel):
    """Pushed to callers so they can tear down the transport and prompt a top-up."""

    account_id: str
    session_id: str
    reason: CloseReason
    balance: Decimal
    final_usage: FinalUsage


DepletionListener = Callable[[DepletionNotice], Union[None, Awaitable[None]]]


class NotificationService:
    """
    Orchestrates notification creation and dispatch via a message queue,
    plus in-process ``on_depleted`` listeners.
    """

    def __init__(
        self,
        db: BaseDBManager,
        queue: AsyncNotificationQueue,
        low_credit_threshold: Decimal,
    ) -> None:
        self._db = db
        self._queue = queue
        self._low_credit_threshold = low_credit_threshold
        self._depletion_listeners: List[DepletionListener] = []

    def on_depleted(self, listener: DepletionListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._depletion_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._depletion_listeners:
                self._depletion_listeners.remove(listener)

        return unsubscribe

    async def notify_depleted(self, final_usage: FinalUsage, balance: Decimal) -> DepletionNotice:
        notice = DepletionNotice(
            account_id=final_usage.account_id,
            session_id=final_usage.session_id,
            reason=final_usage.reason,
            balance=balance,
            final_usage=final_usage,
        )
        await self._dispatch(
            final_usage.account_id,
            NotificationType.CREDITS_DEPLETED,
            {
                "session_id": final_usage.session_id,
                "reason": final_usage.reason.value,
                "balance": str(balance),
                "seconds_used": final_usage.seconds_used,
                "credits_used": str(final_usage.credits_used),
            },
        )

        for listener in list(self._depletion_listeners):
            try:
                result = listener(notice)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                # listener failures never propagate into billing
                logger.exception(
                    "on_depleted listener failed for session %s", final_usage.session_id
                )
        return notice

    async def notify_low_credits(
        self, account_id: str, previous_balance: Decimal, balance: Decimal
    ) -> Optional[NotificationEvent]:
        """Notify once, when a debit moves the balance across the threshold."""
        if not (previous_balance > self._low_credit_threshold >= balance):
            return None
        return await self._dispatch(
            account_id,
            NotificationType.LOW_CREDITS,
            {"balance": str(balance), "threshold": str(self._low_credit_threshold)},
        )

    async def _dispatch(
        self, account_id: str, notification_type: NotificationType, payload: Dict[str, Any]
    ) -> Optional[NotificationEvent]:
        """Persist and enqueue; a store outage drops the event with an error log."""
        event = NotificationEvent(
            account_id=account_id,
            notification_type=notification_type,
            payload=payload,
            status=NotificationStatus.PENDING,
        )
        try:
            event = await self._db.add_notification_event(event)
        except StoreUnavailable:
            logger.exception(
                "Could not record %s notification for account %s",
                notification_type.value,
                account_id,
            )
            return None

        await self._queue.enqueue(
            {
                "notification_id": event.id,
                "type": event.notification_type.value,
                "account_id": account_id,
                "payload": event.payload,
                "created_at": utcnow().isoformat(),
            }
        )
        return event
