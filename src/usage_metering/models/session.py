from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Optional

from pydantic import BaseModel, Field

from ..money import MINIMUM_SESSION_CHARGE, MINIMUM_SESSION_SECONDS
from .base import DBSerializableModel, utcnow


class CloseReason(str, Enum):
    USER_STOP = "user_stop"
    DEPLETED = "depleted"
    DISCONNECTED = "disconnected"
    SUPERSEDED = "superseded"
    STALLED = "stalled"
    SHUTDOWN = "shutdown"


class UsageSession(DBSerializableModel):
    """
    One continuous metered period of translation.

    ``credits_charged`` is what ticks actually debited from the ledger.
    ``credits_used``/``seconds_used`` are the historical record and may be
    raised on close to cover wall-clock time that ticks missed.
    """

    collection_name: ClassVar[str] = "metering_usage_sessions"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("account_id", "is_active"),
        ("account_id", "started_at"),
    )

    id: Optional[str] = Field(default=None)
    account_id: str
    language_from: str
    language_to: str
    seconds_used: int = MINIMUM_SESSION_SECONDS
    credits_used: Decimal = MINIMUM_SESSION_CHARGE
    credits_charged: Decimal = MINIMUM_SESSION_CHARGE
    tick_count: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    is_active: bool = True
    end_reason: Optional[CloseReason] = None
    room_token: Optional[str] = Field(
        default=None,
        description="Opaque transport room token, passed through untouched.",
    )

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def handle(self) -> "SessionHandle":
        return SessionHandle(
            session_id=self.id or "",
            account_id=self.account_id,
            language_from=self.language_from,
            language_to=self.language_to,
            started_at=self.started_at,
            seconds_used=self.seconds_used,
            credits_used=self.credits_used,
        )

    def final_usage(self) -> "FinalUsage":
        if self.ended_at is None or self.end_reason is None:
            raise ValueError("session has not been finalized")
        return FinalUsage(
            session_id=self.id or "",
            account_id=self.account_id,
            seconds_used=self.seconds_used,
            credits_used=self.credits_used,
            credits_charged=self.credits_charged,
            reason=self.end_reason,
            started_at=self.started_at,
            ended_at=self.ended_at,
        )


class SessionHandle(BaseModel):
    """Snapshot of an active session returned to callers."""

    session_id: str
    account_id: str
    language_from: str
    language_to: str
    started_at: datetime
    seconds_used: int
    credits_used: Decimal


class FinalUsage(BaseModel):
    session_id: str
    account_id: str
    seconds_used: int
    credits_used: Decimal
    credits_charged: Decimal
    reason: CloseReason
    started_at: datetime
    ended_at: datetime

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()
