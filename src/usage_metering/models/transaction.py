from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field

from ..money import ZERO
from .base import DBSerializableModel, utcnow


class TransactionType(str, Enum):
    GRANT = "grant"
    PURCHASE = "purchase"
    SESSION_START = "session_start"
    SESSION_TICK = "session_tick"
    REFUND = "refund"


class Transaction(DBSerializableModel):
    """
    One committed balance mutation, kept for billing history.
    """

    collection_name: ClassVar[str] = "metering_transactions"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (("account_id", "timestamp"),)

    id: Optional[str] = Field(default=None)
    account_id: str
    credits_added: Decimal = ZERO
    credits_deducted: Decimal = ZERO
    balance_after: Decimal
    transaction_type: TransactionType
    session_id: Optional[str] = None
    purchase_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
