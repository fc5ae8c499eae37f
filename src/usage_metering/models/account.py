from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from ..money import ZERO
from .base import DBSerializableModel, utcnow


class AccountStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class Account(DBSerializableModel):
    """
    Billable user. ``id`` is the stable identifier handed to us by the
    external identity provider; we never mint our own.
    """

    collection_name: ClassVar[str] = "metering_accounts"

    id: str = Field(description="Stable external identity of the account.")
    email: Optional[str] = None
    name: Optional[str] = None
    credit_balance: Decimal = Field(default=ZERO, ge=0, decimal_places=2)
    lifetime_credits_purchased: Decimal = Field(default=ZERO, ge=0, decimal_places=2)
    default_language: Optional[str] = None
    status: AccountStatus = AccountStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    last_active_at: datetime = Field(default_factory=utcnow)

    @property
    def account_id(self) -> str:
        return self.id
