from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class CreditPackage(BaseModel):
    credits: Decimal
    amount_minor_units: int = Field(description="Price in cents.")
    label: str
    description: str


CREDIT_PACKAGES: tuple[CreditPackage, ...] = (
    CreditPackage(credits=Decimal("10"), amount_minor_units=150, label="10 credits", description="$1.50"),
    CreditPackage(credits=Decimal("30"), amount_minor_units=400, label="30 credits", description="$4.00"),
    CreditPackage(credits=Decimal("60"), amount_minor_units=700, label="60 credits", description="$7.00"),
    CreditPackage(credits=Decimal("120"), amount_minor_units=1300, label="120 credits", description="$13.00"),
)


class Purchase(DBSerializableModel):
    """
    A credit top-up. Created pending when the purchase is initiated; settled
    by the external payment processor into completed or failed, after which
    it never changes again.
    """

    collection_name: ClassVar[str] = "metering_purchases"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("account_id", "purchased_at"),
        ("payment_reference",),
    )

    id: Optional[str] = Field(default=None)
    account_id: str
    amount_minor_units: int
    credits_granted: Decimal
    status: PurchaseStatus = PurchaseStatus.PENDING
    payment_reference: Optional[str] = None
    purchased_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
