from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel

from .purchase import PurchaseStatus
from .session import CloseReason
from ..services.transport import ConnectionState


class CreateAccountRequest(BaseModel):
    account_id: str
    email: str | None = None
    name: str | None = None


class DefaultLanguageRequest(BaseModel):
    language: str


class AccountResponse(BaseModel):
    account_id: str
    email: str | None = None
    name: str | None = None
    credits: Decimal
    lifetime_credits_purchased: Decimal
    default_language: str | None = None


class CreditBalanceResponse(BaseModel):
    account_id: str
    credits: Decimal


class StartSessionRequest(BaseModel):
    account_id: str
    language_from: str
    language_to: str
    room_token: str | None = None


class SessionResponse(BaseModel):
    session_id: str
    account_id: str
    language_from: str
    language_to: str
    seconds_used: int
    credits_used: Decimal
    started_at: datetime
    ended_at: datetime | None = None
    is_active: bool = True
    end_reason: CloseReason | None = None
    duration_seconds: float | None = None


class FinalUsageResponse(BaseModel):
    session_id: str
    seconds_used: int
    credits_used: Decimal
    credits_charged: Decimal
    reason: CloseReason
    duration_seconds: float


class UsageTodayResponse(BaseModel):
    account_id: str
    credits_used: Decimal


class CreditPackageResponse(BaseModel):
    index: int
    credits: Decimal
    amount_minor_units: int
    label: str
    description: str


class CreatePurchaseRequest(BaseModel):
    account_id: str
    package_index: int


class CompletePurchaseRequest(BaseModel):
    payment_reference: str | None = None


class PurchaseResponse(BaseModel):
    purchase_id: str
    account_id: str
    amount_minor_units: int
    credits_granted: Decimal
    status: PurchaseStatus
    purchased_at: datetime


class PurchaseCompletedResponse(BaseModel):
    purchase_id: str
    credits: Decimal


class TransportEventRequest(BaseModel):
    account_id: str
    state: ConnectionState
    room_token: str | None = None


class AccountDetailsResponse(BaseModel):
    account: AccountResponse
    active_session: Optional[SessionResponse] = None
    recent_purchases: List[PurchaseResponse]
