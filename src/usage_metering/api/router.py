from __future__ import annotations

import hmac
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Request

from ..container import MeteringServices
from ..errors import NotAuthenticated
from ..models.account import Account
from ..models.api_models import (
    AccountDetailsResponse,
    AccountResponse,
    CompletePurchaseRequest,
    CreateAccountRequest,
    CreatePurchaseRequest,
    CreditBalanceResponse,
    CreditPackageResponse,
    DefaultLanguageRequest,
    FinalUsageResponse,
    PurchaseCompletedResponse,
    PurchaseResponse,
    SessionResponse,
    StartSessionRequest,
    TransportEventRequest,
    UsageTodayResponse,
)
from ..models.purchase import Purchase
from ..models.session import FinalUsage, SessionHandle, UsageSession
from ..services.transport import TransportEvent


router = APIRouter(prefix="/metering", tags=["metering"])


def get_services(request: Request) -> MeteringServices:
    return request.app.state.services


async def get_caller(x_account_id: Optional[str] = Header(default=None)) -> str:
    """Account id of the signed-in caller, set by the identity proxy."""
    if not x_account_id:
        raise NotAuthenticated("missing X-Account-Id header")
    return x_account_id


async def require_payment_processor(
    request: Request, x_payment_secret: Optional[str] = Header(default=None)
) -> None:
    """Purchase outcomes may only be reported by the payment processor."""
    expected = request.app.state.payment_secret
    if not expected or not x_payment_secret:
        raise NotAuthenticated("payment processor credentials required")
    if not hmac.compare_digest(x_payment_secret.encode(), expected.encode()):
        raise NotAuthenticated("invalid payment processor credentials")


def _authorize(caller: str, account_id: str) -> None:
    if caller != account_id:
        raise NotAuthenticated(f"caller {caller} may not act on account {account_id}")


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        account_id=account.id,
        email=account.email,
        name=account.name,
        credits=account.credit_balance,
        lifetime_credits_purchased=account.lifetime_credits_purchased,
        default_language=account.default_language,
    )


def _session_response(session: UsageSession) -> SessionResponse:
    return SessionResponse(
        session_id=session.id or "",
        account_id=session.account_id,
        language_from=session.language_from,
        language_to=session.language_to,
        seconds_used=session.seconds_used,
        credits_used=session.credits_used,
        started_at=session.started_at,
        ended_at=session.ended_at,
        is_active=session.is_active,
        end_reason=session.end_reason,
        duration_seconds=session.duration_seconds,
    )


def _handle_response(handle: SessionHandle) -> SessionResponse:
    return SessionResponse(
        session_id=handle.session_id,
        account_id=handle.account_id,
        language_from=handle.language_from,
        language_to=handle.language_to,
        seconds_used=handle.seconds_used,
        credits_used=handle.credits_used,
        started_at=handle.started_at,
    )


def _final_usage_response(final: FinalUsage) -> FinalUsageResponse:
    return FinalUsageResponse(
        session_id=final.session_id,
        seconds_used=final.seconds_used,
        credits_used=final.credits_used,
        credits_charged=final.credits_charged,
        reason=final.reason,
        duration_seconds=final.duration_seconds,
    )


def _purchase_response(purchase: Purchase) -> PurchaseResponse:
    return PurchaseResponse(
        purchase_id=purchase.id or "",
        account_id=purchase.account_id,
        amount_minor_units=purchase.amount_minor_units,
        credits_granted=purchase.credits_granted,
        status=purchase.status,
        purchased_at=purchase.purchased_at,
    )


# Accounts
@router.post("/accounts", response_model=AccountResponse)
async def create_or_update_account(
    payload: CreateAccountRequest,
    caller: str = Depends(get_caller),
    services: MeteringServices = Depends(get_services),
) -> AccountResponse:
    _authorize(caller, payload.account_id)
    account = await services.accounts.create_or_update_account(
        account_id=payload.account_id, email=payload.email, name=payload.name
    )
    return _account_response(account)


@router.get("/accounts/{account_id}", response_model=AccountDetailsResponse)
async def get_account_details(
    account_id: str,
    caller: str = Depends(get_caller),
    services: MeteringServices = Depends(get_services),
) -> AccountDetailsResponse:
    _authorize(caller, account_id)
    details = await services.accounts.get_account_details(
        account_id, services.registry, services.purchases
    )
    return AccountDetailsResponse(
        account=_account_response(details.account),
        active_session=(
            _handle_response(details.active_session) if details.active_session else None
        ),
        recent_purchases=[_purchase_response(p) for p in details.recent_purchases],
    )


@router.put("/accounts/{account_id}/language", response_model=AccountResponse)
async def update_default_language(
    account_id: str,
    payload: DefaultLanguageRequest,
    caller: str = Depends(get_caller),
    services: MeteringServices = Depends(get_services),
) -> AccountResponse:
    _authorize(caller, account_id)
    account = await services.accounts.update_default_language(account_id, payload.language)
    return _account_response(account)


@router.get("/accounts/{account_id}/balance", response_model=CreditBalanceResponse)
async def get_balance(
    account_id: str,
    caller: str = Depends(get_caller),
    services: MeteringServices = Depends(get_services),
) -> CreditBalanceResponse:
    _authorize(caller, account_id)
    balance = await services.engine.get_balance(account_id)
    return CreditBalanceResponse(account_id=account_id, credits=balance)


@router.get(
    "/accounts/{account_id}/active-session", response_model=Optional[SessionResponse]
)
async def get_active_session(
    account_id: str,
    caller: str = Depends(get_caller),
    services: MeteringServices = Depends(get_services),
) -> Optional[SessionResponse]:
    _authorize(caller, account_id)
    handle = await services.engine.get_active_session(account_id)
    return _handle_response(handle) if handle else None


@router.get("/accounts/{account_id}/sessions", response_model=List[SessionResponse])
async def get_session_history(
    account_id: str,
    limit: Optional[int] = None,
    caller: str = Depends(get_caller),
    services: MeteringServices = Depends(get_services),
) -> List[SessionResponse]:
    _authorize(caller, account_id)
    sessions = await services.registry.get_session_history(account_id, limit=limit)
    return [_session_response(s) for s in sessions]


@router.get("/accounts/{account_id}/usage/today", response_model=UsageTodayResponse)
async def get_credits_used_today(
    account_id: str,
    caller: str = Depends(get_caller),
    services: MeteringServices = Depends(get_services),
) -> UsageTodayResponse:
    _authorize(caller, account_id)
    used = await services.registry.get_credits_used_today(account_id)
    return UsageTodayResponse(account_id=account_id, credits_used=used)


# Sessions
@router.post("/sessions", response_model=SessionResponse)
async def start_session(
    payload: StartSessionRequest,
    caller: str = Depends(get_caller),
    services: MeteringServices = Depends(get_services),
) -> SessionResponse:
    _authorize(caller, payload.account_id)
    handle = await services.engine.start_session(
        payload.account_id,
        payload.language_from,
        payload.language_to,
        room_token=payload.room_token,
    )
    return _handle_response(handle)


@router.post("/sessions/{session_id}/stop", response_model=FinalUsageResponse)
async def stop_session(
    session_id: str,
    caller: str = Depends(get_caller),
    services: MeteringServices = Depends(get_services),
) -> FinalUsageResponse:
    record = await services.registry.get_session(session_id)
    _authorize(caller, record.account_id)
    final = await services.engine.stop_session_by_id(session_id)
    return _final_usage_response(final)


# Purchases
@router.get("/packages", response_model=List[CreditPackageResponse])
async def list_packages(
    services: MeteringServices = Depends(get_services),
) -> List[CreditPackageResponse]:
    return [
        CreditPackageResponse(
            index=index,
            credits=package.credits,
            amount_minor_units=package.amount_minor_units,
            label=package.label,
            description=package.description,
        )
        for index, package in enumerate(services.purchases.packages)
    ]


@router.post("/purchases", response_model=PurchaseResponse)
async def create_purchase(
    payload: CreatePurchaseRequest,
    caller: str = Depends(get_caller),
    services: MeteringServices = Depends(get_services),
) -> PurchaseResponse:
    _authorize(caller, payload.account_id)
    purchase = await services.purchases.create_purchase(
        payload.account_id, payload.package_index
    )
    return _purchase_response(purchase)


@router.post(
    "/purchases/{purchase_id}/complete",
    response_model=PurchaseCompletedResponse,
    dependencies=[Depends(require_payment_processor)],
)
async def complete_purchase(
    purchase_id: str,
    payload: CompletePurchaseRequest,
    services: MeteringServices = Depends(get_services),
) -> PurchaseCompletedResponse:
    balance = await services.purchases.apply_completed_purchase(
        purchase_id, payment_reference=payload.payment_reference
    )
    return PurchaseCompletedResponse(purchase_id=purchase_id, credits=balance)


@router.post(
    "/purchases/{purchase_id}/fail",
    response_model=PurchaseResponse,
    dependencies=[Depends(require_payment_processor)],
)
async def fail_purchase(
    purchase_id: str,
    payload: CompletePurchaseRequest,
    services: MeteringServices = Depends(get_services),
) -> PurchaseResponse:
    purchase = await services.purchases.mark_purchase_failed(
        purchase_id, payment_reference=payload.payment_reference
    )
    return _purchase_response(purchase)


@router.get("/accounts/{account_id}/purchases", response_model=List[PurchaseResponse])
async def get_purchase_history(
    account_id: str,
    caller: str = Depends(get_caller),
    services: MeteringServices = Depends(get_services),
) -> List[PurchaseResponse]:
    _authorize(caller, account_id)
    purchases = await services.purchases.get_purchase_history(account_id)
    return [_purchase_response(p) for p in purchases]


# Transport
@router.post("/transport/events", status_code=202)
async def publish_transport_event(
    payload: TransportEventRequest, services: MeteringServices = Depends(get_services)
) -> dict:
    await services.transport.publish(
        TransportEvent(
            account_id=payload.account_id,
            state=payload.state,
            room_token=payload.room_token,
        )
    )
    return {"accepted": True}
