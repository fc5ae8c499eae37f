from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional

from .base import BaseDBManager
from ..models.account import Account
from ..models.base import utcnow
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.purchase import Purchase, PurchaseStatus
from ..models.session import CloseReason, UsageSession
from ..models.transaction import Transaction
from ..money import ZERO, to_credits


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    No method awaits between reading and writing a record, so every call is
    atomic with respect to other tasks on the event loop. Records are copied
    on the way in and out; callers never share mutable state with the store.
    """

    process_local: ClassVar[bool] = True

    def __init__(self) -> None:
        self._accounts: Dict[str, Account] = {}
        self._sessions: Dict[str, UsageSession] = {}
        self._active_by_account: Dict[str, str] = {}
        self._purchases: Dict[str, Purchase] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._notifications: List[NotificationEvent] = []
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    # Account operations
    async def add_account(self, account: Account) -> Account:
        if account.id in self._accounts:
            raise ValueError(f"account {account.id} already exists")
        self._accounts[account.id] = account.model_copy(deep=True)
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        account = self._accounts.get(account_id)
        return account.model_copy(deep=True) if account else None

    async def update_account_fields(
        self, account_id: str, fields: Mapping[str, Any]
    ) -> Optional[Account]:
        account = self._accounts.get(account_id)
        if account is None:
            return None
        updated = account.model_copy(update=dict(fields))
        # Balances only move through apply_balance_delta
        updated.credit_balance = account.credit_balance
        updated.lifetime_credits_purchased = account.lifetime_credits_purchased
        self._accounts[account_id] = updated
        return updated.model_copy(deep=True)

    async def apply_balance_delta(
        self,
        account_id: str,
        delta: Decimal,
        *,
        lifetime_delta: Decimal = ZERO,
        floor: Decimal = ZERO,
        touched_at: Optional[datetime] = None,
    ) -> Optional[Account]:
        account = self._accounts.get(account_id)
        if account is None:
            return None
        new_balance = to_credits(account.credit_balance + delta)
        if new_balance < floor:
            return None
        updated = account.model_copy(
            update={
                "credit_balance": new_balance,
                "lifetime_credits_purchased": to_credits(
                    account.lifetime_credits_purchased + lifetime_delta
                ),
                "last_active_at": touched_at or utcnow(),
            }
        )
        self._accounts[account_id] = updated
        return updated.model_copy(deep=True)

    # Usage sessions
    async def add_session(self, session: UsageSession) -> UsageSession:
        if session.is_active and session.account_id in self._active_by_account:
            raise ValueError(
                f"account {session.account_id} already has an active session"
            )
        if session.id is None:
            session.id = self._next_id()
        self._sessions[session.id] = session.model_copy(deep=True)
        if session.is_active:
            self._active_by_account[session.account_id] = session.id
        return session

    async def get_session(self, session_id: str) -> Optional[UsageSession]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def get_active_session(self, account_id: str) -> Optional[UsageSession]:
        session_id = self._active_by_account.get(account_id)
        if session_id is None:
            return None
        return await self.get_session(session_id)

    async def get_sessions(
        self, account_id: str, limit: Optional[int] = None
    ) -> Iterable[UsageSession]:
        sessions = [
            s for s in reversed(list(self._sessions.values())) if s.account_id == account_id
        ]
        sessions.sort(key=lambda s: s.started_at, reverse=True)
        if limit is not None:
            sessions = sessions[:limit]
        return [s.model_copy(deep=True) for s in sessions]

    async def record_session_tick(
        self, session_id: str, seconds: int, credits: Decimal
    ) -> Optional[UsageSession]:
        session = self._sessions.get(session_id)
        if session is None or not session.is_active:
            return None
        updated = session.model_copy(
            update={
                "seconds_used": session.seconds_used + seconds,
                "credits_used": to_credits(session.credits_used + credits),
                "credits_charged": to_credits(session.credits_charged + credits),
                "tick_count": session.tick_count + 1,
            }
        )
        self._sessions[session_id] = updated
        return updated.model_copy(deep=True)

    async def close_session(
        self,
        session_id: str,
        *,
        ended_at: datetime,
        reason: CloseReason,
        seconds_used: int,
        credits_used: Decimal,
    ) -> Optional[UsageSession]:
        session = self._sessions.get(session_id)
        if session is None or not session.is_active:
            return None
        updated = session.model_copy(
            update={
                "is_active": False,
                "ended_at": ended_at,
                "end_reason": reason,
                "seconds_used": seconds_used,
                "credits_used": credits_used,
            }
        )
        self._sessions[session_id] = updated
        if self._active_by_account.get(session.account_id) == session_id:
            del self._active_by_account[session.account_id]
        return updated.model_copy(deep=True)

    async def set_session_room_token(
        self, session_id: str, room_token: str
    ) -> Optional[UsageSession]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        session.room_token = room_token
        return session.model_copy(deep=True)

    # Purchases
    async def add_purchase(self, purchase: Purchase) -> Purchase:
        if purchase.id is None:
            purchase.id = self._next_id()
        self._purchases[purchase.id] = purchase.model_copy(deep=True)
        return purchase

    async def get_purchase(self, purchase_id: str) -> Optional[Purchase]:
        purchase = self._purchases.get(purchase_id)
        return purchase.model_copy(deep=True) if purchase else None

    async def get_purchases(self, account_id: str) -> Iterable[Purchase]:
        purchases = [
            p for p in reversed(list(self._purchases.values())) if p.account_id == account_id
        ]
        purchases.sort(key=lambda p: p.purchased_at, reverse=True)
        return [p.model_copy(deep=True) for p in purchases]

    async def transition_purchase(
        self,
        purchase_id: str,
        from_status: PurchaseStatus,
        to_status: PurchaseStatus,
        fields: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Purchase]:
        purchase = self._purchases.get(purchase_id)
        if purchase is None or purchase.status != from_status:
            return None
        update = dict(fields or {})
        update["status"] = to_status
        updated = purchase.model_copy(update=update)
        self._purchases[purchase_id] = updated
        return updated.model_copy(deep=True)

    # Transactions
    async def add_transaction(self, tx: Transaction) -> Transaction:
        if tx.id is None:
            tx.id = self._next_id()
        self._transactions[tx.id] = tx.model_copy(deep=True)
        return tx

    async def get_transactions(self, account_id: str) -> Iterable[Transaction]:
        txs = [t for t in self._transactions.values() if t.account_id == account_id]
        txs.sort(key=lambda t: t.timestamp)
        return [t.model_copy(deep=True) for t in txs]

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        if notification.id is None:
            notification.id = self._next_id()
        self._notifications.append(notification.model_copy(deep=True))
        return notification

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry.model_copy(deep=True))
        return entry
