from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Iterable, Mapping, Optional

from ..models.account import Account
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.purchase import Purchase, PurchaseStatus
from ..models.session import CloseReason, UsageSession
from ..models.transaction import Transaction
from ..money import ZERO


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (in-memory, MongoDB, ...) implement these methods.
    Every method that changes money or session state is a single atomic
    conditional update: it either applies completely or reports that its
    precondition did not hold by returning ``None``. Backend failures are
    raised as ``StoreUnavailable``.
    """

    # True when no other process can write to this store, so caching reads is safe
    process_local: ClassVar[bool] = False

    # Account operations
    @abstractmethod
    async def add_account(self, account: Account) -> Account: ...

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]: ...

    @abstractmethod
    async def update_account_fields(
        self, account_id: str, fields: Mapping[str, Any]
    ) -> Optional[Account]:
        """Update non-monetary profile fields. Balances are never written here."""
        ...

    @abstractmethod
    async def apply_balance_delta(
        self,
        account_id: str,
        delta: Decimal,
        *,
        lifetime_delta: Decimal = ZERO,
        floor: Decimal = ZERO,
        touched_at: Optional[datetime] = None,
    ) -> Optional[Account]:
        """
        Atomically add ``delta`` (may be negative) to the account balance.

        Returns the updated account, or ``None`` if the account does not exist
        or the resulting balance would fall below ``floor``.
        """
        ...

    # Usage sessions
    @abstractmethod
    async def add_session(self, session: UsageSession) -> UsageSession: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[UsageSession]: ...

    @abstractmethod
    async def get_active_session(self, account_id: str) -> Optional[UsageSession]: ...

    @abstractmethod
    async def get_sessions(
        self, account_id: str, limit: Optional[int] = None
    ) -> Iterable[UsageSession]:
        """Sessions of an account, most recent first."""
        ...

    @abstractmethod
    async def record_session_tick(
        self, session_id: str, seconds: int, credits: Decimal
    ) -> Optional[UsageSession]:
        """Advance an active session's accumulators; ``None`` if it is closed."""
        ...

    @abstractmethod
    async def close_session(
        self,
        session_id: str,
        *,
        ended_at: datetime,
        reason: CloseReason,
        seconds_used: int,
        credits_used: Decimal,
    ) -> Optional[UsageSession]:
        """Deactivate an active session; ``None`` if it was already closed."""
        ...

    @abstractmethod
    async def set_session_room_token(
        self, session_id: str, room_token: str
    ) -> Optional[UsageSession]: ...

    # Purchases
    @abstractmethod
    async def add_purchase(self, purchase: Purchase) -> Purchase: ...

    @abstractmethod
    async def get_purchase(self, purchase_id: str) -> Optional[Purchase]: ...

    @abstractmethod
    async def get_purchases(self, account_id: str) -> Iterable[Purchase]:
        """Purchases of an account, most recent first."""
        ...

    @abstractmethod
    async def transition_purchase(
        self,
        purchase_id: str,
        from_status: PurchaseStatus,
        to_status: PurchaseStatus,
        fields: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Purchase]:
        """Move a purchase between states; ``None`` if it was not in ``from_status``."""
        ...

    # Transactions
    @abstractmethod
    async def add_transaction(self, tx: Transaction) -> Transaction: ...

    @abstractmethod
    async def get_transactions(self, account_id: str) -> Iterable[Transaction]: ...

    # Notifications
    @abstractmethod
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
