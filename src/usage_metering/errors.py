from __future__ import annotations

from decimal import Decimal
from typing import Optional


class MeteringError(Exception):
    """Base class for every error raised by the metering engine."""

    code: str = "METERING_ERROR"


class InvalidAmount(MeteringError, ValueError):
    code = "INVALID_AMOUNT"

    def __init__(self, amount: object) -> None:
        super().__init__(f"amount must be positive, got {amount}")
        self.amount = amount


class InsufficientFunds(MeteringError, ValueError):
    """
    Raised when a debit would take a balance below zero, or when a session
    cannot start because the balance is under the minimum charge.
    Recoverable by purchasing more credits.
    """

    code = "INSUFFICIENT_CREDITS"

    def __init__(
        self,
        account_id: str,
        requested: Decimal,
        available: Optional[Decimal] = None,
    ) -> None:
        message = f"insufficient credits for account {account_id}: requested {requested}"
        if available is not None:
            message += f", available {available}"
        super().__init__(message)
        self.account_id = account_id
        self.requested = requested
        self.available = available


class NotFound(MeteringError, LookupError):
    code = "NOT_FOUND"
    kind = "record"

    def __init__(self, identifier: str) -> None:
        super().__init__(f"{self.kind} not found: {identifier}")
        self.identifier = identifier


class AccountNotFound(NotFound):
    kind = "account"


class SessionNotFound(NotFound):
    kind = "usage session"


class PurchaseNotFound(NotFound):
    kind = "purchase"


class InvalidPackage(MeteringError, ValueError):
    code = "INVALID_PACKAGE"

    def __init__(self, package_index: int) -> None:
        super().__init__(f"invalid credit package selected: {package_index}")
        self.package_index = package_index


class InvalidPurchaseState(MeteringError):
    code = "INVALID_PURCHASE_STATE"


class SessionAlreadyActive(MeteringError):
    """
    Informational: a new session superseded a stale active one.
    Recorded in the ledger, never raised to callers.
    """

    code = "SESSION_ALREADY_ACTIVE"

    def __init__(self, account_id: str, session_id: str) -> None:
        super().__init__(
            f"account {account_id} already had active session {session_id}; superseded"
        )
        self.account_id = account_id
        self.session_id = session_id


class TransportDisconnected(MeteringError):
    code = "TRANSPORT_DISCONNECTED"

    def __init__(self, account_id: str) -> None:
        super().__init__(f"transport disconnected for account {account_id}")
        self.account_id = account_id


class StoreUnavailable(MeteringError):
    """The backing store failed transiently; the in-flight operation had no effect."""

    code = "STORE_UNAVAILABLE"


class NotAuthenticated(MeteringError):
    code = "NOT_AUTHENTICATED"
