from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, Optional

from ..cache.base import AsyncCacheBackend, balance_cache_key
from ..db.base import BaseDBManager
from ..errors import AccountNotFound, InsufficientFunds, InvalidAmount, StoreUnavailable
from ..logging.ledger_logger import LedgerLogger, best_effort
from ..models.account import Account
from ..models.base import utcnow
from ..models.transaction import Transaction, TransactionType
from ..money import ZERO, CreditAmount, to_credits


logger = logging.getLogger(__name__)


class LedgerStore:
    """
    Durable per-account credit balance.

    The check-and-decrement of a debit is a single conditional update in the
    DB manager, so concurrent debits on one account serialize and a balance
    can never be observed below zero. After the balance commits, the
    transaction row, the audit entry and the cache are updated; failures in
    that bookkeeping are logged but never undo or repeat the mutation.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        cache: Optional[AsyncCacheBackend] = None,
        cache_ttl_seconds: int | None = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._cache = cache
        self._cache_ttl_seconds = cache_ttl_seconds

    async def debit(
        self,
        account_id: str,
        amount: CreditAmount,
        *,
        transaction_type: TransactionType = TransactionType.SESSION_TICK,
        session_id: str | None = None,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> Decimal:
        amount = self._positive(amount)

        account = await self._db.apply_balance_delta(
            account_id, -amount, floor=ZERO, touched_at=utcnow()
        )
        if account is None:
            current = await self._db.get_account(account_id)
            if current is None:
                raise AccountNotFound(account_id)
            await best_effort(
                self._ledger.log_error(
                    message="Insufficient credits for deduction",
                    details={"requested": str(amount), "current": str(current.credit_balance)},
                    account_id=account_id,
                    session_id=session_id,
                    correlation_id=correlation_id,
                )
            )
            raise InsufficientFunds(account_id, amount, current.credit_balance)

        await self._record(
            Transaction(
                account_id=account_id,
                credits_deducted=amount,
                balance_after=account.credit_balance,
                transaction_type=transaction_type,
                session_id=session_id,
                description=description,
            ),
            message="Credits deducted",
            correlation_id=correlation_id,
        )
        return account.credit_balance

    async def credit(
        self,
        account_id: str,
        amount: CreditAmount,
        *,
        purchase_id: str | None = None,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> Decimal:
        """Apply purchased credits; also raises ``lifetime_credits_purchased``."""
        amount = self._positive(amount)
        account = await self._db.apply_balance_delta(
            account_id, amount, lifetime_delta=amount, touched_at=utcnow()
        )
        if account is None:
            raise AccountNotFound(account_id)

        await self._record(
            Transaction(
                account_id=account_id,
                credits_added=amount,
                balance_after=account.credit_balance,
                transaction_type=TransactionType.PURCHASE,
                purchase_id=purchase_id,
                description=description,
            ),
            message="Credits added",
            correlation_id=correlation_id,
        )
        return account.credit_balance

    async def open_account(
        self,
        account: Account,
        opening_grant: CreditAmount,
        *,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> Account:
        """
        Insert a new account already holding ``opening_grant``, so the
        account can never exist without its grant.
        """
        grant = to_credits(opening_grant)
        if grant < ZERO:
            raise InvalidAmount(opening_grant)
        account = await self._db.add_account(account.model_copy(update={"credit_balance": grant}))
        if grant > ZERO:
            await self._record(
                Transaction(
                    account_id=account.id,
                    credits_added=grant,
                    balance_after=grant,
                    transaction_type=TransactionType.GRANT,
                    description=description,
                ),
                message="Credits granted",
                correlation_id=correlation_id,
            )
        return account

    async def grant(
        self,
        account_id: str,
        amount: CreditAmount,
        *,
        transaction_type: TransactionType = TransactionType.GRANT,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> Decimal:
        """Free credits (sign-up grant, refunds); lifetime purchases stay unchanged."""
        amount = self._positive(amount)
        account = await self._db.apply_balance_delta(account_id, amount, touched_at=utcnow())
        if account is None:
            raise AccountNotFound(account_id)

        await self._record(
            Transaction(
                account_id=account_id,
                credits_added=amount,
                balance_after=account.credit_balance,
                transaction_type=transaction_type,
                description=description,
            ),
            message="Credits granted",
            correlation_id=correlation_id,
        )
        return account.credit_balance

    async def read(self, account_id: str) -> Decimal:
        if self._cache:
            cached = await self._cache.get(balance_cache_key(account_id))
            if isinstance(cached, Decimal):
                return cached
        account = await self.get_account(account_id)
        if self._cache:
            await self._cache.set(
                balance_cache_key(account_id),
                account.credit_balance,
                ttl_seconds=self._cache_ttl_seconds,
            )
        return account.credit_balance

    async def get_account(self, account_id: str) -> Account:
        account = await self._db.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def get_transactions(self, account_id: str) -> Iterable[Transaction]:
        return await self._db.get_transactions(account_id)

    async def _record(
        self, tx: Transaction, message: str, correlation_id: str | None
    ) -> None:
        if self._cache:
            await self._cache.set(
                balance_cache_key(tx.account_id),
                tx.balance_after,
                ttl_seconds=self._cache_ttl_seconds,
            )
        try:
            await self._db.add_transaction(tx)
            await self._ledger.log_transaction(
                account_id=tx.account_id,
                message=message,
                details={
                    "type": tx.transaction_type.value,
                    "added": str(tx.credits_added),
                    "deducted": str(tx.credits_deducted),
                    "new_balance": str(tx.balance_after),
                    "description": tx.description or "",
                },
                correlation_id=correlation_id,
                session_id=tx.session_id,
            )
        except StoreUnavailable:
            logger.exception(
                "Balance committed but bookkeeping failed for account %s (balance %s)",
                tx.account_id,
                tx.balance_after,
            )

    @staticmethod
    def _positive(amount: CreditAmount) -> Decimal:
        try:
            value = to_credits(amount)
        except ArithmeticError as exc:
            raise InvalidAmount(amount) from exc
        if value <= ZERO:
            raise InvalidAmount(amount)
        return value
