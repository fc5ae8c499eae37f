from __future__ import annotations

import logging
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel

from ..db.base import BaseDBManager
from ..errors import AccountNotFound, NotAuthenticated
from ..logging.ledger_logger import LedgerLogger, best_effort
from ..models.account import Account
from ..models.base import utcnow
from ..models.purchase import Purchase
from ..models.session import SessionHandle
from ..money import to_credits
from .ledger_store import LedgerStore
from .purchase_service import PurchaseService
from .session_registry import SessionRegistry


logger = logging.getLogger(__name__)


class AccountDetails(BaseModel):
    account: Account
    active_session: Optional[SessionHandle] = None
    recent_purchases: List[Purchase]


class AccountService:
    """
    Account lifecycle. Identity is verified elsewhere; we only receive the
    stable account id and a yes/no answer on whether the caller is signed in.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger_store: LedgerStore,
        ledger: LedgerLogger,
        signup_grant: Decimal,
    ) -> None:
        self._db = db
        self._ledger_store = ledger_store
        self._ledger = ledger
        self._signup_grant = to_credits(signup_grant)

    @staticmethod
    def ensure_authenticated(is_authenticated: bool) -> None:
        if not is_authenticated:
            raise NotAuthenticated("caller is not signed in")

    async def create_or_update_account(
        self,
        account_id: str,
        email: str | None = None,
        name: str | None = None,
    ) -> Account:
        """
        Called after each successful identity verification. The first call
        creates the account with the sign-up grant.
        """
        existing = await self._db.get_account(account_id)
        if existing is not None:
            return await self._touch(existing, email, name)

        try:
            account = await self._ledger_store.open_account(
                Account(id=account_id, email=email, name=name),
                self._signup_grant,
                description="Sign-up credits",
            )
        except ValueError:
            # created concurrently by another sign-in
            return await self._touch(await self.get_account(account_id), email, name)

        await best_effort(
            self._ledger.log_transaction(
                account_id=account_id,
                message="Account created",
                details={"signup_grant": str(self._signup_grant)},
            )
        )
        logger.info("Created account %s", account_id)
        return account

    async def _touch(self, account: Account, email: str | None, name: str | None) -> Account:
        fields = {"last_active_at": utcnow()}
        if email is not None:
            fields["email"] = email
        if name is not None:
            fields["name"] = name
        updated = await self._db.update_account_fields(account.id, fields)
        return updated or account

    async def get_account(self, account_id: str) -> Account:
        return await self._ledger_store.get_account(account_id)

    async def update_default_language(self, account_id: str, language: str) -> Account:
        account = await self._db.update_account_fields(
            account_id, {"default_language": language}
        )
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def get_account_details(
        self,
        account_id: str,
        registry: SessionRegistry,
        purchases: PurchaseService,
        recent_limit: int = 5,
    ) -> AccountDetails:
        account = await self.get_account(account_id)
        history = await purchases.get_purchase_history(account_id)
        return AccountDetails(
            account=account,
            active_session=await registry.get_active(account_id),
            recent_purchases=history[:recent_limit],
        )
