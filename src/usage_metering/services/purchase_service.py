from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from ..db.base import BaseDBManager
from ..errors import (
    AccountNotFound,
    InvalidPackage,
    InvalidPurchaseState,
    MeteringError,
    PurchaseNotFound,
    StoreUnavailable,
)
from ..logging.ledger_logger import LedgerLogger, best_effort
from ..models.base import utcnow
from ..models.purchase import CREDIT_PACKAGES, CreditPackage, Purchase, PurchaseStatus
from ..money import to_credits
from .ledger_store import LedgerStore


logger = logging.getLogger(__name__)


class PurchaseService:
    """
    Credit top-ups. Settlement with the payment processor happens elsewhere;
    this service only records the pending -> completed | failed transition
    and applies completed purchases to the ledger, exactly once.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger_store: LedgerStore,
        ledger: LedgerLogger,
        packages: Sequence[CreditPackage] = CREDIT_PACKAGES,
    ) -> None:
        self._db = db
        self._ledger_store = ledger_store
        self._ledger = ledger
        self._packages = tuple(packages)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def packages(self) -> tuple[CreditPackage, ...]:
        return self._packages

    def resolve_package(self, package_index: int) -> CreditPackage:
        if not 0 <= package_index < len(self._packages):
            raise InvalidPackage(package_index)
        return self._packages[package_index]

    async def create_purchase(self, account_id: str, package_index: int) -> Purchase:
        package = self.resolve_package(package_index)
        if await self._db.get_account(account_id) is None:
            raise AccountNotFound(account_id)

        purchase = Purchase(
            account_id=account_id,
            amount_minor_units=package.amount_minor_units,
            credits_granted=to_credits(package.credits),
        )
        purchase = await self._db.add_purchase(purchase)
        await best_effort(
            self._ledger.log_transaction(
                account_id=account_id,
                message="Purchase initiated",
                details={
                    "purchase_id": purchase.id,
                    "package_index": package_index,
                    "credits": str(purchase.credits_granted),
                    "amount_minor_units": purchase.amount_minor_units,
                },
            )
        )
        return purchase

    async def apply_completed_purchase(
        self,
        purchase_id: str,
        payment_reference: str | None = None,
        correlation_id: str | None = None,
    ) -> Decimal:
        """
        Mark a purchase completed and credit the account. Completing an
        already-completed purchase is a no-op that returns the current balance.
        """
        async with self._locks[purchase_id]:
            purchase = await self.get_purchase(purchase_id)
            if purchase.status == PurchaseStatus.COMPLETED:
                logger.info("Purchase %s already completed; not re-applied", purchase_id)
                return await self._ledger_store.read(purchase.account_id)
            if purchase.status == PurchaseStatus.FAILED:
                raise InvalidPurchaseState(f"purchase {purchase_id} has failed")

            fields = {"completed_at": utcnow()}
            if payment_reference:
                fields["payment_reference"] = payment_reference
            completed = await self._db.transition_purchase(
                purchase_id, PurchaseStatus.PENDING, PurchaseStatus.COMPLETED, fields
            )
            if completed is None:
                # settled concurrently by another worker
                current = await self.get_purchase(purchase_id)
                if current.status == PurchaseStatus.COMPLETED:
                    return await self._ledger_store.read(current.account_id)
                raise InvalidPurchaseState(f"purchase {purchase_id} is {current.status.value}")

            try:
                return await self._ledger_store.credit(
                    completed.account_id,
                    completed.credits_granted,
                    purchase_id=purchase_id,
                    description=f"{completed.credits_granted} credits purchased",
                    correlation_id=correlation_id,
                )
            except MeteringError:
                # credits not applied, back to pending
                await self._reopen(purchase_id)
                raise

    async def _reopen(self, purchase_id: str) -> None:
        try:
            reopened = await self._db.transition_purchase(
                purchase_id,
                PurchaseStatus.COMPLETED,
                PurchaseStatus.PENDING,
                {"completed_at": None},
            )
        except StoreUnavailable:
            reopened = None
        if reopened is None:
            logger.critical(
                "Purchase %s is marked completed but its credits were not applied", purchase_id
            )

    async def mark_purchase_failed(
        self, purchase_id: str, payment_reference: str | None = None
    ) -> Purchase:
        async with self._locks[purchase_id]:
            purchase = await self.get_purchase(purchase_id)
            if purchase.status == PurchaseStatus.FAILED:
                return purchase
            if purchase.status == PurchaseStatus.COMPLETED:
                raise InvalidPurchaseState(f"purchase {purchase_id} is already completed")

            fields = {"payment_reference": payment_reference} if payment_reference else None
            failed = await self._db.transition_purchase(
                purchase_id, PurchaseStatus.PENDING, PurchaseStatus.FAILED, fields
            )
            if failed is None:
                return await self.get_purchase(purchase_id)

        await best_effort(
            self._ledger.log_error(
                message="Purchase failed",
                details={"purchase_id": purchase_id, "payment_reference": payment_reference},
                account_id=failed.account_id,
            )
        )
        return failed

    async def simulate_purchase(self, account_id: str, package_index: int) -> Decimal:
        """Create and immediately complete a purchase, for environments without a processor."""
        purchase = await self.create_purchase(account_id, package_index)
        return await self.apply_completed_purchase(
            purchase.id or "", payment_reference=f"simulated_{purchase.id}"
        )

    async def get_purchase(self, purchase_id: str) -> Purchase:
        purchase = await self._db.get_purchase(purchase_id)
        if purchase is None:
            raise PurchaseNotFound(purchase_id)
        return purchase

    async def get_purchase_history(self, account_id: str) -> List[Purchase]:
        return list(await self._db.get_purchases(account_id))

    async def get_recent_purchases(
        self, account_id: str, limit: Optional[int] = None
    ) -> List[Purchase]:
        completed = [
            p
            for p in await self._db.get_purchases(account_id)
            if p.status == PurchaseStatus.COMPLETED
        ]
        return completed[:limit] if limit is not None else completed
