from __future__ import annotations

import functools
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from bson.decimal128 import Decimal128
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseDBManager
from ..errors import StoreUnavailable
from ..models.account import Account
from ..models.base import DBSerializableModel, utcnow
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.purchase import Purchase, PurchaseStatus
from ..models.session import CloseReason, UsageSession
from ..models.transaction import Transaction
from ..money import ZERO, to_credits


TModel = TypeVar("TModel", bound=DBSerializableModel)
TResult = TypeVar("TResult")


def _store_op(
    func: Callable[..., Awaitable[TResult]],
) -> Callable[..., Awaitable[TResult]]:
    """
    Translate driver failures into StoreUnavailable. A duplicate key is a
    precondition failure and is raised as ``ValueError``, as in memory.
    """

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> TResult:
        try:
            return await func(*args, **kwargs)
        except DuplicateKeyError as exc:
            raise ValueError(f"{func.__name__}: duplicate key") from exc
        except PyMongoError as exc:
            raise StoreUnavailable(f"{func.__name__} failed: {exc}") from exc

    return wrapper


def _to_bson(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, dict):
        return {k: _to_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_bson(v) for v in value]
    return value


def _from_bson(value: Any) -> Any:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {k: _from_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_bson(v) for v in value]
    return value


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics. Money is stored as Decimal128.

    Every state change is a single-document `find_one_and_update` whose filter
    carries the precondition (balance floor, `is_active`, purchase status), so
    no multi-document transaction is needed for correctness.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name])

    @_store_op
    async def ensure_indexes(self) -> None:
        sessions = self._db[UsageSession.collection_name]
        # Enforces at most one active session per account at the storage level
        await sessions.create_index(
            [("account_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"is_active": True},
            name="one_active_session_per_account",
        )
        await sessions.create_index([("account_id", ASCENDING), ("started_at", DESCENDING)])
        purchases = self._db[Purchase.collection_name]
        await purchases.create_index([("account_id", ASCENDING), ("purchased_at", DESCENDING)])
        transactions = self._db[Transaction.collection_name]
        await transactions.create_index([("account_id", ASCENDING), ("timestamp", ASCENDING)])

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return _to_bson(data)

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = _from_bson(dict(doc))
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    async def _insert(self, model: TModel) -> TModel:
        col = self._db[model.collection_name]
        await col.insert_one(self._prepare_insert(model))
        return model

    async def _find_many(
        self,
        model_cls: Type[TModel],
        query: Mapping[str, Any],
        sort: list[tuple[str, int]],
        limit: Optional[int] = None,
    ) -> list[TModel]:
        cursor = self._db[model_cls.collection_name].find(dict(query)).sort(sort)
        if limit is not None:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=limit)
        return [self._decode(model_cls, d) for d in docs if d is not None]  # type: ignore[misc]

    async def _update_one(
        self,
        model_cls: Type[TModel],
        query: Mapping[str, Any],
        update: Mapping[str, Any],
    ) -> Optional[TModel]:
        doc = await self._db[model_cls.collection_name].find_one_and_update(
            dict(query),
            _to_bson(dict(update)),
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(model_cls, doc)

    # Account operations
    @_store_op
    async def add_account(self, account: Account) -> Account:
        return await self._insert(account)

    @_store_op
    async def get_account(self, account_id: str) -> Optional[Account]:
        doc = await self._db[Account.collection_name].find_one({"_id": account_id})
        return self._decode(Account, doc)

    @_store_op
    async def update_account_fields(
        self, account_id: str, fields: Mapping[str, Any]
    ) -> Optional[Account]:
        safe = {
            k: v
            for k, v in fields.items()
            if k not in {"id", "credit_balance", "lifetime_credits_purchased"}
        }
        if not safe:
            return await self.get_account(account_id)
        return await self._update_one(Account, {"_id": account_id}, {"$set": safe})

    @_store_op
    async def apply_balance_delta(
        self,
        account_id: str,
        delta: Decimal,
        *,
        lifetime_delta: Decimal = ZERO,
        floor: Decimal = ZERO,
        touched_at: Optional[datetime] = None,
    ) -> Optional[Account]:
        delta = to_credits(delta)
        query: Dict[str, Any] = {"_id": account_id}
        # balance + delta >= floor  <=>  balance >= floor - delta
        query["credit_balance"] = {"$gte": Decimal128(to_credits(floor - delta))}
        update: Dict[str, Any] = {
            "$inc": {"credit_balance": delta},
            "$set": {"last_active_at": touched_at or utcnow()},
        }
        if lifetime_delta:
            update["$inc"]["lifetime_credits_purchased"] = to_credits(lifetime_delta)
        return await self._update_one(Account, query, update)

    # Usage sessions
    @_store_op
    async def add_session(self, session: UsageSession) -> UsageSession:
        return await self._insert(session)

    @_store_op
    async def get_session(self, session_id: str) -> Optional[UsageSession]:
        doc = await self._db[UsageSession.collection_name].find_one({"_id": session_id})
        return self._decode(UsageSession, doc)

    @_store_op
    async def get_active_session(self, account_id: str) -> Optional[UsageSession]:
        doc = await self._db[UsageSession.collection_name].find_one(
            {"account_id": account_id, "is_active": True}
        )
        return self._decode(UsageSession, doc)

    @_store_op
    async def get_sessions(
        self, account_id: str, limit: Optional[int] = None
    ) -> Iterable[UsageSession]:
        return await self._find_many(
            UsageSession, {"account_id": account_id}, [("started_at", DESCENDING)], limit
        )

    @_store_op
    async def record_session_tick(
        self, session_id: str, seconds: int, credits: Decimal
    ) -> Optional[UsageSession]:
        credits = to_credits(credits)
        return await self._update_one(
            UsageSession,
            {"_id": session_id, "is_active": True},
            {
                "$inc": {
                    "seconds_used": seconds,
                    "credits_used": credits,
                    "credits_charged": credits,
                    "tick_count": 1,
                }
            },
        )

    @_store_op
    async def close_session(
        self,
        session_id: str,
        *,
        ended_at: datetime,
        reason: CloseReason,
        seconds_used: int,
        credits_used: Decimal,
    ) -> Optional[UsageSession]:
        return await self._update_one(
            UsageSession,
            {"_id": session_id, "is_active": True},
            {
                "$set": {
                    "is_active": False,
                    "ended_at": ended_at,
                    "end_reason": reason.value,
                    "seconds_used": seconds_used,
                    "credits_used": to_credits(credits_used),
                }
            },
        )

    @_store_op
    async def set_session_room_token(
        self, session_id: str, room_token: str
    ) -> Optional[UsageSession]:
        return await self._update_one(
            UsageSession, {"_id": session_id}, {"$set": {"room_token": room_token}}
        )

    # Purchases
    @_store_op
    async def add_purchase(self, purchase: Purchase) -> Purchase:
        return await self._insert(purchase)

    @_store_op
    async def get_purchase(self, purchase_id: str) -> Optional[Purchase]:
        doc = await self._db[Purchase.collection_name].find_one({"_id": purchase_id})
        return self._decode(Purchase, doc)

    @_store_op
    async def get_purchases(self, account_id: str) -> Iterable[Purchase]:
        return await self._find_many(
            Purchase, {"account_id": account_id}, [("purchased_at", DESCENDING)]
        )

    @_store_op
    async def transition_purchase(
        self,
        purchase_id: str,
        from_status: PurchaseStatus,
        to_status: PurchaseStatus,
        fields: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Purchase]:
        update = dict(fields or {})
        update["status"] = to_status.value
        return await self._update_one(
            Purchase,
            {"_id": purchase_id, "status": from_status.value},
            {"$set": update},
        )

    # Transactions
    @_store_op
    async def add_transaction(self, tx: Transaction) -> Transaction:
        return await self._insert(tx)

    @_store_op
    async def get_transactions(self, account_id: str) -> Iterable[Transaction]:
        return await self._find_many(
            Transaction, {"account_id": account_id}, [("timestamp", ASCENDING)]
        )

    # Notifications
    @_store_op
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        return await self._insert(notification)

    # Ledger
    @_store_op
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        return await self._insert(entry)
