from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .cache.base import AsyncCacheBackend
from .cache.memory import InMemoryAsyncCache
from .config import Settings, settings as default_settings
from .db.base import BaseDBManager
from .db.memory import InMemoryDBManager
from .logging.ledger_logger import LedgerLogger
from .models.base import utcnow
from .notifications.queue import AsyncNotificationQueue, InMemoryNotificationQueue
from .services.account_service import AccountService
from .services.billing_engine import BillingEngine
from .services.ledger_store import LedgerStore
from .services.metering_clock import Sleep
from .services.notification_service import NotificationService
from .services.purchase_service import PurchaseService
from .services.session_registry import SessionRegistry
from .services.transport import TransportLiaison


@dataclass
class MeteringServices:
    db: BaseDBManager
    ledger: LedgerLogger
    cache: Optional[AsyncCacheBackend]
    queue: AsyncNotificationQueue
    transport: TransportLiaison
    ledger_store: LedgerStore
    registry: SessionRegistry
    notifications: NotificationService
    engine: BillingEngine
    purchases: PurchaseService
    accounts: AccountService


def create_db_manager(config: Settings) -> BaseDBManager:
    if config.MONGO_URI:
        from .db.mongo import MongoDBManager

        return MongoDBManager.from_client_uri(config.MONGO_URI, config.MONGO_DB)
    return InMemoryDBManager()


def build_services(
    config: Optional[Settings] = None,
    *,
    db: Optional[BaseDBManager] = None,
    cache: Optional[AsyncCacheBackend] = None,
    queue: Optional[AsyncNotificationQueue] = None,
    ledger_path: Optional[Path] = None,
    now: Callable[[], datetime] = utcnow,
    sleep: Sleep = asyncio.sleep,
) -> MeteringServices:
    """Wire the metering stack from configuration; any piece can be overridden."""
    config = config or default_settings
    db = db or create_db_manager(config)
    if cache is None and db.process_local:
        # shared stores are always read directly
        cache = InMemoryAsyncCache()
    queue = queue or InMemoryNotificationQueue()
    ledger = LedgerLogger(db=db, file_path=ledger_path or Path(config.LEDGER_LOG_PATH))
    transport = TransportLiaison()

    ledger_store = LedgerStore(
        db=db,
        ledger=ledger,
        cache=cache,
        cache_ttl_seconds=config.BALANCE_CACHE_TTL_SECONDS,
    )
    registry = SessionRegistry(db=db, ledger=ledger, now=now)
    notifications = NotificationService(
        db=db, queue=queue, low_credit_threshold=config.LOW_CREDIT_THRESHOLD
    )
    engine = BillingEngine(
        ledger_store=ledger_store,
        registry=registry,
        notifications=notifications,
        ledger=ledger,
        transport=transport,
        tick_interval_seconds=config.TICK_INTERVAL_SECONDS,
        store_retry_attempts=config.STORE_RETRY_ATTEMPTS,
        autostart_metering=config.AUTOSTART_METERING,
        sleep=sleep,
    )
    purchases = PurchaseService(db=db, ledger_store=ledger_store, ledger=ledger)
    accounts = AccountService(
        db=db,
        ledger_store=ledger_store,
        ledger=ledger,
        signup_grant=config.SIGNUP_GRANT_CREDITS,
    )
    return MeteringServices(
        db=db,
        ledger=ledger,
        cache=cache,
        queue=queue,
        transport=transport,
        ledger_store=ledger_store,
        registry=registry,
        notifications=notifications,
        engine=engine,
        purchases=purchases,
        accounts=accounts,
    )
