from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar, Union

from ..errors import InsufficientFunds, StoreUnavailable
from ..logging.ledger_logger import LedgerLogger, best_effort
from ..models.session import CloseReason, FinalUsage, SessionHandle, UsageSession
from ..models.transaction import TransactionType
from ..money import (
    MINIMUM_SESSION_CHARGE,
    MINIMUM_START_BALANCE,
    TICK_CHARGE,
    TICK_SECONDS,
    ZERO,
)
from .ledger_store import LedgerStore
from .metering_clock import MeteringClock, Sleep
from .notification_service import DepletionListener, NotificationService
from .session_registry import SessionRegistry
from .transport import ConnectionState, TransportEvent, TransportLiaison


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Meter:
    session_id: str
    clock: MeteringClock


@dataclass
class _TickEnd:
    """A tick that ended metering; ``final`` is None when nothing was closed here."""

    final: Optional[FinalUsage] = None
    balance: Optional[Decimal] = None


def _session_id_of(session: Union[SessionHandle, UsageSession]) -> str:
    if isinstance(session, SessionHandle):
        return session.session_id
    return session.id or ""


class BillingEngine:
    """
    Coordinates the ledger, the session registry and one metering clock per
    active session.

    Per account, start, tick and close run under one asyncio lock, and every
    tick re-checks under that lock that its session is still active before it
    debits. A close therefore always wins against a tick: once a session is
    closed no further debit is applied to it.

    Depletion is detected after the tick that brings the balance to the
    per-tick charge or below: that tick is paid for, then the session ends.
    """

    def __init__(
        self,
        ledger_store: LedgerStore,
        registry: SessionRegistry,
        notifications: NotificationService,
        ledger: LedgerLogger,
        transport: Optional[TransportLiaison] = None,
        *,
        tick_interval_seconds: float = float(TICK_SECONDS),
        store_retry_attempts: int = 1,
        autostart_metering: bool = True,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._ledger_store = ledger_store
        self._registry = registry
        self._notifications = notifications
        self._ledger = ledger
        self._transport = transport
        self._tick_interval = tick_interval_seconds
        self._store_retry_attempts = store_retry_attempts
        self._autostart = autostart_metering
        self._sleep = sleep
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._meters: Dict[str, _Meter] = {}
        if transport is not None:
            transport.subscribe(self.handle_transport_event)

    # Queries
    async def get_balance(self, account_id: str) -> Decimal:
        return await self._ledger_store.read(account_id)

    async def get_active_session(self, account_id: str) -> Optional[SessionHandle]:
        return await self._registry.get_active(account_id)

    def on_depleted(self, listener: DepletionListener) -> Callable[[], None]:
        return self._notifications.on_depleted(listener)

    def is_metering(self, account_id: str) -> bool:
        meter = self._meters.get(account_id)
        return meter is not None and meter.clock.running

    # Lifecycle
    async def start_session(
        self,
        account_id: str,
        language_from: str,
        language_to: str,
        *,
        room_token: str | None = None,
        correlation_id: str | None = None,
    ) -> SessionHandle:
        """
        Charge the minimum, open the session and begin metering.

        Raises ``AccountNotFound``, ``InsufficientFunds`` (balance below the
        minimum charge) or ``TransportDisconnected``. A stale active session
        is superseded, not reported as an error.
        """
        if self._transport is not None:
            self._transport.require_connected(account_id)

        # Let a running meter settle its in-flight tick before we take the lock
        await self._halt_meter(account_id)

        async with self._locks[account_id]:
            account = await self._ledger_store.get_account(account_id)
            if account.credit_balance < MINIMUM_START_BALANCE:
                await self._ledger.log_error(
                    message="Insufficient credits to start session",
                    details={
                        "required": str(MINIMUM_START_BALANCE),
                        "current": str(account.credit_balance),
                    },
                    account_id=account_id,
                    correlation_id=correlation_id,
                )
                raise InsufficientFunds(
                    account_id, MINIMUM_START_BALANCE, account.credit_balance
                )

            balance = await self._ledger_store.debit(
                account_id,
                MINIMUM_SESSION_CHARGE,
                transaction_type=TransactionType.SESSION_START,
                description="Minimum session charge",
                correlation_id=correlation_id,
            )
            try:
                handle = await self._registry.reserve(
                    account_id, language_from, language_to, correlation_id=correlation_id
                )
            except StoreUnavailable:
                await self._ledger_store.grant(
                    account_id,
                    MINIMUM_SESSION_CHARGE,
                    transaction_type=TransactionType.REFUND,
                    description="Session could not be reserved",
                    correlation_id=correlation_id,
                )
                raise

            if room_token:
                try:
                    await self._registry.attach_room_token(handle, room_token)
                except StoreUnavailable:
                    logger.exception(
                        "Room token not stored for session %s", handle.session_id
                    )

            # A concurrent start may have left a meter for the superseded session
            stale = self._meters.pop(account_id, None)
            if stale is not None:
                stale.clock.request_stop()
            if self._autostart:
                self._start_meter(handle)

        if stale is not None:
            await stale.clock.wait()

        logger.info(
            "Session %s started for account %s (%s -> %s), balance %s",
            handle.session_id,
            account_id,
            language_from,
            language_to,
            balance,
        )
        await self._notifications.notify_low_credits(
            account_id, balance + MINIMUM_SESSION_CHARGE, balance
        )
        return handle

    async def stop_session(
        self,
        session: SessionHandle,
        reason: CloseReason = CloseReason.USER_STOP,
        *,
        correlation_id: str | None = None,
    ) -> FinalUsage:
        """Stop metering and finalize. Safe to call repeatedly."""
        await self._halt_meter(session.account_id, session.session_id)
        async with self._locks[session.account_id]:
            return await self._retry_store(
                lambda: self._registry.close(session, reason, correlation_id=correlation_id),
                f"Close ({reason.value}) of session {session.session_id}",
            )

    async def stop_session_by_id(
        self,
        session_id: str,
        reason: CloseReason = CloseReason.USER_STOP,
        *,
        correlation_id: str | None = None,
    ) -> FinalUsage:
        record = await self._registry.get_session(session_id)
        return await self.stop_session(
            record.handle(), reason, correlation_id=correlation_id
        )

    async def apply_tick(self, session: SessionHandle) -> bool:
        """
        Charge one tick to an active session.

        Returns ``True`` while the session should keep metering. Never raises
        for billing outcomes: depletion and store failures finalize the
        session and notify ``on_depleted`` listeners.
        """
        async with self._locks[session.account_id]:
            try:
                ended = await self._tick_locked(session)
            except StoreUnavailable:
                logger.exception(
                    "Store unavailable while metering session %s; finalizing",
                    session.session_id,
                )
                ended = _TickEnd(await self._finalize_for_metering(session, CloseReason.STALLED))
            if ended is None:
                return True
            self._forget_meter(session)

        if ended.final is None:
            return False
        balance = ended.balance
        if balance is None:
            balance = await self._last_known_balance(session.account_id)
        logger.info(
            "Session %s ended by metering (%s), balance %s",
            ended.final.session_id,
            ended.final.reason.value,
            balance,
        )
        await self._notifications.notify_depleted(ended.final, balance)
        return False

    async def handle_transport_event(self, event: TransportEvent) -> Optional[FinalUsage]:
        active = await self._registry.get_active(event.account_id)
        if active is None:
            return None
        if event.state == ConnectionState.DISCONNECTED:
            logger.info(
                "Transport disconnected for account %s, stopping session %s",
                event.account_id,
                active.session_id,
            )
            return await self.stop_session(active, CloseReason.DISCONNECTED)
        if event.state == ConnectionState.CONNECTED and event.room_token:
            await self._registry.attach_room_token(active, event.room_token)
        return None

    async def shutdown(self) -> List[FinalUsage]:
        """Stop every meter and close its session."""
        finals: List[FinalUsage] = []
        for account_id in list(self._meters):
            meter = self._meters.get(account_id)
            if meter is None:
                continue
            record = await self._registry.get_session(meter.session_id)
            finals.append(await self.stop_session(record.handle(), CloseReason.SHUTDOWN))
        await best_effort(
            self._ledger.log_system(
                "Metering engine shut down",
                {"sessions_closed": [f.session_id for f in finals]},
            )
        )
        return finals

    # Internals
    def _start_meter(self, handle: SessionHandle) -> None:
        clock = MeteringClock(
            lambda: self.apply_tick(handle),
            self._tick_interval,
            name=f"meter:{handle.account_id}:{handle.session_id}",
            sleep=self._sleep,
        )
        self._meters[handle.account_id] = _Meter(session_id=handle.session_id, clock=clock)
        clock.start()

    async def _halt_meter(self, account_id: str, session_id: str | None = None) -> None:
        meter = self._meters.get(account_id)
        if meter is None or (session_id is not None and meter.session_id != session_id):
            return
        del self._meters[account_id]
        await meter.clock.stop()

    def _forget_meter(self, session: SessionHandle) -> None:
        meter = self._meters.get(session.account_id)
        if meter is not None and meter.session_id == session.session_id:
            del self._meters[session.account_id]
            meter.clock.request_stop()

    async def _tick_locked(self, session: SessionHandle) -> Optional[_TickEnd]:
        """One tick under the account lock; ``None`` means keep metering."""
        record = await self._registry.get_session(session)
        if not record.is_active:
            return _TickEnd()

        try:
            balance = await self._debit_tick(session)
        except InsufficientFunds as exc:
            final = await self._finalize_for_metering(record, CloseReason.DEPLETED)
            return _TickEnd(final, exc.available if exc.available is not None else ZERO)
        except StoreUnavailable:
            logger.error(
                "Ledger unavailable while metering session %s; finalizing",
                session.session_id,
            )
            return _TickEnd(await self._finalize_for_metering(record, CloseReason.STALLED))

        try:
            updated = await self._retry_store(
                lambda: self._registry.record_tick(session, TICK_SECONDS, TICK_CHARGE),
                f"Tick record for session {session.session_id}",
            )
        except StoreUnavailable:
            # the debit stands; the session total misses this tick
            await best_effort(
                self._ledger.log_error(
                    message="Tick charged but not recorded on the session",
                    details={"charge": str(TICK_CHARGE), "balance": str(balance)},
                    account_id=session.account_id,
                    session_id=session.session_id,
                )
            )
            final = await self._finalize_for_metering(record, CloseReason.STALLED)
            return _TickEnd(final, balance)

        if updated is None:
            await best_effort(
                self._ledger.log_error(
                    message="Tick charged to a session closed elsewhere",
                    details={"charge": str(TICK_CHARGE), "balance": str(balance)},
                    account_id=session.account_id,
                    session_id=session.session_id,
                )
            )
            return _TickEnd()

        if balance <= TICK_CHARGE:
            final = await self._finalize_for_metering(updated, CloseReason.DEPLETED)
            return _TickEnd(final, balance)
        await self._notifications.notify_low_credits(
            session.account_id, balance + TICK_CHARGE, balance
        )
        return None

    async def _finalize_for_metering(
        self, session: Union[SessionHandle, UsageSession], reason: CloseReason
    ) -> FinalUsage:
        """Close a session the meter is ending; falls back to in-memory usage."""
        try:
            return await self._retry_store(
                lambda: self._registry.close(session, reason),
                f"Close ({reason.value}) of session {_session_id_of(session)}",
            )
        except StoreUnavailable:
            logger.exception(
                "Could not finalize session %s (%s); reporting last known usage",
                _session_id_of(session),
                reason.value,
            )
            return self._registry.unconfirmed_final_usage(session, reason)

    async def _last_known_balance(self, account_id: str) -> Decimal:
        try:
            return await self._ledger_store.read(account_id)
        except StoreUnavailable:
            logger.warning("Balance of account %s unavailable for depletion notice", account_id)
            return ZERO

    async def _debit_tick(self, session: SessionHandle) -> Decimal:
        return await self._retry_store(
            lambda: self._ledger_store.debit(
                session.account_id,
                TICK_CHARGE,
                transaction_type=TransactionType.SESSION_TICK,
                session_id=session.session_id,
                description="Metering tick",
            ),
            f"Tick debit for session {session.session_id}",
        )

    async def _retry_store(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        attempts = 1 + max(self._store_retry_attempts, 0)
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except StoreUnavailable:
                if attempt == attempts:
                    raise
                logger.warning(
                    "%s failed (attempt %d/%d), retrying", description, attempt, attempts
                )
        raise AssertionError("unreachable")
