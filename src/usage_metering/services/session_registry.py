from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, time, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Union

from ..db.base import BaseDBManager
from ..errors import SessionAlreadyActive, SessionNotFound
from ..logging.ledger_logger import LedgerLogger, best_effort
from ..models.base import utcnow
from ..models.session import CloseReason, FinalUsage, SessionHandle, UsageSession
from ..money import (
    MINIMUM_SESSION_CHARGE,
    MINIMUM_SESSION_SECONDS,
    ZERO,
    credits_for_seconds,
    to_credits,
    whole_seconds_between,
)


logger = logging.getLogger(__name__)

SessionRef = Union[SessionHandle, UsageSession, str]


class SessionRegistry:
    """
    Enforces at most one active usage session per account.

    The active session is always looked up from the store; the registry keeps
    no copy of it. ``reserve`` and ``close`` serialize per account on an
    asyncio lock so a double-tap start cannot create two active sessions.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._now = now
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def reserve(
        self,
        account_id: str,
        language_from: str,
        language_to: str,
        *,
        correlation_id: str | None = None,
    ) -> SessionHandle:
        """
        Open a new active session charged at the minimum, force-closing any
        active session the account already had.
        """
        async with self._locks[account_id]:
            stale = await self._db.get_active_session(account_id)
            if stale is not None:
                notice = SessionAlreadyActive(account_id, stale.id or "")
                logger.info("%s", notice)
                await self._ledger.log_session(
                    account_id=account_id,
                    session_id=stale.id,
                    message="Stale session superseded",
                    details={"code": notice.code},
                    correlation_id=correlation_id,
                )
                await self._close_locked(stale, CloseReason.SUPERSEDED, correlation_id)

            session = UsageSession(
                account_id=account_id,
                language_from=language_from,
                language_to=language_to,
                seconds_used=MINIMUM_SESSION_SECONDS,
                credits_used=MINIMUM_SESSION_CHARGE,
                credits_charged=MINIMUM_SESSION_CHARGE,
                started_at=self._now(),
            )
            session = await self._db.add_session(session)

        await best_effort(
            self._ledger.log_session(
                account_id=account_id,
                session_id=session.id,
                message="Session started",
                details={"language_from": language_from, "language_to": language_to},
                correlation_id=correlation_id,
            )
        )
        return session.handle()

    async def get_active(self, account_id: str) -> Optional[SessionHandle]:
        session = await self._db.get_active_session(account_id)
        return session.handle() if session else None

    async def get_session(self, session: SessionRef) -> UsageSession:
        session_id = self._session_id(session)
        record = await self._db.get_session(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        return record

    async def record_tick(
        self, session: SessionRef, seconds: int, credits: Decimal
    ) -> Optional[UsageSession]:
        """Advance an active session by one tick; ``None`` once it is closed."""
        return await self._db.record_session_tick(
            self._session_id(session), seconds, to_credits(credits)
        )

    async def attach_room_token(self, session: SessionRef, room_token: str) -> None:
        await self._db.set_session_room_token(self._session_id(session), room_token)

    async def close(
        self,
        session: SessionRef,
        reason: CloseReason,
        *,
        correlation_id: str | None = None,
    ) -> FinalUsage:
        """
        Finalize a session. Closing an already-closed session returns the
        usage recorded when it was first closed.
        """
        record = await self.get_session(session)
        if not record.is_active:
            return record.final_usage()
        async with self._locks[record.account_id]:
            record = await self.get_session(record.id or "")
            if not record.is_active:
                return record.final_usage()
            return await self._close_locked(record, reason, correlation_id)

    def unconfirmed_final_usage(
        self, session: Union[SessionHandle, UsageSession], reason: CloseReason
    ) -> FinalUsage:
        """
        Usage as last known in memory, for when the store cannot confirm a
        close. The stored session stays active until a later close or
        supersede succeeds.
        """
        if isinstance(session, UsageSession):
            session_id = session.id or ""
            charged = session.credits_charged
        else:
            session_id = session.session_id
            charged = session.credits_used
        return FinalUsage(
            session_id=session_id,
            account_id=session.account_id,
            seconds_used=session.seconds_used,
            credits_used=session.credits_used,
            credits_charged=charged,
            reason=reason,
            started_at=session.started_at,
            ended_at=self._now(),
        )

    async def get_session_history(
        self, account_id: str, limit: Optional[int] = None
    ) -> List[UsageSession]:
        return list(await self._db.get_sessions(account_id, limit=limit))

    async def get_credits_used_today(self, account_id: str) -> Decimal:
        now = self._now()
        day_start = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo or timezone.utc)
        total = ZERO
        for session in await self._db.get_sessions(account_id):
            if session.started_at < day_start:
                break
            total += session.credits_used
        return to_credits(total)

    async def _close_locked(
        self,
        record: UsageSession,
        reason: CloseReason,
        correlation_id: str | None,
    ) -> FinalUsage:
        ended_at = self._now()
        # Wall-clock time covers ticks missed while the process was suspended.
        # Only the historical record grows; the ledger keeps what ticks charged.
        elapsed = whole_seconds_between(record.started_at, ended_at)
        seconds_used = max(record.seconds_used, elapsed)
        credits_used = max(
            record.credits_used, credits_for_seconds(seconds_used), MINIMUM_SESSION_CHARGE
        )

        closed = await self._db.close_session(
            record.id or "",
            ended_at=ended_at,
            reason=reason,
            seconds_used=seconds_used,
            credits_used=credits_used,
        )
        if closed is None:
            # Closed by another process between our read and write
            return (await self.get_session(record.id or "")).final_usage()

        final = closed.final_usage()
        await best_effort(
            self._ledger.log_session(
                account_id=final.account_id,
                session_id=final.session_id,
                message="Session closed",
                details={
                    "reason": final.reason.value,
                    "seconds_used": final.seconds_used,
                    "credits_used": str(final.credits_used),
                    "credits_charged": str(final.credits_charged),
                },
                correlation_id=correlation_id,
            )
        )
        logger.info(
            "Session %s closed (%s): %ss, %s credits used, %s charged",
            final.session_id,
            final.reason.value,
            final.seconds_used,
            final.credits_used,
            final.credits_charged,
        )
        return final

    @staticmethod
    def _session_id(session: SessionRef) -> str:
        if isinstance(session, SessionHandle):
            return session.session_id
        if isinstance(session, UsageSession):
            return session.id or ""
        return session
