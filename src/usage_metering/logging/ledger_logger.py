from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Optional

from ..db.base import BaseDBManager
from ..errors import StoreUnavailable
from ..models.ledger import LedgerEntry, LedgerEventType


logger = logging.getLogger(__name__)


async def best_effort(write: Awaitable[Optional[LedgerEntry]]) -> Optional[LedgerEntry]:
    """Await an audit write for an already committed change; outages are logged, not raised."""
    try:
        return await write
    except StoreUnavailable:
        logger.exception("Audit ledger write failed after commit")
        return None


class LedgerLogger:
    """
    Append-only audit trail for balance mutations and session lifecycle.

    Each event becomes a ``LedgerEntry`` row through the DB manager and is
    mirrored as one JSON line in ``file_path`` for log shippers. The row is
    authoritative; a failing file mirror only produces a warning.
    """

    def __init__(self, db: BaseDBManager, file_path: Path) -> None:
        self._db = db
        self._file_path = file_path
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def file_path(self) -> Path:
        return self._file_path

    async def log_transaction(
        self,
        account_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self._record(
            LedgerEntry(
                event_type=LedgerEventType.TRANSACTION,
                account_id=account_id,
                session_id=session_id,
                message=message,
                details=details,
                correlation_id=correlation_id,
            )
        )

    async def log_session(
        self,
        account_id: str,
        session_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self._record(
            LedgerEntry(
                event_type=LedgerEventType.SESSION,
                account_id=account_id,
                session_id=session_id,
                message=message,
                details=details,
                correlation_id=correlation_id,
            )
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        account_id: Optional[str] = None,
        session_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        logger.warning("%s (account=%s session=%s)", message, account_id, session_id)
        return await self._record(
            LedgerEntry(
                event_type=LedgerEventType.ERROR,
                account_id=account_id,
                session_id=session_id,
                message=message,
                details=details,
                correlation_id=correlation_id,
            )
        )

    async def log_system(self, message: str, details: dict[str, Any]) -> LedgerEntry:
        """Process-level events such as engine shutdown."""
        return await self._record(
            LedgerEntry(event_type=LedgerEventType.SYSTEM, message=message, details=details)
        )

    async def _record(self, entry: LedgerEntry) -> LedgerEntry:
        entry = await self._db.add_ledger_entry(entry)
        self._append_line(entry)
        return entry

    def _append_line(self, entry: LedgerEntry) -> None:
        payload = entry.serialize_for_db()
        payload["event_type"] = entry.event_type.value
        try:
            with self._file_path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(payload, default=str, sort_keys=True) + "\n")
        except OSError as exc:
            logger.warning("Ledger file write failed for %s: %s", self._file_path, exc)
