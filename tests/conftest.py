from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from usage_metering.config import Settings
from usage_metering.container import MeteringServices, build_services
from usage_metering.db.memory import InMemoryDBManager
from usage_metering.errors import StoreUnavailable
from usage_metering.models.account import Account
from usage_metering.money import to_credits


class FakeClock:
    """Wall clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class FlakyDBManager(InMemoryDBManager):
    """
    In-memory store with injectable outages: the next ``fail_*`` writes of
    each kind raise, and audit entries whose message is in
    ``fail_audit_messages`` always do.
    """

    def __init__(self) -> None:
        super().__init__()
        self.fail_balance_updates = 0
        self.fail_tick_writes = 0
        self.fail_closes = 0
        self.fail_audit_messages: set[str] = set()

    @staticmethod
    def _outage() -> StoreUnavailable:
        return StoreUnavailable("simulated store outage")

    async def apply_balance_delta(self, account_id, delta, **kwargs):
        if self.fail_balance_updates > 0:
            self.fail_balance_updates -= 1
            raise self._outage()
        return await super().apply_balance_delta(account_id, delta, **kwargs)

    async def record_session_tick(self, session_id, seconds, credits):
        if self.fail_tick_writes > 0:
            self.fail_tick_writes -= 1
            raise self._outage()
        return await super().record_session_tick(session_id, seconds, credits)

    async def close_session(self, session_id, **kwargs):
        if self.fail_closes > 0:
            self.fail_closes -= 1
            raise self._outage()
        return await super().close_session(session_id, **kwargs)

    async def add_ledger_entry(self, entry):
        if entry.message in self.fail_audit_messages:
            raise self._outage()
        return await super().add_ledger_entry(entry)


def make_settings(**overrides) -> Settings:
    values = {
        "MONGO_URI": "",
        "AUTOSTART_METERING": False,
        "SIGNUP_GRANT_CREDITS": Decimal("10.00"),
        "LOW_CREDIT_THRESHOLD": Decimal("1.00"),
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def add_funded_account(
    services: MeteringServices, account_id: str, balance: str
) -> Account:
    return await services.db.add_account(
        Account(id=account_id, credit_balance=to_credits(balance))
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def services(tmp_path, clock) -> MeteringServices:
    return build_services(
        make_settings(),
        db=InMemoryDBManager(),
        ledger_path=tmp_path / "ledger.log",
        now=clock,
    )


@pytest.fixture
def flaky_services(tmp_path, clock) -> MeteringServices:
    return build_services(
        make_settings(),
        db=FlakyDBManager(),
        ledger_path=tmp_path / "ledger.log",
        now=clock,
    )
