from __future__ import annotations

import asyncio
import json
from decimal import Decimal

import pytest

from usage_metering.container import build_services
from usage_metering.db.memory import InMemoryDBManager
from usage_metering.errors import (
    AccountNotFound,
    InsufficientFunds,
    TransportDisconnected,
)
from usage_metering.models.notification import NotificationType
from usage_metering.models.session import CloseReason
from usage_metering.models.transaction import TransactionType
from usage_metering.services.transport import ConnectionState, TransportEvent

from conftest import FlakyDBManager, add_funded_account, make_settings


@pytest.mark.asyncio
async def test_start_charges_minimum_and_ticks_debit(services):
    await add_funded_account(services, "acct-1", "10.00")
    engine = services.engine

    handle = await engine.start_session("acct-1", "en", "es")
    assert await engine.get_balance("acct-1") == Decimal("9.95")
    assert handle.seconds_used == 3

    assert await engine.apply_tick(handle) is True
    assert await engine.apply_tick(handle) is True

    assert await engine.get_balance("acct-1") == Decimal("9.85")
    active = await engine.get_active_session("acct-1")
    assert active.seconds_used == 9
    assert active.credits_used == Decimal("0.15")


@pytest.mark.asyncio
async def test_depletion_after_last_paid_tick(services):
    await add_funded_account(services, "acct-1", "0.12")
    engine = services.engine
    notices = []
    engine.on_depleted(notices.append)

    handle = await engine.start_session("acct-1", "en", "es")
    assert await engine.get_balance("acct-1") == Decimal("0.07")

    assert await engine.apply_tick(handle) is False

    assert await engine.get_balance("acct-1") == Decimal("0.02")
    assert await engine.get_active_session("acct-1") is None
    assert len(notices) == 1
    final = notices[0].final_usage
    assert final.reason == CloseReason.DEPLETED
    assert final.seconds_used == 6
    assert final.credits_used == Decimal("0.10")
    assert notices[0].balance == Decimal("0.02")

    types = [m["type"] for m in services.queue.messages]
    assert NotificationType.CREDITS_DEPLETED.value in types


@pytest.mark.asyncio
async def test_start_with_exact_minimum_leaves_zero(services):
    await add_funded_account(services, "acct-1", "0.05")
    engine = services.engine

    handle = await engine.start_session("acct-1", "en", "es")
    assert await engine.get_balance("acct-1") == Decimal("0.00")

    # next tick cannot be paid for
    assert await engine.apply_tick(handle) is False
    record = await services.registry.get_session(handle)
    assert record.end_reason == CloseReason.DEPLETED
    assert record.seconds_used == 3
    assert record.credits_used == Decimal("0.05")
    assert await engine.get_balance("acct-1") == Decimal("0.00")


@pytest.mark.asyncio
async def test_start_below_minimum_is_refused(services):
    await add_funded_account(services, "acct-1", "0.04")

    with pytest.raises(InsufficientFunds, match="insufficient credits"):
        await services.engine.start_session("acct-1", "en", "es")

    assert await services.engine.get_balance("acct-1") == Decimal("0.04")
    assert await services.engine.get_active_session("acct-1") is None


@pytest.mark.asyncio
async def test_start_for_unknown_account(services):
    with pytest.raises(AccountNotFound):
        await services.engine.start_session("ghost", "en", "es")


@pytest.mark.asyncio
@pytest.mark.parametrize("ticks", [0, 1, 5, 20])
async def test_seconds_and_credits_follow_tick_count(services, ticks):
    await add_funded_account(services, "acct-1", "10.00")
    engine = services.engine

    handle = await engine.start_session("acct-1", "en", "es")
    for _ in range(ticks):
        assert await engine.apply_tick(handle) is True
    final = await engine.stop_session(handle)

    expected_credits = Decimal("0.05") * (ticks + 1)
    assert final.seconds_used == 3 * (ticks + 1)
    assert final.credits_used == expected_credits
    assert final.credits_charged == expected_credits
    assert final.reason == CloseReason.USER_STOP
    assert await engine.get_balance("acct-1") == Decimal("10.00") - expected_credits


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_stops_charging(services):
    await add_funded_account(services, "acct-1", "5.00")
    engine = services.engine
    handle = await engine.start_session("acct-1", "en", "es")

    first = await engine.stop_session(handle)
    second = await engine.stop_session_by_id(handle.session_id)
    assert first == second

    assert await engine.apply_tick(handle) is False
    assert await engine.get_balance("acct-1") == Decimal("4.95")


@pytest.mark.asyncio
async def test_second_start_supersedes_first(services):
    await add_funded_account(services, "acct-1", "1.00")
    engine = services.engine

    first = await engine.start_session("acct-1", "en", "es")
    second = await engine.start_session("acct-1", "en", "fr")

    stale = await services.registry.get_session(first)
    assert stale.end_reason == CloseReason.SUPERSEDED
    assert (await engine.get_active_session("acct-1")).session_id == second.session_id
    assert await engine.get_balance("acct-1") == Decimal("0.90")
    assert await engine.apply_tick(first) is False


@pytest.mark.asyncio
async def test_store_outage_is_retried_once(flaky_services):
    services = flaky_services
    await add_funded_account(services, "acct-1", "2.00")
    handle = await services.engine.start_session("acct-1", "en", "es")

    services.db.fail_balance_updates = 1
    assert await services.engine.apply_tick(handle) is True
    assert await services.engine.get_balance("acct-1") == Decimal("1.90")


@pytest.mark.asyncio
async def test_persistent_store_outage_stalls_session(flaky_services):
    services = flaky_services
    await add_funded_account(services, "acct-1", "2.00")
    notices = []
    services.engine.on_depleted(notices.append)
    handle = await services.engine.start_session("acct-1", "en", "es")

    services.db.fail_balance_updates = 2
    assert await services.engine.apply_tick(handle) is False

    record = await services.registry.get_session(handle)
    assert record.end_reason == CloseReason.STALLED
    assert record.credits_charged == Decimal("0.05")
    assert [n.reason for n in notices] == [CloseReason.STALLED]


def metered_flaky_services(tmp_path):
    return build_services(
        make_settings(AUTOSTART_METERING=True, TICK_INTERVAL_SECONDS=60),
        db=FlakyDBManager(),
        ledger_path=tmp_path / "ledger.log",
    )


@pytest.mark.asyncio
async def test_tick_record_outage_is_retried_once(flaky_services):
    services = flaky_services
    await add_funded_account(services, "acct-1", "2.00")
    handle = await services.engine.start_session("acct-1", "en", "es")

    services.db.fail_tick_writes = 1
    assert await services.engine.apply_tick(handle) is True

    assert await services.engine.get_balance("acct-1") == Decimal("1.90")
    active = await services.engine.get_active_session("acct-1")
    assert active.seconds_used == 6
    assert active.credits_used == Decimal("0.10")


@pytest.mark.asyncio
async def test_unrecordable_tick_stalls_session_and_notifies(tmp_path):
    services = metered_flaky_services(tmp_path)
    await add_funded_account(services, "acct-1", "2.00")
    notices = []
    services.engine.on_depleted(notices.append)
    handle = await services.engine.start_session("acct-1", "en", "es")
    assert services.engine.is_metering("acct-1")

    services.db.fail_tick_writes = 2
    assert await services.engine.apply_tick(handle) is False

    # the debit stands even though the session total missed it
    assert await services.engine.get_balance("acct-1") == Decimal("1.90")
    record = await services.registry.get_session(handle)
    assert record.end_reason == CloseReason.STALLED
    assert not services.engine.is_metering("acct-1")
    assert [(n.reason, n.balance) for n in notices] == [
        (CloseReason.STALLED, Decimal("1.90"))
    ]
    assert "Tick charged but not recorded" in (tmp_path / "ledger.log").read_text()


@pytest.mark.asyncio
async def test_depletion_notice_survives_close_outage(tmp_path):
    services = metered_flaky_services(tmp_path)
    await add_funded_account(services, "acct-1", "0.12")
    notices = []
    services.engine.on_depleted(notices.append)
    handle = await services.engine.start_session("acct-1", "en", "es")

    services.db.fail_closes = 2
    assert await services.engine.apply_tick(handle) is False

    assert not services.engine.is_metering("acct-1")
    assert len(notices) == 1
    assert notices[0].reason == CloseReason.DEPLETED
    assert notices[0].balance == Decimal("0.02")
    assert notices[0].final_usage.seconds_used == 6
    assert notices[0].final_usage.credits_charged == Decimal("0.10")

    # the store never confirmed the close; a later stop finalizes it
    assert await services.engine.get_active_session("acct-1") is not None
    final = await services.engine.stop_session(handle)
    assert final.credits_charged == Decimal("0.10")
    assert await services.engine.get_balance("acct-1") == Decimal("0.02")


@pytest.mark.asyncio
async def test_close_outage_on_insufficient_funds_still_notifies(flaky_services):
    services = flaky_services
    await add_funded_account(services, "acct-1", "0.05")
    notices = []
    services.engine.on_depleted(notices.append)
    handle = await services.engine.start_session("acct-1", "en", "es")

    services.db.fail_closes = 2
    assert await services.engine.apply_tick(handle) is False

    assert [(n.reason, n.balance) for n in notices] == [
        (CloseReason.DEPLETED, Decimal("0.00"))
    ]
    assert await services.engine.get_balance("acct-1") == Decimal("0.00")


@pytest.mark.asyncio
async def test_session_start_survives_audit_outage(flaky_services):
    services = flaky_services
    await add_funded_account(services, "acct-1", "2.00")
    services.db.fail_audit_messages = {"Session started"}

    handle = await services.engine.start_session("acct-1", "en", "es")

    assert await services.engine.get_balance("acct-1") == Decimal("1.95")
    active = await services.engine.get_active_session("acct-1")
    assert active.session_id == handle.session_id
    txs = list(await services.ledger_store.get_transactions("acct-1"))
    assert [tx.transaction_type for tx in txs] == [TransactionType.SESSION_START]


@pytest.mark.asyncio
async def test_session_stop_survives_audit_outage(flaky_services):
    services = flaky_services
    await add_funded_account(services, "acct-1", "2.00")
    handle = await services.engine.start_session("acct-1", "en", "es")
    services.db.fail_audit_messages = {"Session closed"}

    final = await services.engine.stop_session(handle)

    assert final.reason == CloseReason.USER_STOP
    assert await services.engine.get_active_session("acct-1") is None


@pytest.mark.asyncio
async def test_close_outage_on_stop_is_retried_once(flaky_services):
    services = flaky_services
    await add_funded_account(services, "acct-1", "2.00")
    handle = await services.engine.start_session("acct-1", "en", "es")

    services.db.fail_closes = 1
    final = await services.engine.stop_session(handle)

    assert final.reason == CloseReason.USER_STOP
    assert await services.engine.get_active_session("acct-1") is None


@pytest.mark.asyncio
async def test_transport_disconnect_finalizes_and_blocks_start(services):
    await add_funded_account(services, "acct-1", "2.00")
    engine = services.engine
    handle = await engine.start_session("acct-1", "en", "es")

    await services.transport.report_disconnected("acct-1")

    record = await services.registry.get_session(handle)
    assert record.end_reason == CloseReason.DISCONNECTED
    with pytest.raises(TransportDisconnected):
        await engine.start_session("acct-1", "en", "es")

    await services.transport.publish(
        TransportEvent(account_id="acct-1", state=ConnectionState.CONNECTED, room_token="room-2")
    )
    again = await engine.start_session("acct-1", "en", "es")
    assert again.session_id != handle.session_id


@pytest.mark.asyncio
async def test_connected_event_attaches_room_token(services):
    await add_funded_account(services, "acct-1", "2.00")
    handle = await services.engine.start_session("acct-1", "en", "es", room_token="room-1")
    assert (await services.registry.get_session(handle)).room_token == "room-1"

    await services.transport.publish(
        TransportEvent(account_id="acct-1", state=ConnectionState.CONNECTED, room_token="room-9")
    )

    assert (await services.registry.get_session(handle)).room_token == "room-9"


@pytest.mark.asyncio
async def test_low_credit_notification_fires_once(services):
    await add_funded_account(services, "acct-1", "1.25")
    engine = services.engine
    handle = await engine.start_session("acct-1", "en", "es")

    for _ in range(6):
        await engine.apply_tick(handle)

    low = [
        m for m in services.queue.messages
        if m["type"] == NotificationType.LOW_CREDITS.value
    ]
    assert len(low) == 1
    assert low[0]["payload"]["balance"] == "1.00"


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_billing(services):
    await add_funded_account(services, "acct-1", "0.10")
    received = []

    def broken(_notice):
        raise RuntimeError("listener down")

    async def working(notice):
        received.append(notice.session_id)

    services.engine.on_depleted(broken)
    unsubscribe = services.engine.on_depleted(working)
    handle = await services.engine.start_session("acct-1", "en", "es")

    assert await services.engine.apply_tick(handle) is False
    assert received == [handle.session_id]

    unsubscribe()


@pytest.mark.asyncio
async def test_metering_runs_on_its_own(tmp_path):
    services = build_services(
        make_settings(AUTOSTART_METERING=True, TICK_INTERVAL_SECONDS=0.01),
        db=InMemoryDBManager(),
        ledger_path=tmp_path / "ledger.log",
    )
    await add_funded_account(services, "acct-1", "0.12")
    depleted = asyncio.Event()
    notices = []

    def on_depleted(notice):
        notices.append(notice)
        depleted.set()

    services.engine.on_depleted(on_depleted)
    await services.engine.start_session("acct-1", "en", "es")
    assert services.engine.is_metering("acct-1")

    await asyncio.wait_for(depleted.wait(), timeout=2)

    assert notices[0].final_usage.seconds_used == 6
    assert notices[0].final_usage.credits_charged == Decimal("0.10")
    assert await services.engine.get_balance("acct-1") == Decimal("0.02")
    await asyncio.sleep(0.05)
    assert not services.engine.is_metering("acct-1")


@pytest.mark.asyncio
async def test_stop_while_metering(tmp_path):
    services = build_services(
        make_settings(AUTOSTART_METERING=True, TICK_INTERVAL_SECONDS=0.01),
        db=InMemoryDBManager(),
        ledger_path=tmp_path / "ledger.log",
    )
    await add_funded_account(services, "acct-1", "10.00")
    handle = await services.engine.start_session("acct-1", "en", "es")
    await asyncio.sleep(0.05)

    final = await services.engine.stop_session(handle)
    balance = await services.engine.get_balance("acct-1")
    await asyncio.sleep(0.05)

    assert not services.engine.is_metering("acct-1")
    assert await services.engine.get_balance("acct-1") == balance
    assert balance == Decimal("10.00") - final.credits_charged


@pytest.mark.asyncio
async def test_shutdown_closes_metered_sessions(tmp_path):
    services = build_services(
        make_settings(AUTOSTART_METERING=True, TICK_INTERVAL_SECONDS=60),
        db=InMemoryDBManager(),
        ledger_path=tmp_path / "ledger.log",
    )
    await add_funded_account(services, "acct-1", "3.00")
    await add_funded_account(services, "acct-2", "3.00")
    await services.engine.start_session("acct-1", "en", "es")
    await services.engine.start_session("acct-2", "en", "es")

    finals = await services.engine.shutdown()

    assert sorted(f.account_id for f in finals) == ["acct-1", "acct-2"]
    assert all(f.reason == CloseReason.SHUTDOWN for f in finals)
    assert await services.engine.get_active_session("acct-1") is None

    last = json.loads((tmp_path / "ledger.log").read_text().splitlines()[-1])
    assert last["event_type"] == "system"
    assert len(last["details"]["sessions_closed"]) == 2


class GatedDBManager(InMemoryDBManager):
    """Holds debits at ``gate`` once armed, so a tick can be caught in flight."""

    def __init__(self) -> None:
        super().__init__()
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    async def apply_balance_delta(self, account_id, delta, **kwargs):
        if self.gate is not None and delta < 0:
            self.entered.set()
            await self.gate.wait()
        return await super().apply_balance_delta(account_id, delta, **kwargs)


@pytest.mark.asyncio
async def test_concurrent_starts_leave_one_metered_session(tmp_path):
    services = build_services(
        make_settings(AUTOSTART_METERING=True, TICK_INTERVAL_SECONDS=0.01),
        db=InMemoryDBManager(),
        ledger_path=tmp_path / "ledger.log",
    )
    await add_funded_account(services, "acct-1", "10.00")

    first, second = await asyncio.gather(
        services.engine.start_session("acct-1", "en", "es"),
        services.engine.start_session("acct-1", "en", "es"),
    )
    await asyncio.sleep(0.05)

    active = await services.engine.get_active_session("acct-1")
    assert active.session_id in {first.session_id, second.session_id}
    assert services.engine.is_metering("acct-1")

    await services.engine.stop_session(active)
    await asyncio.sleep(0.03)

    history = await services.registry.get_session_history("acct-1")
    assert len(history) == 2
    assert not any(s.is_active for s in history)
    assert not services.engine.is_metering("acct-1")
    charged = sum((s.credits_charged for s in history), Decimal("0"))
    assert await services.engine.get_balance("acct-1") == Decimal("10.00") - charged


@pytest.mark.asyncio
async def test_stop_waits_for_tick_in_flight(tmp_path):
    db = GatedDBManager()
    services = build_services(
        make_settings(AUTOSTART_METERING=True, TICK_INTERVAL_SECONDS=0.01),
        db=db,
        ledger_path=tmp_path / "ledger.log",
    )
    await add_funded_account(services, "acct-1", "10.00")
    handle = await services.engine.start_session("acct-1", "en", "es")

    db.gate = asyncio.Event()
    await asyncio.wait_for(db.entered.wait(), timeout=2)
    stopping = asyncio.create_task(services.engine.stop_session(handle))
    await asyncio.sleep(0.02)
    assert not stopping.done()

    db.gate.set()
    final = await asyncio.wait_for(stopping, timeout=2)

    assert final.reason == CloseReason.USER_STOP
    assert final.credits_charged == Decimal("0.10")
    assert await services.engine.get_balance("acct-1") == Decimal("9.90")
    await asyncio.sleep(0.03)
    assert await services.engine.get_balance("acct-1") == Decimal("9.90")
