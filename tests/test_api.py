from __future__ import annotations

from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from usage_metering.api.app import create_app

from conftest import add_funded_account


ACCOUNT = "acct-1"
AUTH = {"X-Account-Id": ACCOUNT}
PAYMENT_SECRET = "whsec-test"
PROCESSOR = {"X-Payment-Secret": PAYMENT_SECRET}


@pytest_asyncio.fixture
async def client(services):
    app = create_app(services, payment_secret=PAYMENT_SECRET)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_account_signup_and_balance(client):
    response = await client.post(
        "/metering/accounts", json={"account_id": ACCOUNT, "name": "Ana"}, headers=AUTH
    )
    assert response.status_code == 200
    assert Decimal(response.json()["credits"]) == Decimal("10.00")

    response = await client.get(f"/metering/accounts/{ACCOUNT}/balance", headers=AUTH)
    assert response.status_code == 200
    assert Decimal(response.json()["credits"]) == Decimal("10.00")


@pytest.mark.asyncio
async def test_requests_without_caller_are_rejected(client):
    response = await client.get(f"/metering/accounts/{ACCOUNT}/balance")
    assert response.status_code == 401
    assert response.json()["code"] == "NOT_AUTHENTICATED"

    response = await client.get(
        f"/metering/accounts/{ACCOUNT}/balance", headers={"X-Account-Id": "someone-else"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_session_lifecycle(client, services):
    await add_funded_account(services, ACCOUNT, "10.00")

    response = await client.post(
        "/metering/sessions",
        json={"account_id": ACCOUNT, "language_from": "en", "language_to": "es"},
        headers=AUTH,
    )
    assert response.status_code == 200
    session_id = response.json()["session_id"]

    response = await client.get(f"/metering/accounts/{ACCOUNT}/active-session", headers=AUTH)
    assert response.json()["session_id"] == session_id

    response = await client.post(f"/metering/sessions/{session_id}/stop", headers=AUTH)
    assert response.status_code == 200
    body = response.json()
    assert body["seconds_used"] == 3
    assert Decimal(body["credits_used"]) == Decimal("0.05")
    assert body["reason"] == "user_stop"

    response = await client.get(f"/metering/accounts/{ACCOUNT}/active-session", headers=AUTH)
    assert response.json() is None

    response = await client.get(f"/metering/accounts/{ACCOUNT}/sessions", headers=AUTH)
    assert [s["session_id"] for s in response.json()] == [session_id]

    response = await client.get(f"/metering/accounts/{ACCOUNT}/usage/today", headers=AUTH)
    assert Decimal(response.json()["credits_used"]) == Decimal("0.05")


@pytest.mark.asyncio
async def test_start_without_credits_is_402(client, services):
    await add_funded_account(services, ACCOUNT, "0.04")

    response = await client.post(
        "/metering/sessions",
        json={"account_id": ACCOUNT, "language_from": "en", "language_to": "es"},
        headers=AUTH,
    )

    assert response.status_code == 402
    assert response.json()["code"] == "INSUFFICIENT_CREDITS"


@pytest.mark.asyncio
async def test_purchase_flow(client, services):
    await add_funded_account(services, ACCOUNT, "2.00")

    packages = (await client.get("/metering/packages")).json()
    assert [p["amount_minor_units"] for p in packages] == [150, 400, 700, 1300]

    response = await client.post(
        "/metering/purchases", json={"account_id": ACCOUNT, "package_index": 1}, headers=AUTH
    )
    assert response.status_code == 200
    purchase_id = response.json()["purchase_id"]
    assert response.json()["status"] == "pending"

    response = await client.post(
        f"/metering/purchases/{purchase_id}/complete",
        json={"payment_reference": "ch_1"},
        headers=PROCESSOR,
    )
    assert response.status_code == 200
    assert Decimal(response.json()["credits"]) == Decimal("32.00")

    response = await client.post(
        f"/metering/purchases/{purchase_id}/fail", json={}, headers=PROCESSOR
    )
    assert response.status_code == 400

    history = (await client.get(f"/metering/accounts/{ACCOUNT}/purchases", headers=AUTH)).json()
    assert [p["status"] for p in history] == ["completed"]

    details = (await client.get(f"/metering/accounts/{ACCOUNT}", headers=AUTH)).json()
    assert Decimal(details["account"]["lifetime_credits_purchased"]) == Decimal("30.00")
    assert len(details["recent_purchases"]) == 1


@pytest.mark.asyncio
async def test_invalid_package_and_unknown_purchase(client, services):
    await add_funded_account(services, ACCOUNT, "1.00")

    response = await client.post(
        "/metering/purchases", json={"account_id": ACCOUNT, "package_index": 9}, headers=AUTH
    )
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_PACKAGE"

    response = await client.post(
        "/metering/purchases/nope/complete", json={}, headers=PROCESSOR
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_purchase_outcomes_require_processor_secret(client, services):
    await add_funded_account(services, ACCOUNT, "2.00")
    purchase = await services.purchases.create_purchase(ACCOUNT, 0)

    for headers in ({}, AUTH, {"X-Payment-Secret": "guess"}):
        response = await client.post(
            f"/metering/purchases/{purchase.id}/complete", json={}, headers=headers
        )
        assert response.status_code == 401
        assert response.json()["code"] == "NOT_AUTHENTICATED"

    response = await client.post(
        f"/metering/purchases/{purchase.id}/fail", json={}, headers=AUTH
    )
    assert response.status_code == 401

    assert await services.ledger_store.read(ACCOUNT) == Decimal("2.00")
    stored = await services.purchases.get_purchase(purchase.id)
    assert stored.status.value == "pending"


@pytest.mark.asyncio
async def test_purchase_outcomes_rejected_when_no_secret_configured(services):
    await add_funded_account(services, ACCOUNT, "2.00")
    purchase = await services.purchases.create_purchase(ACCOUNT, 0)
    app = create_app(services, payment_secret="")
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        response = await c.post(
            f"/metering/purchases/{purchase.id}/complete",
            json={},
            headers={"X-Payment-Secret": ""},
        )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_transport_disconnect_event_stops_session(client, services):
    await add_funded_account(services, ACCOUNT, "1.00")
    handle = await services.engine.start_session(ACCOUNT, "en", "es")

    response = await client.post(
        "/metering/transport/events", json={"account_id": ACCOUNT, "state": "disconnected"}
    )
    assert response.status_code == 202

    record = await services.registry.get_session(handle)
    assert record.end_reason.value == "disconnected"


@pytest.mark.asyncio
async def test_default_language_update(client, services):
    await add_funded_account(services, ACCOUNT, "1.00")

    response = await client.put(
        f"/metering/accounts/{ACCOUNT}/language", json={"language": "fr"}, headers=AUTH
    )

    assert response.status_code == 200
    assert response.json()["default_language"] == "fr"


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.json() == {"status": "ok"}
