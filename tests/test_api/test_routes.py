"""HTTP-level tests: routes, schemas and the error middleware.

The app is built around the test runtime, so there is no lifespan, no
PostgreSQL and no Redis.
"""

from __future__ import annotations

import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from escrow_engine.main import create_app
from escrow_engine.mcp_server import tools

BUYER = "buyer-1"
SELLER = "seller-1"
ARBITER = "arbiter-1"
HUNDRED = 100_000_000


@pytest_asyncio.fixture
async def client(runtime):
    app = create_app(runtime)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    tools.bind_runtime(None)


async def funded_accounts(client: AsyncClient) -> None:
    for owner in (BUYER, SELLER):
        resp = await client.post("/api/v1/accounts", json={"owner_id": owner, "currency": "USDT"})
        assert resp.status_code == 201
    resp = await client.post(
        f"/api/v1/accounts/{BUYER}/USDT/deposit", json={"amount": 10 * HUNDRED}
    )
    assert resp.status_code == 200


async def held_contract(client: AsyncClient) -> str:
    resp = await client.post(
        "/api/v1/escrow",
        json={
            "depositor_id": BUYER,
            "beneficiary_id": SELLER,
            "currency": "USDT",
            "amount": HUNDRED,
            "required_confirmations": 1,
        },
    )
    assert resp.status_code == 201
    contract_id = resp.json()["id"]
    await client.post(f"/api/v1/escrow/{contract_id}/deposit", json={"observed_amount": HUNDRED})
    resp = await client.post(
        f"/api/v1/escrow/{contract_id}/confirmations",
        json={"observation_id": "tx-1", "height": 1},
    )
    assert resp.json()["status"] == "HELD"
    return contract_id


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client) -> None:
        resp = await client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["database"] == "healthy"
        assert body["redis"] == "not configured"
        assert "X-Request-ID" in resp.headers

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client) -> None:
        resp = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"


class TestAccounts:
    @pytest.mark.asyncio
    async def test_balance_and_entries(self, client) -> None:
        await funded_accounts(client)

        resp = await client.get(f"/api/v1/accounts/{BUYER}/USDT")
        assert resp.status_code == 200
        body = resp.json()
        assert (body["available"], body["escrow"], body["pending"]) == (10 * HUNDRED, 0, 0)
        assert body["total"] == 10 * HUNDRED

        entries = (await client.get(f"/api/v1/accounts/{BUYER}/USDT/entries")).json()
        assert [(e["sequence"], e["delta"], e["bucket"]) for e in entries] == [
            (1, 10 * HUNDRED, "available")
        ]

    @pytest.mark.asyncio
    async def test_transfer_and_withdraw(self, client) -> None:
        await funded_accounts(client)
        resp = await client.post(
            "/api/v1/accounts/transfer",
            json={"from_owner": BUYER, "to_owner": SELLER, "currency": "USDT", "amount": 500},
        )
        assert resp.status_code == 200
        assert resp.json()["target"]["available"] == 500

        resp = await client.post(f"/api/v1/accounts/{SELLER}/USDT/withdraw", json={"amount": 501})
        assert resp.status_code == 422
        assert resp.json()["error"] == "INSUFFICIENT_FUNDS"

    @pytest.mark.asyncio
    async def test_reconcile(self, client) -> None:
        await funded_accounts(client)
        resp = await client.post(f"/api/v1/accounts/{BUYER}/usdt/reconcile")
        assert resp.json() == {
            "owner_id": BUYER,
            "currency": "USDT",
            "in_sync": True,
            "drift": None,
        }

    @pytest.mark.asyncio
    async def test_unknown_account(self, client) -> None:
        resp = await client.get("/api/v1/accounts/nobody/USDT")
        assert resp.status_code == 404
        assert resp.json()["error"] == "ACCOUNT_NOT_FOUND"


class TestEscrowFlow:
    @pytest.mark.asyncio
    async def test_release_flow(self, client) -> None:
        await funded_accounts(client)
        contract_id = await held_contract(client)

        resp = await client.post(
            f"/api/v1/escrow/{contract_id}/release", json={"requested_by": BUYER}
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "RELEASED"
        assert body["beneficiary_balance"]["available"] == HUNDRED

        events = (await client.get(f"/api/v1/escrow/{contract_id}/events")).json()
        assert [e["event_type"] for e in events][-2:] == ["RELEASE_REQUESTED", "FUNDS_RELEASED"]
        assert events[0]["metadata"]["amount"] == HUNDRED

        listed = (await client.get("/api/v1/escrow", params={"party": SELLER})).json()
        assert [c["id"] for c in listed] == [contract_id]

    @pytest.mark.asyncio
    async def test_dispute_flow(self, client) -> None:
        await funded_accounts(client)
        contract_id = await held_contract(client)

        resp = await client.post(
            f"/api/v1/escrow/{contract_id}/dispute",
            json={"raised_by": SELLER, "evidence": ["shipping.pdf"], "reason": "shipped"},
        )
        assert resp.status_code == 200
        dispute_id = resp.json()["dispute"]["id"]

        resp = await client.post(
            f"/api/v1/disputes/{dispute_id}/resolve",
            json={"outcome": "split", "arbiter_id": ARBITER, "fraction": "0.5"},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "RESOLVED"

        dispute = (await client.get(f"/api/v1/disputes/{dispute_id}")).json()
        assert dispute["outcome"] == "split"
        assert dispute["released_amount"] == HUNDRED // 2
        assert dispute["refunded_amount"] == HUNDRED // 2


class TestErrors:
    @pytest.mark.asyncio
    async def test_unknown_contract(self, client) -> None:
        resp = await client.get(f"/api/v1/escrow/{uuid.uuid4()}")
        assert resp.status_code == 404
        assert resp.json()["error"] == "CONTRACT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_illegal_transition(self, client) -> None:
        await funded_accounts(client)
        contract_id = await held_contract(client)
        await client.post(f"/api/v1/escrow/{contract_id}/release", json={"requested_by": BUYER})

        resp = await client.post(
            f"/api/v1/escrow/{contract_id}/release", json={"requested_by": BUYER}
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "INVALID_STATE_TRANSITION"

    @pytest.mark.asyncio
    async def test_stale_version(self, client) -> None:
        await funded_accounts(client)
        contract_id = await held_contract(client)
        version = (await client.get(f"/api/v1/escrow/{contract_id}")).json()["version"]

        resp = await client.post(
            f"/api/v1/escrow/{contract_id}/release",
            json={"requested_by": BUYER, "expected_version": version - 1},
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "STALE_CONTRACT_VERSION"

    @pytest.mark.asyncio
    async def test_wrong_party(self, client) -> None:
        await funded_accounts(client)
        contract_id = await held_contract(client)
        resp = await client.post(
            f"/api/v1/escrow/{contract_id}/release", json={"requested_by": SELLER}
        )
        assert resp.status_code == 403
        assert resp.json()["error"] == "UNAUTHORIZED_ACTION"

    @pytest.mark.asyncio
    async def test_same_party_contract(self, client) -> None:
        await funded_accounts(client)
        resp = await client.post(
            "/api/v1/escrow",
            json={"depositor_id": BUYER, "beneficiary_id": BUYER, "currency": "USDT", "amount": 1},
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "INVALID_CONTRACT"

    @pytest.mark.asyncio
    async def test_schema_validation(self, client) -> None:
        resp = await client.post(
            "/api/v1/escrow",
            json={"depositor_id": BUYER, "beneficiary_id": SELLER, "currency": "USDT", "amount": 0},
        )
        assert resp.status_code == 422


class TestMcpTools:
    """The MCP tools share the runtime and render errors as dicts."""

    @pytest.mark.asyncio
    async def test_tool_flow(self, client) -> None:
        await tools.open_account(BUYER, "USDT")
        funded = await tools.fund_account(BUYER, "USDT", "250.5")
        assert funded["available"] == 250_500_000

        created = await tools.create_escrow(BUYER, SELLER, "USDT", "100", required_confirmations=0)
        contract_id = created["id"]
        assert created["status"] == "AWAITING_DEPOSIT"

        held = await tools.report_deposit(contract_id, "100", "USDT")
        assert held["status"] == "HELD"

        status = await tools.check_status(contract_id)
        assert "release_requested" in status["allowed_events"]

        released = await tools.release_funds(contract_id, BUYER)
        assert released["status"] == "RELEASED"
        assert (await tools.get_balance(SELLER, "USDT"))["available"] == HUNDRED

    @pytest.mark.asyncio
    async def test_errors_are_returned(self, client) -> None:
        await tools.open_account(BUYER, "USDT")
        assert (await tools.fund_account(BUYER, "USDT", "0.0000001"))["error"] == "INVALID_AMOUNT"

        result = await tools.check_status(str(uuid.uuid4()))
        assert result["error"] == "CONTRACT_NOT_FOUND"
