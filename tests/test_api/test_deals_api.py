"""HTTP tests for the deal and key-validation routes.

The app runs in-process over httpx's ASGI transport. The lifespan is not
started; the test runtime and SQLite sessions are injected instead.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

import httpx
import pytest
import pytest_asyncio

from multisig_escrow.api.deps import get_db_session
from multisig_escrow.api.middleware import status_for
from multisig_escrow.domain.exceptions import (
    DealNotFoundError,
    InsufficientBalanceError,
    NotAnArbiterError,
    NotAParticipantError,
)
from multisig_escrow.main import create_app

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

BUYER_ID = "buyer-1"
SELLER_ID = "seller-1"


@pytest_asyncio.fixture
async def client(session_factory, runtime) -> AsyncIterator[httpx.AsyncClient]:
    app = create_app()
    app.state.runtime = runtime

    async def _session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = _session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


def _create_payload(harness, **overrides) -> dict:
    payload = {
        "creator_role": "buyer",
        "buyer_id": BUYER_ID,
        "seller_id": SELLER_ID,
        "description": "Landing page copy, two rounds of edits",
        "amount": "100",
        "deadline_hours": 48,
        "commission_type": "buyer",
        "creator_address": harness.buyer_address,
    }
    payload.update(overrides)
    return payload


class TestCreateDeal:
    @pytest.mark.asyncio
    async def test_returns_deal_quote_and_secret(self, client, harness) -> None:
        response = await client.post("/api/v1/deals", json=_create_payload(harness))

        assert response.status_code == 201
        body = response.json()
        assert body["deal"]["deal_id"] == "DL-000001"
        assert body["deal"]["status"] == "waiting_for_seller_wallet"
        assert body["deal"]["multisig_address"]
        assert Decimal(body["quote"]["deposit_required"]) == Decimal("115")
        assert body["secret"]
        assert body["notice"]
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_invalid_payload_is_rejected(self, client, harness) -> None:
        response = await client.post(
            "/api/v1/deals", json=_create_payload(harness, amount="-5")
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_same_buyer_and_seller_is_rejected(self, client, harness) -> None:
        response = await client.post(
            "/api/v1/deals", json=_create_payload(harness, seller_id=BUYER_ID)
        )
        assert response.status_code == 422


class TestDealLifecycle:
    @pytest.mark.asyncio
    async def test_counterparty_wallet_moves_to_deposit(self, client, harness) -> None:
        created = (await client.post("/api/v1/deals", json=_create_payload(harness))).json()
        deal_id = created["deal"]["deal_id"]

        response = await client.post(
            f"/api/v1/deals/{deal_id}/wallet",
            json={"actor_id": SELLER_ID, "address": harness.seller_address},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["deal"]["status"] == "waiting_for_deposit"
        assert body["deal"]["seller_address"] == harness.seller_address
        assert body["secret"] != created["secret"]

    @pytest.mark.asyncio
    async def test_status_lists_allowed_events(self, client, harness) -> None:
        setup = await harness.awaiting_deposit()

        response = await client.get(f"/api/v1/deals/{setup.deal_id}/status")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "waiting_for_deposit"
        assert body["pending_key_validation"] is None
        assert "cancel_deal" in body["allowed_events"]

    @pytest.mark.asyncio
    async def test_invalid_transition_is_conflict(self, client, harness) -> None:
        setup = await harness.awaiting_deposit()

        response = await client.post(
            f"/api/v1/deals/{setup.deal_id}/submit-work", json={"actor_id": SELLER_ID}
        )

        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_STATE_TRANSITION"

    @pytest.mark.asyncio
    async def test_accept_then_key_pays_seller(self, client, harness, ledger) -> None:
        setup = await harness.in_progress()

        accepted = await client.post(
            f"/api/v1/deals/{setup.deal_id}/accept", json={"actor_id": BUYER_ID}
        )
        assert accepted.status_code == 200
        assert accepted.json()["pending_key_validation"] == "seller_payout"

        paid = await client.post(
            "/api/v1/key-validation",
            json={"actor_id": SELLER_ID, "secret": setup.seller_secret},
        )

        assert paid.status_code == 200
        body = paid.json()
        assert body["status"] == "paid"
        assert Decimal(body["payout_amount"]) == Decimal("100")
        assert body["payout_tx_hash"]
        assert ledger.balances[(harness.seller_address, "USDT")] == Decimal("100")

        events = (await client.get(f"/api/v1/deals/{setup.deal_id}/events")).json()
        assert events[-1]["new_status"] == "completed"

    @pytest.mark.asyncio
    async def test_cancel_unfunded_deal(self, client, harness) -> None:
        setup = await harness.create()

        response = await client.post(
            f"/api/v1/deals/{setup.deal_id}/cancel",
            json={"actor_id": BUYER_ID, "reason": "Changed my mind"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"


class TestReadEndpoints:
    @pytest.mark.asyncio
    async def test_unknown_deal_is_not_found(self, client) -> None:
        response = await client.get("/api/v1/deals/DL-999999")

        assert response.status_code == 404
        assert response.json()["error"] == "DEAL_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_list_filters_by_party(self, client, harness) -> None:
        await harness.create()
        await harness.create(buyer_id="buyer-2", seller_id="seller-2")

        response = await client.get("/api/v1/deals", params={"party_id": "buyer-2"})

        assert response.status_code == 200
        assert [d["buyer_id"] for d in response.json()] == ["buyer-2"]

    @pytest.mark.asyncio
    async def test_transactions_show_the_deposit(self, client, harness) -> None:
        setup = await harness.locked()

        response = await client.get(f"/api/v1/deals/{setup.deal_id}/transactions")

        assert response.status_code == 200
        body = response.json()
        assert [t["type"] for t in body] == ["deposit"]
        assert body[0]["explorer_url"]


class TestKeyValidationRoute:
    @pytest.mark.asyncio
    async def test_no_open_gate(self, client) -> None:
        response = await client.post(
            "/api/v1/key-validation", json={"actor_id": SELLER_ID, "secret": "anything"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "no_session"
        assert body["deal_id"] is None

    @pytest.mark.asyncio
    async def test_mismatch_reports_attempts(self, client, harness) -> None:
        setup = await harness.in_progress()
        await harness.accept(setup)

        response = await client.post(
            "/api/v1/key-validation", json={"actor_id": SELLER_ID, "secret": "wrong"}
        )

        body = response.json()
        assert body["status"] == "mismatch"
        assert body["attempts"] == 1
        assert body["deal_id"] == setup.deal_id

    @pytest.mark.asyncio
    async def test_only_arbiters_reopen(self, client, harness) -> None:
        setup = await harness.in_progress()
        await harness.accept(setup)

        response = await client.post(
            f"/api/v1/deals/{setup.deal_id}/key-validation", json={"arbiter_id": BUYER_ID}
        )

        assert response.status_code == 403
        assert response.json()["error"] == "NOT_AN_ARBITER"


class TestErrorMapping:
    def test_status_codes(self) -> None:
        assert status_for(DealNotFoundError("DL-000001")) == 404
        assert status_for(NotAnArbiterError("mallory")) == 403
        assert status_for(NotAParticipantError("DL-000001", "mallory")) == 403
        assert status_for(InsufficientBalanceError("TAddr", "0")) == 502
