"""Tests for TronLedgerClient error handling, with tronpy calls mocked out."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from tronpy.exceptions import AddressNotFound, ApiError, TransactionNotFound

from multisig_escrow.domain.exceptions import LedgerError
from multisig_escrow.infrastructure.ledger.tron import TronLedgerClient

USDT_CONTRACT = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"


@pytest_asyncio.fixture
async def client():
    ledger = TronLedgerClient(
        network="nile",
        api_key="",
        usdt_contract=USDT_CONTRACT,
        fee_limit_sun=100_000_000,
        confirmation_timeout_seconds=1,
    )
    yield ledger
    await ledger.aclose()


def _signed_tx(wait_side_effect=None, wait_result=None) -> MagicMock:
    ret = MagicMock()
    ret.txid = "ab" * 32
    ret.wait = AsyncMock(side_effect=wait_side_effect, return_value=wait_result)
    signed = MagicMock()
    signed.txid = ret.txid
    signed.broadcast = AsyncMock(return_value=ret)
    return signed


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_confirmation_timeout_is_a_failed_receipt(self, client) -> None:
        signed = _signed_tx(wait_side_effect=TransactionNotFound("not confirmed in time"))

        receipt = await client.broadcast(signed)

        assert receipt.success is False
        assert receipt.tx_hash == signed.txid
        assert "not confirmed" in receipt.error

    @pytest.mark.asyncio
    async def test_node_rejection_is_a_failed_receipt(self, client) -> None:
        signed = _signed_tx()
        signed.broadcast.side_effect = ApiError("SIGERROR")

        receipt = await client.broadcast(signed)

        assert receipt.success is False
        assert "SIGERROR" in receipt.error

    @pytest.mark.asyncio
    async def test_reverted_transfer(self, client) -> None:
        signed = _signed_tx(wait_result={"receipt": {"result": "OUT_OF_ENERGY"}})

        receipt = await client.broadcast(signed)

        assert receipt.success is False
        assert receipt.error == "OUT_OF_ENERGY"

    @pytest.mark.asyncio
    async def test_confirmed_transfer(self, client) -> None:
        signed = _signed_tx(wait_result={"receipt": {"result": "SUCCESS"}})

        receipt = await client.broadcast(signed)

        assert receipt.success is True
        assert receipt.tx_hash == signed.txid


class TestQueries:
    @pytest.mark.asyncio
    async def test_unactivated_account_has_zero_trx(self, client) -> None:
        client._client.get_account_balance = AsyncMock(side_effect=AddressNotFound("account not found"))

        assert await client.get_balance("TAddr", "TRX") == Decimal("0")

    @pytest.mark.asyncio
    async def test_node_error_becomes_ledger_error(self, client, monkeypatch) -> None:
        monkeypatch.setattr(
            client, "_query_balance", AsyncMock(side_effect=ApiError("node unavailable"))
        )

        with pytest.raises(LedgerError, match="node unavailable"):
            await client.get_balance("TAddr", "USDT")

    @pytest.mark.asyncio
    async def test_resource_query_failure_reports_none_available(self, client) -> None:
        client._client.get_account_resource = AsyncMock(side_effect=ApiError("timeout"))

        assert await client.available_resource("TAddr") == 0
