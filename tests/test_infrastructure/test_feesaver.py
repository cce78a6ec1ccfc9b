"""Tests for the FeeSaver energy market client, against an httpx MockTransport."""

from __future__ import annotations

from decimal import Decimal

import httpx
import pytest

from multisig_escrow.infrastructure.ledger.feesaver import FeeSaverMarket

ADDRESS = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"


def _market(handler, **kwargs) -> FeeSaverMarket:
    client = httpx.AsyncClient(base_url="https://feesaver.test", transport=httpx.MockTransport(handler))
    options = {"retry_wait_seconds": 0, "delegation_wait_seconds": 0, **kwargs}
    return FeeSaverMarket("https://feesaver.test", "secret-token", client=client, **options)


class TestRent:
    @pytest.mark.asyncio
    async def test_filled_order(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.path == "/balance":
                return httpx.Response(200, json={"balance_trx": 120.5})
            return httpx.Response(
                200,
                json={"status": "Filled", "order_id": 991, "volume": 65000, "summa": 5.85},
            )

        result = await _market(handler).rent(ADDRESS, 65000, "1h")

        assert result.success
        assert result.cost == Decimal("5.85")
        assert result.units == 65000
        assert result.order_id == "991"
        order = seen[-1]
        assert order.url.params["target"] == ADDRESS
        assert order.url.params["volume"] == "65000"
        assert order.url.params["days"] == "1h"
        assert order.url.params["token"] == "secret-token"

    @pytest.mark.asyncio
    async def test_pending_order_is_retried(self) -> None:
        statuses = iter(["Created", "Filled"])

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/balance":
                return httpx.Response(200, json={"balance_trx": 50})
            return httpx.Response(200, json={"status": next(statuses), "order_id": 7, "summa": 3})

        result = await _market(handler).rent(ADDRESS, 65000, "1h")
        assert result.success
        assert result.cost == Decimal("3")

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self) -> None:
        orders = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal orders
            if request.url.path == "/balance":
                return httpx.Response(200, json={"balance_trx": 50})
            orders += 1
            return httpx.Response(200, json={"err": "no energy available"})

        result = await _market(handler, attempts=2).rent(ADDRESS, 65000, "1h")

        assert not result.success
        assert "no energy available" in result.error
        assert orders == 2

    @pytest.mark.asyncio
    async def test_low_market_balance(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/balance"
            return httpx.Response(200, json={"balance_trx": 2})

        result = await _market(handler).rent(ADDRESS, 65000, "1h")
        assert not result.success
        assert "too low" in result.error

    @pytest.mark.asyncio
    async def test_unreachable_market(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = await _market(handler).rent(ADDRESS, 65000, "1h")
        assert not result.success

    @pytest.mark.asyncio
    async def test_malformed_balance_response(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/balance":
                return httpx.Response(200, json={"balance": 50})
            raise AssertionError("no order expected")

        result = await _market(handler).rent(ADDRESS, 65000, "1h")

        assert not result.success
        assert "balance" in result.error

    @pytest.mark.asyncio
    async def test_null_balance(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"balance_trx": None})

        result = await _market(handler).rent(ADDRESS, 65000, "1h")
        assert not result.success

    @pytest.mark.asyncio
    async def test_unreadable_filled_order(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/balance":
                return httpx.Response(200, json={"balance_trx": 50})
            return httpx.Response(
                200, json={"status": "Filled", "order_id": 12, "summa": "n/a", "volume": 65000}
            )

        result = await _market(handler).rent(ADDRESS, 65000, "1h")

        assert not result.success
        assert result.cost == Decimal("0")
        assert "unreadable order" in result.error


class TestEnabled:
    def test_missing_api_key_disables_market(self) -> None:
        market = FeeSaverMarket("https://feesaver.test", "", enabled=True)
        assert market.enabled is False

    @pytest.mark.asyncio
    async def test_disabled_market_never_calls_out(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        result = await _market(handler, enabled=False).rent(ADDRESS, 65000, "1h")
        assert not result.success
        assert result.error == "market disabled"
