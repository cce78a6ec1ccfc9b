"""FeeSaver energy market client.

Rents TRON energy for an address so that a TRC-20 transfer does not burn
TRX. The HTTP API is token-in-query:

    GET /balance?token=...                                -> {"balance_trx": 123.4}
    GET /buyenergy?token=...&days=1h&volume=N&target=T... -> {"status": "Filled", ...}

An order that comes back "Created" has not been delegated yet and is
retried. After a filled order the energy takes a few seconds to appear on
chain, so rent() waits for delegation before returning.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from multisig_escrow.domain.ledger import RentalResult
from multisig_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from multisig_escrow.config import Settings

logger = get_logger(__name__)


class MarketError(Exception):
    """The market answered with an error or could not be reached."""


class OrderPendingError(MarketError):
    """The order was accepted but not filled yet."""


class FeeSaverMarket:
    """ResourceMarket implementation backed by api.feesaver.com."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        enabled: bool = True,
        min_balance: Decimal = Decimal("10"),
        attempts: int = 3,
        retry_wait_seconds: float = 5,
        delegation_wait_seconds: float = 10,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._enabled = enabled
        self._min_balance = min_balance
        self._attempts = attempts
        self._retry_wait_seconds = retry_wait_seconds
        self._delegation_wait_seconds = delegation_wait_seconds
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=20.0)

        if enabled and not api_key:
            logger.warning("feesaver.disabled", reason="api key not configured")
            self._enabled = False

    @classmethod
    def from_settings(cls, settings: Settings) -> FeeSaverMarket:
        return cls(
            base_url=settings.resource_market_url,
            api_key=settings.resource_market_api_key,
            enabled=settings.resource_market_enabled,
            min_balance=settings.resource_market_min_balance,
            attempts=settings.resource_rental_attempts,
            retry_wait_seconds=settings.resource_rental_retry_wait_seconds,
            delegation_wait_seconds=settings.resource_delegation_wait_seconds,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def _get(self, path: str, params: dict) -> dict:
        try:
            response = await self._client.get(path, params={"token": self._api_key, **params})
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MarketError(f"{path} request failed: {e}") from e
        if not isinstance(data, dict):
            raise MarketError(f"{path} returned an unexpected payload")
        if response.status_code >= 400 or "err" in data:
            raise MarketError(f"{path} rejected: {data.get('err', response.status_code)}")
        return data

    async def check_balance(self) -> Decimal:
        """Market account balance in TRX."""
        data = await self._get("/balance", {})
        try:
            balance = Decimal(str(data["balance_trx"]))
        except (KeyError, InvalidOperation) as e:
            raise MarketError(f"/balance returned no usable balance: {data}") from e
        logger.info("feesaver.balance", balance_trx=str(balance))
        return balance

    async def _buy(self, address: str, units: int, duration: str) -> dict:
        data = await self._get(
            "/buyenergy",
            {"days": duration, "volume": units, "target": address},
        )
        status = data.get("status")
        if status == "Created":
            raise OrderPendingError(f"order {data.get('order_id')} not filled yet")
        if status != "Filled":
            raise MarketError(f"unexpected order status: {status}")
        return data

    async def rent(self, address: str, units: int, duration: str) -> RentalResult:
        """Rent `units` energy for `address`. Market failures become a failed RentalResult."""
        if not self._enabled:
            return RentalResult(success=False, cost=Decimal("0"), error="market disabled")

        try:
            balance = await self.check_balance()
            if balance < self._min_balance:
                logger.error(
                    "feesaver.balance_too_low",
                    balance_trx=str(balance),
                    minimum=str(self._min_balance),
                )
                return RentalResult(
                    success=False,
                    cost=Decimal("0"),
                    error=f"market balance too low: {balance}",
                )

            logger.info("feesaver.renting", address=address, units=units, duration=duration)
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._attempts),
                wait=wait_fixed(self._retry_wait_seconds),
                retry=retry_if_exception_type(MarketError),
            ):
                with attempt:
                    data = await self._buy(address, units, duration)
        except RetryError as e:
            error = str(e.last_attempt.exception())
            logger.error("feesaver.rental_failed", address=address, units=units, error=error)
            return RentalResult(success=False, cost=Decimal("0"), error=error)
        except MarketError as e:
            logger.error("feesaver.rental_failed", address=address, units=units, error=str(e))
            return RentalResult(success=False, cost=Decimal("0"), error=str(e))

        order_id = data.get("order_id")
        try:
            cost = Decimal(str(data.get("summa", "0")))
            rented = int(data.get("volume", units))
        except (InvalidOperation, TypeError, ValueError) as e:
            logger.error("feesaver.order_unreadable", address=address, order_id=order_id, error=str(e))
            return RentalResult(success=False, cost=Decimal("0"), error=f"unreadable order: {e}")

        logger.info(
            "feesaver.rental_filled",
            address=address,
            order_id=order_id,
            units=rented,
            cost_trx=str(cost),
        )
        await asyncio.sleep(self._delegation_wait_seconds)
        return RentalResult(
            success=True,
            cost=cost,
            units=rented,
            order_id=str(order_id) if order_id is not None else None,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
