"""TRON ledger client built on tronpy.

Covers everything the escrow core needs from the chain:

    - USDT (TRC-20) and TRX balances
    - latest incoming transfer, via the TronGrid v1 REST API (httpx)
    - energy estimation through triggerconstantcontract
    - building, signing and broadcasting native and USDT transfers
    - address format and on-chain existence checks

Amounts cross this boundary as Decimal in whole units; both assets use
6 decimals on-chain (sun for TRX, the USDT contract's base unit).
"""

from __future__ import annotations

import math
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from tronpy import AsyncTron
from tronpy.defaults import conf_for_name
from tronpy.exceptions import (
    AddressNotFound,
    ApiError,
    BugInJavaTron,
    NotFound,
    TransactionError,
    UnknownError,
)
from tronpy.exceptions import ValidationError as TronValidationError
from tronpy.keys import PrivateKey, is_base58check_address, to_hex_address
from tronpy.providers.async_http import AsyncHTTPProvider

from multisig_escrow.domain.exceptions import LedgerError
from multisig_escrow.domain.ledger import IncomingTransfer, KeyPair, TransferReceipt
from multisig_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from multisig_escrow.config import Settings

logger = get_logger(__name__)

UNITS_PER_TOKEN = Decimal(1_000_000)
TRANSFER_SELECTOR = "transfer(address,uint256)"

# Everything tronpy raises for node, validation or confirmation problems.
_TRON_ERRORS = (
    ApiError,
    UnknownError,
    TronValidationError,
    TransactionError,
    NotFound,
    BugInJavaTron,
)

_transient = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    retry=retry_if_exception_type((httpx.HTTPError, ApiError, UnknownError, BugInJavaTron)),
    reraise=True,
)


def to_base_units(amount: Decimal) -> int:
    return int((amount * UNITS_PER_TOKEN).to_integral_value())


def from_base_units(value: int | str) -> Decimal:
    return Decimal(int(value)) / UNITS_PER_TOKEN


def encode_transfer_parameter(to_address: str, amount: Decimal) -> str:
    """ABI-encode (address,uint256) for a TRC-20 transfer call."""
    address_hex = to_hex_address(to_address)[2:]  # drop the 41 network prefix
    return address_hex.rjust(64, "0") + format(to_base_units(amount), "x").rjust(64, "0")


class TronLedgerClient:
    """LedgerClient implementation for TRON mainnet / testnets."""

    def __init__(
        self,
        network: str,
        api_key: str,
        usdt_contract: str,
        fee_limit_sun: int,
        confirmation_timeout_seconds: int,
        native_asset: str = "TRX",
        energy_multiplier: Decimal = Decimal("1.1"),
        energy_reserve: int = 5000,
        energy_default: int = 145_000,
    ) -> None:
        conf = conf_for_name(network)
        provider = AsyncHTTPProvider(conf, api_key=api_key or None)
        self._client = AsyncTron(provider=provider, network=network)
        self._grid = httpx.AsyncClient(
            base_url=conf["fullnode"],
            headers={"TRON-PRO-API-KEY": api_key} if api_key else {},
            timeout=20.0,
        )
        self._usdt_contract = usdt_contract
        self._fee_limit_sun = fee_limit_sun
        self._confirmation_timeout = confirmation_timeout_seconds
        self._native_asset = native_asset
        self._energy_multiplier = energy_multiplier
        self._energy_reserve = energy_reserve
        self._energy_default = energy_default
        self._contract = None

    @classmethod
    def from_settings(cls, settings: Settings) -> TronLedgerClient:
        return cls(
            network=settings.tron_network,
            api_key=settings.tron_api_key,
            usdt_contract=settings.tron_usdt_contract,
            fee_limit_sun=settings.tron_fee_limit_sun,
            confirmation_timeout_seconds=settings.tron_confirmation_timeout_seconds,
            native_asset=settings.native_asset,
            energy_multiplier=settings.energy_multiplier,
            energy_reserve=settings.energy_reserve,
            energy_default=settings.energy_default_principal,
        )

    async def _usdt(self) -> Any:
        if self._contract is None:
            self._contract = await self._client.get_contract(self._usdt_contract)
        return self._contract

    def _is_native(self, asset: str) -> bool:
        return asset.upper() == self._native_asset

    # --- Queries ---

    @_transient
    async def _query_balance(self, address: str, asset: str) -> Decimal:
        if self._is_native(asset):
            try:
                return Decimal(await self._client.get_account_balance(address))
            except AddressNotFound:
                return Decimal("0")
        contract = await self._usdt()
        return from_base_units(await contract.functions.balanceOf(address))

    async def get_balance(self, address: str, asset: str) -> Decimal:
        try:
            return await self._query_balance(address, asset)
        except (httpx.HTTPError, *_TRON_ERRORS) as e:
            raise LedgerError(f"Balance query failed for {address}: {e}") from e

    @_transient
    async def _recent_token_transfers(self, address: str) -> list[dict]:
        response = await self._grid.get(
            f"/v1/accounts/{address}/transactions/trc20",
            params={"limit": 20, "only_to": "true", "contract_address": self._usdt_contract},
        )
        response.raise_for_status()
        return response.json().get("data", [])

    @_transient
    async def _recent_native_transfers(self, address: str) -> list[dict]:
        response = await self._grid.get(
            f"/v1/accounts/{address}/transactions",
            params={"limit": 20, "only_to": "true"},
        )
        response.raise_for_status()
        return response.json().get("data", [])

    async def find_deposit(self, address: str, asset: str) -> IncomingTransfer | None:
        """Most recent confirmed transfer of `asset` into `address`."""
        try:
            if not self._is_native(asset):
                for tx in await self._recent_token_transfers(address):
                    if tx.get("to") == address:
                        return IncomingTransfer(
                            tx_hash=tx["transaction_id"],
                            from_address=tx.get("from"),
                            amount=from_base_units(tx["value"]),
                        )
                return None

            target = to_hex_address(address)
            for tx in await self._recent_native_transfers(address):
                contract = (tx.get("raw_data", {}).get("contract") or [{}])[0]
                if contract.get("type") != "TransferContract":
                    continue
                value = contract["parameter"]["value"]
                if value.get("to_address", "").lower() == target.lower():
                    return IncomingTransfer(
                        tx_hash=tx["txID"],
                        from_address=value.get("owner_address"),
                        amount=from_base_units(value["amount"]),
                    )
            return None
        except (httpx.HTTPError, *_TRON_ERRORS, KeyError) as e:
            raise LedgerError(f"Deposit lookup failed for {address}: {e}") from e

    async def estimate_transfer_resource(
        self, from_address: str, to_address: str, amount: Decimal
    ) -> int:
        """(energy_used + energy_penalty) * multiplier + reserve, or the default on failure."""
        try:
            result = await self._client.provider.make_request(
                "wallet/triggerconstantcontract",
                {
                    "owner_address": from_address,
                    "contract_address": self._usdt_contract,
                    "function_selector": TRANSFER_SELECTOR,
                    "parameter": encode_transfer_parameter(to_address, amount),
                    "visible": True,
                },
            )
        except (httpx.HTTPError, *_TRON_ERRORS, ValueError) as e:
            logger.warning("tron.energy_estimate_failed", error=str(e), default=self._energy_default)
            return self._energy_default

        used = int(result.get("energy_used") or 65_000)
        penalty = int(result.get("energy_penalty") or 0)
        estimate = math.ceil((used + penalty) * self._energy_multiplier) + self._energy_reserve
        logger.info(
            "tron.energy_estimated",
            from_address=from_address,
            energy_used=used,
            energy_penalty=penalty,
            estimate=estimate,
        )
        return estimate

    async def available_resource(self, address: str) -> int:
        try:
            resources = await self._client.get_account_resource(address)
        except (httpx.HTTPError, *_TRON_ERRORS) as e:
            logger.warning("tron.resource_query_failed", address=address, error=str(e))
            return 0
        return int(resources.get("EnergyLimit", 0)) - int(resources.get("EnergyUsed", 0))

    # --- Transfers ---

    async def build_transfer(
        self, from_address: str, to_address: str, amount: Decimal, asset: str
    ) -> Any:
        try:
            if self._is_native(asset):
                builder = self._client.trx.transfer(from_address, to_address, to_base_units(amount))
            else:
                contract = await self._usdt()
                builder = await contract.functions.transfer(to_address, to_base_units(amount))
                builder = builder.with_owner(from_address).fee_limit(self._fee_limit_sun)
            return await builder.build()
        except (httpx.HTTPError, *_TRON_ERRORS) as e:
            raise LedgerError(f"Could not build transfer from {from_address}: {e}") from e

    async def sign(self, unsigned_tx: Any, private_key: str) -> Any:
        return unsigned_tx.sign(PrivateKey(bytes.fromhex(private_key)))

    async def broadcast(self, signed_tx: Any) -> TransferReceipt:
        """Broadcast and block until the transaction is confirmed or rejected."""
        try:
            ret = await signed_tx.broadcast()
            info = await ret.wait(timeout=self._confirmation_timeout)
        except (httpx.HTTPError, *_TRON_ERRORS) as e:
            tx_hash = getattr(signed_tx, "txid", None)
            logger.error("tron.broadcast_failed", tx_hash=tx_hash, error=str(e))
            return TransferReceipt(success=False, tx_hash=tx_hash, error=str(e))

        receipt = info.get("receipt", {})
        if info.get("result") == "FAILED" or receipt.get("result", "SUCCESS") != "SUCCESS":
            error = receipt.get("result") or info.get("resMessage") or "FAILED"
            logger.error("tron.transfer_reverted", tx_hash=ret.txid, error=error)
            return TransferReceipt(success=False, tx_hash=ret.txid, error=str(error))
        return TransferReceipt(success=True, tx_hash=ret.txid)

    async def fund_account(
        self, from_key: str, to_address: str, amount: Decimal
    ) -> TransferReceipt:
        """Send native TRX from the account controlled by `from_key`."""
        from_address = self.address_from_key(from_key)
        try:
            unsigned = await self.build_transfer(from_address, to_address, amount, self._native_asset)
        except LedgerError as e:
            return TransferReceipt(success=False, error=e.message)
        signed = await self.sign(unsigned, from_key)
        return await self.broadcast(signed)

    # --- Addresses & keys ---

    async def validate_address(self, address: str) -> bool:
        return isinstance(address, str) and is_base58check_address(address)

    async def address_exists(self, address: str) -> bool:
        """An account exists once it has been activated or holds any balance."""
        try:
            await self._client.get_account(address)
            return True
        except AddressNotFound:
            pass
        except (httpx.HTTPError, *_TRON_ERRORS) as e:
            raise LedgerError(f"Account lookup failed for {address}: {e}") from e
        native = await self.get_balance(address, self._native_asset)
        token = await self.get_balance(address, "USDT")
        return native > 0 or token > 0

    def generate_keypair(self) -> KeyPair:
        key = PrivateKey.random()
        return KeyPair(private_key=key.hex(), address=key.public_key.to_base58check_address())

    def address_from_key(self, private_key: str) -> str:
        return PrivateKey(bytes.fromhex(private_key)).public_key.to_base58check_address()

    async def aclose(self) -> None:
        await self._client.close()
        await self._grid.aclose()
