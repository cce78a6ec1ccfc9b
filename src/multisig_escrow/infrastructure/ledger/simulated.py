"""In-memory ledger and resource market.

Used by the development server (LEDGER_BACKEND=simulated), simulation.py and
the test-suite. The model is deliberately small but keeps the economics that
drive the payout algorithm:

    - A token transfer consumes `energy_per_transfer` units of delegated
      energy when available, otherwise burns `burn_fee` native currency.
      With neither it fails, which is how an unfunded payout looks on TRON.
    - Native transfers cost nothing.

Failure injection:
    ledger.fail_balance_queries = 2   # next two get_balance calls raise LedgerError
    ledger.fail_broadcasts_to.add(addr)  # transfers to addr are rejected
    market.fail_next = 2              # next two rentals fail
"""

from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from decimal import Decimal

from multisig_escrow.domain.exceptions import LedgerError
from multisig_escrow.domain.ledger import (
    IncomingTransfer,
    KeyPair,
    RentalResult,
    TransferReceipt,
)
from multisig_escrow.logging_config import get_logger

logger = get_logger(__name__)

_ZERO = Decimal("0")


def _tx_hash() -> str:
    return uuid.uuid4().hex + uuid.uuid4().hex


@dataclass(frozen=True)
class SimulatedTransfer:
    from_address: str
    to_address: str
    amount: Decimal
    asset: str


@dataclass(frozen=True)
class SignedSimulatedTransfer:
    transfer: SimulatedTransfer
    signer: str


@dataclass(frozen=True)
class ConfirmedTransfer:
    tx_hash: str
    from_address: str
    to_address: str
    amount: Decimal
    asset: str


class SimulatedLedger:
    """LedgerClient implementation with in-memory balances."""

    def __init__(
        self,
        native_asset: str = "TRX",
        energy_estimate: int = 145_000,
        energy_per_transfer: int = 65_000,
        burn_fee: Decimal = Decimal("13.4"),
    ) -> None:
        self.native_asset = native_asset
        self.energy_estimate = energy_estimate
        self.energy_per_transfer = energy_per_transfer
        self.burn_fee = burn_fee
        self.balances: dict[tuple[str, str], Decimal] = {}
        self.resources: dict[str, int] = {}
        self.deposits: dict[tuple[str, str], IncomingTransfer] = {}
        self.known_addresses: set[str] = set()
        self.confirmed: list[ConfirmedTransfer] = []
        self.fail_balance_queries = 0
        self.fail_broadcasts_to: set[str] = set()

    # --- Test / simulation helpers ---

    def credit(self, address: str, amount: Decimal, asset: str = "USDT") -> None:
        key = (address, asset.upper())
        self.balances[key] = self.balances.get(key, _ZERO) + amount
        self.known_addresses.add(address)

    def deposit(
        self,
        address: str,
        amount: Decimal,
        from_address: str | None = None,
        asset: str = "USDT",
    ) -> str:
        """Simulate an incoming transfer and return its hash."""
        tx_hash = _tx_hash()
        self.credit(address, amount, asset)
        self.deposits[(address, asset.upper())] = IncomingTransfer(
            tx_hash=tx_hash,
            from_address=from_address,
            amount=amount,
        )
        return tx_hash

    def delegate(self, address: str, units: int) -> None:
        self.resources[address] = self.resources.get(address, 0) + units

    def register(self, address: str) -> None:
        """Mark an address as activated on the simulated chain."""
        self.known_addresses.add(address)

    def transfers_to(self, address: str, asset: str | None = None) -> list[ConfirmedTransfer]:
        return [
            t
            for t in self.confirmed
            if t.to_address == address and (asset is None or t.asset == asset.upper())
        ]

    # --- LedgerClient ---

    async def get_balance(self, address: str, asset: str) -> Decimal:
        if self.fail_balance_queries > 0:
            self.fail_balance_queries -= 1
            raise LedgerError(f"Balance query failed for {address}: simulated outage")
        return self.balances.get((address, asset.upper()), _ZERO)

    async def find_deposit(self, address: str, asset: str) -> IncomingTransfer | None:
        return self.deposits.get((address, asset.upper()))

    async def estimate_transfer_resource(
        self, from_address: str, to_address: str, amount: Decimal
    ) -> int:
        return self.energy_estimate

    async def available_resource(self, address: str) -> int:
        return self.resources.get(address, 0)

    async def fund_account(
        self, from_key: str, to_address: str, amount: Decimal
    ) -> TransferReceipt:
        unsigned = await self.build_transfer(
            self.address_from_key(from_key), to_address, amount, self.native_asset
        )
        return await self.broadcast(await self.sign(unsigned, from_key))

    async def build_transfer(
        self, from_address: str, to_address: str, amount: Decimal, asset: str
    ) -> SimulatedTransfer:
        return SimulatedTransfer(from_address, to_address, amount, asset.upper())

    async def sign(self, unsigned_tx: SimulatedTransfer, private_key: str) -> SignedSimulatedTransfer:
        return SignedSimulatedTransfer(unsigned_tx, self.address_from_key(private_key))

    async def broadcast(self, signed_tx: SignedSimulatedTransfer) -> TransferReceipt:
        tx = signed_tx.transfer
        if signed_tx.signer != tx.from_address:
            return TransferReceipt(success=False, error="signature does not match owner")
        if tx.to_address in self.fail_broadcasts_to:
            return TransferReceipt(success=False, error="simulated broadcast rejection")

        source = (tx.from_address, tx.asset)
        if self.balances.get(source, _ZERO) < tx.amount:
            return TransferReceipt(success=False, error="balance is not sufficient")

        native = (tx.from_address, self.native_asset)
        if tx.asset != self.native_asset:
            if self.resources.get(tx.from_address, 0) >= self.energy_per_transfer:
                self.resources[tx.from_address] -= self.energy_per_transfer
            elif self.balances.get(native, _ZERO) >= self.burn_fee:
                self.balances[native] -= self.burn_fee
            else:
                return TransferReceipt(success=False, error="OUT_OF_ENERGY")

        self.balances[source] -= tx.amount
        self.credit(tx.to_address, tx.amount, tx.asset)
        tx_hash = _tx_hash()
        self.confirmed.append(
            ConfirmedTransfer(tx_hash, tx.from_address, tx.to_address, tx.amount, tx.asset)
        )
        return TransferReceipt(success=True, tx_hash=tx_hash)

    async def validate_address(self, address: str) -> bool:
        return isinstance(address, str) and len(address) == 34 and address.startswith("T")

    async def address_exists(self, address: str) -> bool:
        return address in self.known_addresses

    def generate_keypair(self) -> KeyPair:
        private_key = secrets.token_hex(32)
        return KeyPair(private_key=private_key, address=self.address_from_key(private_key))

    def address_from_key(self, private_key: str) -> str:
        return "T" + hashlib.sha256(private_key.encode()).hexdigest()[:33]


class SimulatedResourceMarket:
    """ResourceMarket that delegates energy on a SimulatedLedger."""

    def __init__(
        self,
        ledger: SimulatedLedger,
        enabled: bool = True,
        price_per_unit: Decimal = Decimal("0.00009"),
    ) -> None:
        self._ledger = ledger
        self._enabled = enabled
        self.price_per_unit = price_per_unit
        self.fail_next = 0
        self.rentals: list[RentalResult] = []
        self.attempts = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = value

    async def rent(self, address: str, units: int, duration: str) -> RentalResult:
        self.attempts += 1
        if not self._enabled:
            return RentalResult(success=False, cost=_ZERO, error="market disabled")
        if self.fail_next > 0:
            self.fail_next -= 1
            logger.info("simulated_market.rental_failed", address=address, units=units)
            return RentalResult(success=False, cost=_ZERO, error="simulated market failure")

        self._ledger.delegate(address, units)
        result = RentalResult(
            success=True,
            cost=(self.price_per_unit * units).quantize(Decimal("0.000001")),
            units=units,
            order_id=uuid.uuid4().hex[:12],
        )
        self.rentals.append(result)
        return result
