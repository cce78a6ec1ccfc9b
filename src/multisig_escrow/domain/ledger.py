"""Ledger and resource-market protocols.

These are the collaborators the escrow core consumes. They are Protocols
(structural subtyping) so the Tron adapter, the simulated ledger used in
development, and test doubles only need to match the shape.

The domain layer has ZERO imports from tronpy, httpx, or any external service.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from decimal import Decimal


@dataclass(frozen=True)
class KeyPair:
    """A freshly generated ledger account. `private_key` is hex."""

    private_key: str
    address: str


@dataclass(frozen=True)
class IncomingTransfer:
    """The most recent transfer observed into an address."""

    tx_hash: str
    from_address: str | None
    amount: Decimal


@dataclass(frozen=True)
class TransferReceipt:
    """Outcome of a broadcast or a direct funding transfer.

    Attributes:
        success: Whether the ledger confirmed the transfer.
        tx_hash: Transaction id, present when the ledger accepted the transfer.
        error: Ledger-provided reason on failure (internal detail, never shown to users).
    """

    success: bool
    tx_hash: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class RentalResult:
    success: bool
    cost: Decimal
    units: int = 0
    order_id: str | None = None
    error: str | None = None


@runtime_checkable
class LedgerClient(Protocol):
    """Client of an already-settled public ledger.

    Concrete implementations:
        - infrastructure/ledger/tron.py       (tronpy AsyncTron)
        - infrastructure/ledger/simulated.py  (in-memory)
    """

    async def get_balance(self, address: str, asset: str) -> Decimal:
        """Confirmed balance of `asset` held by `address`. Raises LedgerError."""
        ...

    async def find_deposit(self, address: str, asset: str) -> IncomingTransfer | None:
        """Latest confirmed incoming transfer of `asset`, or None."""
        ...

    async def estimate_transfer_resource(
        self, from_address: str, to_address: str, amount: Decimal
    ) -> int:
        """Resource units (energy) a token transfer is expected to consume."""
        ...

    async def available_resource(self, address: str) -> int:
        """Resource units currently available to `address`."""
        ...

    async def fund_account(
        self, from_key: str, to_address: str, amount: Decimal
    ) -> TransferReceipt:
        """Send native currency from the account controlled by `from_key`."""
        ...

    async def build_transfer(
        self, from_address: str, to_address: str, amount: Decimal, asset: str
    ) -> Any:
        """Build an unsigned transfer of `asset` (native or token)."""
        ...

    async def sign(self, unsigned_tx: Any, private_key: str) -> Any:
        ...

    async def broadcast(self, signed_tx: Any) -> TransferReceipt:
        """Broadcast and wait for confirmation."""
        ...

    async def validate_address(self, address: str) -> bool:
        ...

    async def address_exists(self, address: str) -> bool:
        ...

    def generate_keypair(self) -> KeyPair:
        ...

    def address_from_key(self, private_key: str) -> str:
        ...


@runtime_checkable
class ResourceMarket(Protocol):
    """Pay-as-you-go market for transfer resources.

    Concrete implementations:
        - infrastructure/ledger/feesaver.py   (httpx)
        - infrastructure/ledger/simulated.py  (in-memory)
    """

    @property
    def enabled(self) -> bool:
        ...

    async def rent(self, address: str, units: int, duration: str) -> RentalResult:
        """Rent `units` for `address`. Never raises for market-side failures."""
        ...
