"""Ledger and resource-market adapters and factory.

Two backends:
    - tron:       TronLedgerClient (tronpy) + FeeSaverMarket (httpx)
    - simulated:  SimulatedLedger + SimulatedResourceMarket (in-memory)

The LedgerFactory picks the backend from Settings.ledger_backend.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from multisig_escrow.infrastructure.ledger.feesaver import FeeSaverMarket
from multisig_escrow.infrastructure.ledger.simulated import (
    SimulatedLedger,
    SimulatedResourceMarket,
)
from multisig_escrow.infrastructure.ledger.tron import TronLedgerClient

if TYPE_CHECKING:
    from multisig_escrow.config import Settings
    from multisig_escrow.domain.ledger import LedgerClient, ResourceMarket


class LedgerFactory:
    """Builds the ledger client and resource market for a backend.

    Usage:
        ledger, market = LedgerFactory.create(get_settings())
    """

    @classmethod
    def create(cls, settings: Settings) -> tuple[LedgerClient, ResourceMarket]:
        """Create the (ledger, market) pair.

        Raises:
            ValueError: If the backend is unknown.
        """
        if settings.ledger_backend == "tron":
            return TronLedgerClient.from_settings(settings), FeeSaverMarket.from_settings(settings)
        if settings.ledger_backend == "simulated":
            ledger = SimulatedLedger(
                native_asset=settings.native_asset,
                energy_estimate=settings.energy_default_principal,
                energy_per_transfer=settings.energy_min_for_transfer,
            )
            market = SimulatedResourceMarket(ledger, enabled=settings.resource_market_enabled)
            return ledger, market
        raise ValueError(
            f"Unknown ledger backend: '{settings.ledger_backend}'. "
            "Valid backends: ['tron', 'simulated']"
        )


__all__ = [
    "FeeSaverMarket",
    "LedgerFactory",
    "SimulatedLedger",
    "SimulatedResourceMarket",
    "TronLedgerClient",
]
