"""Transfer-resource acquisition outcomes and the per-deal cost ledger.

A payout obtains the ledger resources it needs either by renting them from a
resource market or by funding the multisig directly with native currency.
Exactly one of these applies per payout, so the outcome is a tagged union:

    ResourceAcquisition = Rented | FallbackFunded

The CostLedger is derived from the acquisition plus the fixed activation
cost and is persisted as JSON on the deal.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal

from multisig_escrow.domain.enums import EnergyMethod


@dataclass(frozen=True)
class Rented:
    """Resources rented from the market. `cost` sums every rental of the payout."""

    cost: Decimal
    units: int = 0

    method = EnergyMethod.RENTED

    def add_rental(self, cost: Decimal, units: int) -> Rented:
        return Rented(cost=self.cost + cost, units=self.units + units)


@dataclass(frozen=True)
class FallbackFunded:
    """The multisig was topped up with native currency from the service wallet.

    `rental_cost` carries rentals that succeeded before the market failed and
    the payout switched to funding; they are spent either way.
    """

    sent: Decimal
    returned: Decimal = Decimal("0")
    tx_fee: Decimal = Decimal("0")
    rental_cost: Decimal = Decimal("0")
    funding_tx_hash: str | None = None

    method = EnergyMethod.FALLBACK

    @property
    def net(self) -> Decimal:
        return self.sent + self.tx_fee - self.returned

    def with_returned(self, returned: Decimal) -> FallbackFunded:
        return replace(self, returned=returned)


ResourceAcquisition = Rented | FallbackFunded


@dataclass(frozen=True)
class CostLedger:
    """What executing a payout cost the service, in native currency."""

    completion_type: str
    acquisition: ResourceAcquisition | None
    activation_sent: Decimal = Decimal("0")
    activation_tx_fee: Decimal = Decimal("0")
    commission_transferred: bool = True
    notes: list[str] = field(default_factory=list)

    @property
    def energy_method(self) -> EnergyMethod:
        if self.acquisition is None:
            return EnergyMethod.NONE
        return self.acquisition.method

    @property
    def total_native_spent(self) -> Decimal:
        total = self.activation_sent + self.activation_tx_fee
        match self.acquisition:
            case Rented(cost=cost):
                total += cost
            case FallbackFunded() as funded:
                total += funded.net + funded.rental_cost
        return total

    def to_dict(self) -> dict:
        data: dict = {
            "completion_type": self.completion_type,
            "energy_method": self.energy_method.value,
            "rental_cost": "0",
            "fallback_sent": "0",
            "fallback_tx_fee": "0",
            "fallback_returned": "0",
            "fallback_net": "0",
            "activation_sent": str(self.activation_sent),
            "activation_tx_fee": str(self.activation_tx_fee),
            "total_native_spent": str(self.total_native_spent),
            "commission_transferred": self.commission_transferred,
            "notes": list(self.notes),
        }
        match self.acquisition:
            case Rented(cost=cost, units=units):
                data["rental_cost"] = str(cost)
                data["rental_units"] = units
            case FallbackFunded() as funded:
                data["rental_cost"] = str(funded.rental_cost)
                data["fallback_sent"] = str(funded.sent)
                data["fallback_tx_fee"] = str(funded.tx_fee)
                data["fallback_returned"] = str(funded.returned)
                data["fallback_net"] = str(funded.net)
        return data
