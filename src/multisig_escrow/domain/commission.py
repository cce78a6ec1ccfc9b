"""Commission and deposit arithmetic.

All quoted figures (deposit required, what each side pays, what the seller
receives) derive from a single CommissionBreakdown so that every surface
reports the same numbers for a given commission type.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from multisig_escrow.domain.enums import CommissionType

# USDT and TRX both carry 6 decimals on-chain.
ASSET_QUANTUM = Decimal("0.000001")


def quantize(value: Decimal) -> Decimal:
    return value.quantize(ASSET_QUANTUM, rounding=ROUND_HALF_UP)


def calculate_commission(
    amount: Decimal,
    threshold: Decimal = Decimal("300"),
    flat: Decimal = Decimal("15"),
    rate: Decimal = Decimal("0.05"),
) -> Decimal:
    """Flat fee below the threshold, a percentage of the amount at or above it."""
    if amount < threshold:
        return quantize(flat)
    return quantize(amount * rate)


@dataclass(frozen=True)
class CommissionBreakdown:
    """Who pays what for a deal of `amount` with `commission`."""

    amount: Decimal
    commission: Decimal
    commission_type: CommissionType

    @classmethod
    def for_deal(cls, deal: Any) -> CommissionBreakdown:
        """Breakdown for any object carrying amount, commission and commission_type."""
        return cls(
            Decimal(deal.amount), Decimal(deal.commission), CommissionType(deal.commission_type)
        )

    @property
    def buyer_pays(self) -> Decimal:
        if self.commission_type is CommissionType.BUYER:
            return self.commission
        if self.commission_type is CommissionType.SPLIT:
            return quantize(self.commission / 2)
        return Decimal("0")

    @property
    def seller_pays(self) -> Decimal:
        if self.commission_type is CommissionType.SELLER:
            return self.commission
        if self.commission_type is CommissionType.SPLIT:
            return self.commission - self.buyer_pays
        return Decimal("0")

    @property
    def deposit_required(self) -> Decimal:
        return self.amount + self.buyer_pays

    @property
    def seller_receives(self) -> Decimal:
        return self.amount - self.seller_pays

    def to_dict(self) -> dict:
        return {
            "amount": str(self.amount),
            "commission": str(self.commission),
            "commission_type": self.commission_type.value,
            "buyer_pays": str(self.buyer_pays),
            "seller_pays": str(self.seller_pays),
            "deposit_required": str(self.deposit_required),
            "seller_receives": str(self.seller_receives),
        }
