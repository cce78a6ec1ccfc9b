"""Tests for commission and deposit arithmetic."""

from __future__ import annotations

from decimal import Decimal

import pytest

from multisig_escrow.domain.commission import (
    CommissionBreakdown,
    calculate_commission,
    quantize,
)
from multisig_escrow.domain.enums import CommissionType


class TestCalculateCommission:
    def test_flat_fee_below_threshold(self) -> None:
        assert calculate_commission(Decimal("100")) == Decimal("15")

    def test_percentage_at_threshold(self) -> None:
        assert calculate_commission(Decimal("300")) == Decimal("15")

    def test_percentage_above_threshold(self) -> None:
        assert calculate_commission(Decimal("1000")) == Decimal("50")

    def test_rounds_to_six_places(self) -> None:
        assert calculate_commission(Decimal("333.3333337")) == Decimal("16.666667")

    def test_custom_terms(self) -> None:
        commission = calculate_commission(
            Decimal("80"), threshold=Decimal("50"), flat=Decimal("1"), rate=Decimal("0.1")
        )
        assert commission == Decimal("8")


class TestCommissionBreakdown:
    def test_buyer_pays(self) -> None:
        b = CommissionBreakdown(Decimal("100"), Decimal("15"), CommissionType.BUYER)
        assert b.deposit_required == Decimal("115")
        assert b.seller_receives == Decimal("100")
        assert b.buyer_pays == Decimal("15")
        assert b.seller_pays == Decimal("0")

    def test_seller_pays(self) -> None:
        b = CommissionBreakdown(Decimal("100"), Decimal("15"), CommissionType.SELLER)
        assert b.deposit_required == Decimal("100")
        assert b.seller_receives == Decimal("85")

    def test_split(self) -> None:
        b = CommissionBreakdown(Decimal("100"), Decimal("15"), CommissionType.SPLIT)
        assert b.buyer_pays == Decimal("7.5")
        assert b.seller_pays == Decimal("7.5")
        assert b.deposit_required == Decimal("107.5")
        assert b.seller_receives == Decimal("92.5")

    def test_split_halves_always_sum_to_commission(self) -> None:
        b = CommissionBreakdown(Decimal("333.33"), Decimal("16.666667"), CommissionType.SPLIT)
        assert b.buyer_pays + b.seller_pays == Decimal("16.666667")

    @pytest.mark.parametrize("commission_type", list(CommissionType))
    def test_payout_from_exact_deposit_matches_quote(self, commission_type: CommissionType) -> None:
        """Deposit minus commission is what the seller was quoted."""
        b = CommissionBreakdown(Decimal("250"), Decimal("15"), commission_type)
        assert b.deposit_required - b.commission == b.seller_receives

    def test_for_deal_reads_attributes(self) -> None:
        class _Deal:
            amount = Decimal("500")
            commission = Decimal("25")
            commission_type = "seller"

        b = CommissionBreakdown.for_deal(_Deal())
        assert b.commission_type is CommissionType.SELLER
        assert b.seller_receives == Decimal("475")

    def test_to_dict_uses_strings(self) -> None:
        data = CommissionBreakdown(Decimal("100"), Decimal("15"), CommissionType.BUYER).to_dict()
        assert data["deposit_required"] == "115"
        assert data["commission_type"] == "buyer"


def test_quantize() -> None:
    assert quantize(Decimal("1.0000005")) == Decimal("1.000001")
