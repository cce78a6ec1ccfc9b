"""Tests for TRON amount conversion and TRC-20 call encoding."""

from __future__ import annotations

from decimal import Decimal

from multisig_escrow.infrastructure.ledger.tron import (
    encode_transfer_parameter,
    from_base_units,
    to_base_units,
)

USDT_CONTRACT = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"


class TestBaseUnits:
    def test_to_base_units(self) -> None:
        assert to_base_units(Decimal("115")) == 115_000_000
        assert to_base_units(Decimal("0.000001")) == 1

    def test_from_base_units(self) -> None:
        assert from_base_units(1_500_000) == Decimal("1.5")
        assert from_base_units("30000000") == Decimal("30")


class TestTransferParameter:
    def test_encoding(self) -> None:
        encoded = encode_transfer_parameter(USDT_CONTRACT, Decimal("1.5"))

        assert len(encoded) == 128
        assert encoded[:64] == "0" * 24 + "a614f803b6fd780986a42c78ec9c7f77e6ded13c"
        assert int(encoded[64:], 16) == 1_500_000
