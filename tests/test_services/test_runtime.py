"""Tests for EscrowRuntime lifecycle helpers."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from multisig_escrow.infrastructure.crypto import KeyVault
from multisig_escrow.infrastructure.ledger.feesaver import FeeSaverMarket
from multisig_escrow.infrastructure.notifications import LoggingNotificationPublisher
from multisig_escrow.services.runtime import EscrowRuntime


class TestClose:
    @pytest.mark.asyncio
    async def test_closes_ledger_and_market_clients(self, settings) -> None:
        ledger = MagicMock()
        ledger.aclose = AsyncMock()
        http = httpx.AsyncClient(base_url="https://feesaver.test")
        runtime = EscrowRuntime(
            settings=settings,
            ledger=ledger,
            market=FeeSaverMarket("https://feesaver.test", "secret-token", client=http),
            publisher=LoggingNotificationPublisher(),
            vault=KeyVault(settings.wallet_encryption_key),
        )

        await runtime.aclose()

        ledger.aclose.assert_awaited_once()
        assert http.is_closed

    @pytest.mark.asyncio
    async def test_simulated_backends_need_no_closing(self, runtime) -> None:
        await runtime.aclose()
