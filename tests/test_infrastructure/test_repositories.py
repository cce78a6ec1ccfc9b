"""Tests for repository behaviour that services rely on."""

from __future__ import annotations

from datetime import timedelta

import pytest

from multisig_escrow.domain.enums import DealStatus, SessionPurpose
from multisig_escrow.infrastructure.database.repositories import (
    CounterRepository,
    DealRepository,
    SessionRepository,
)


class TestCounterRepository:
    @pytest.mark.asyncio
    async def test_counter_starts_at_one_and_increments(self, session) -> None:
        repo = CounterRepository(session)
        assert await repo.next_value("deal_id") == 1
        assert await repo.next_value("deal_id") == 2
        assert await repo.next_value("other") == 1


class TestSessionRepository:
    @pytest.mark.asyncio
    async def test_put_get_delete(self, session) -> None:
        repo = SessionRepository(session)
        await repo.put("seller-1", SessionPurpose.KEY_VALIDATION, {"attempts": 0}, timedelta(hours=1))

        assert await repo.get("seller-1", SessionPurpose.KEY_VALIDATION) == {"attempts": 0}
        assert await repo.get("seller-1", SessionPurpose.DEADLINE_WARNING) is None

        await repo.delete("seller-1", SessionPurpose.KEY_VALIDATION)
        assert await repo.get("seller-1", SessionPurpose.KEY_VALIDATION) is None

    @pytest.mark.asyncio
    async def test_put_replaces_and_extends(self, session) -> None:
        repo = SessionRepository(session)
        await repo.put("a", SessionPurpose.KEY_VALIDATION, {"v": 1}, timedelta(seconds=-1))
        assert await repo.get("a", SessionPurpose.KEY_VALIDATION) is None

        await repo.put("a", SessionPurpose.KEY_VALIDATION, {"v": 2}, timedelta(hours=1))
        assert await repo.get("a", SessionPurpose.KEY_VALIDATION) == {"v": 2}

    @pytest.mark.asyncio
    async def test_update_data_keeps_expiry(self, session) -> None:
        repo = SessionRepository(session)
        await repo.put("a", SessionPurpose.KEY_VALIDATION, {"attempts": 0}, timedelta(hours=1))
        await repo.update_data("a", SessionPurpose.KEY_VALIDATION, {"attempts": 1})
        assert await repo.get("a", SessionPurpose.KEY_VALIDATION) == {"attempts": 1}


class TestConditionalTransition:
    @pytest.mark.asyncio
    async def test_only_one_writer_wins(self, harness, session_factory) -> None:
        setup = await harness.awaiting_deposit()

        async with session_factory() as session:
            repo = DealRepository(session)
            deal = await repo.get_by_deal_id(setup.deal_id)
            first = await repo.transition(
                deal, [DealStatus.WAITING_FOR_DEPOSIT], DealStatus.LOCKED
            )
            second = await repo.transition(
                deal, [DealStatus.WAITING_FOR_DEPOSIT], DealStatus.CANCELLED
            )
            await session.commit()

        assert first is True
        assert second is False
        assert (await harness.get(setup.deal_id)).status == DealStatus.LOCKED.value

    @pytest.mark.asyncio
    async def test_extra_conditions(self, harness, session_factory) -> None:
        setup = await harness.locked()

        async with session_factory() as session:
            repo = DealRepository(session)
            deal = await repo.get_by_deal_id(setup.deal_id)
            applied = await repo.transition(
                deal,
                [DealStatus.LOCKED],
                DealStatus.EXPIRED,
                where={"pending_key_validation": "buyer_refund"},
            )

        assert applied is False
        assert deal.status == DealStatus.LOCKED.value

    @pytest.mark.asyncio
    async def test_active_deal_lookup(self, harness, session_factory) -> None:
        await harness.create()
        await harness.awaiting_deposit(buyer_id="b2", seller_id="s2")

        async with session_factory() as session:
            repo = DealRepository(session)
            assert await repo.find_active_for_party("seller-1") is None
            assert (await repo.find_active_for_party("s2")).buyer_id == "b2"
