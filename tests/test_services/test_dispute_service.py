"""Tests for opening disputes and applying arbiter decisions."""

from __future__ import annotations

from decimal import Decimal

import pytest

from multisig_escrow.domain.enums import DealStatus, DisputeDecision, TransactionType
from multisig_escrow.domain.exceptions import (
    DisputeAlreadyOpenError,
    InvalidStateTransitionError,
    NotAnArbiterError,
    NotAParticipantError,
    ValidationError,
)
from multisig_escrow.services.deal_service import DealService
from multisig_escrow.services.dispute_service import DisputeService
from multisig_escrow.services.key_validation import GateStatus

ARBITER_ID = "arbiter-1"
BUYER_ID = "buyer-1"
SELLER_ID = "seller-1"
REASON = "Work was never delivered"


async def _disputed(harness, opened_by: str = BUYER_ID, in_progress: bool = False):
    setup = await (harness.in_progress() if in_progress else harness.locked())
    async with harness.session_factory() as session:
        await DisputeService(session, harness.runtime).open_dispute(setup.deal_id, opened_by, REASON)
    return setup


class TestOpenDispute:
    @pytest.mark.asyncio
    async def test_buyer_disputes_locked_deal(self, harness, publisher) -> None:
        setup = await _disputed(harness)
        deal = await harness.get(setup.deal_id)

        assert deal.status == DealStatus.DISPUTE.value
        notice = publisher.last("deal.dispute_opened")
        assert notice.recipients == (BUYER_ID, SELLER_ID)
        assert notice.context["opened_by"] == BUYER_ID

    @pytest.mark.asyncio
    async def test_seller_disputes_in_progress_deal(self, harness) -> None:
        setup = await _disputed(harness, opened_by=SELLER_ID, in_progress=True)
        assert (await harness.get(setup.deal_id)).status == DealStatus.DISPUTE.value

    @pytest.mark.asyncio
    async def test_dispute_clears_pending_payout(self, harness) -> None:
        setup = await harness.in_progress()
        await harness.accept(setup)
        async with harness.session_factory() as session:
            await DisputeService(session, harness.runtime).open_dispute(
                setup.deal_id, BUYER_ID, REASON
            )

        deal = await harness.get(setup.deal_id)
        assert deal.pending_key_validation is None
        outcome = await harness.submit_key(SELLER_ID, setup.seller_secret)
        assert outcome.status is GateStatus.NO_SESSION

    @pytest.mark.asyncio
    async def test_unfunded_deal_cannot_be_disputed(self, harness, session, runtime) -> None:
        setup = await harness.awaiting_deposit()
        with pytest.raises(InvalidStateTransitionError):
            await DisputeService(session, runtime).open_dispute(setup.deal_id, BUYER_ID, REASON)

    @pytest.mark.asyncio
    async def test_outsider_cannot_dispute(self, harness, session, runtime) -> None:
        setup = await harness.locked()
        with pytest.raises(NotAParticipantError):
            await DisputeService(session, runtime).open_dispute(setup.deal_id, "mallory", REASON)

    @pytest.mark.asyncio
    async def test_reason_required(self, harness, session, runtime) -> None:
        setup = await harness.locked()
        with pytest.raises(ValidationError):
            await DisputeService(session, runtime).open_dispute(setup.deal_id, BUYER_ID, "   ")

    @pytest.mark.asyncio
    async def test_one_open_dispute_per_deal(self, harness, session, runtime) -> None:
        setup = await _disputed(harness)
        with pytest.raises(DisputeAlreadyOpenError):
            await DisputeService(session, runtime).open_dispute(setup.deal_id, SELLER_ID, REASON)

    @pytest.mark.asyncio
    async def test_submit_work_refused_during_dispute(self, harness, session, runtime) -> None:
        setup = await _disputed(harness)
        with pytest.raises(InvalidStateTransitionError):
            await DealService(session, runtime).submit_work(setup.deal_id, SELLER_ID)


class TestResolveDispute:
    @pytest.mark.asyncio
    async def test_refund_buyer(self, harness, ledger) -> None:
        setup = await _disputed(harness)
        async with harness.session_factory() as session:
            deal = await DisputeService(session, harness.runtime).resolve_dispute(
                setup.deal_id, ARBITER_ID, DisputeDecision.REFUND_BUYER
            )
        assert deal.status == DealStatus.DISPUTE.value
        assert deal.pending_key_validation == "dispute_buyer"

        outcome = await harness.submit_key(BUYER_ID, setup.buyer_secret)

        assert outcome.status is GateStatus.PAID
        deal = await harness.get(setup.deal_id)
        assert deal.status == DealStatus.RESOLVED.value
        # Refunds also carry the commission
        assert ledger.balances[(harness.buyer_address, "USDT")] == Decimal("100")
        types = [t.type for t in await harness.transactions(setup.deal_id)]
        assert TransactionType.REFUND.value in types

    @pytest.mark.asyncio
    async def test_release_seller(self, harness, ledger) -> None:
        setup = await _disputed(harness, in_progress=True)
        async with harness.session_factory() as session:
            await DisputeService(session, harness.runtime).resolve_dispute(
                setup.deal_id, ARBITER_ID, DisputeDecision.RELEASE_SELLER
            )

        outcome = await harness.submit_key(SELLER_ID, setup.seller_secret)

        assert outcome.status is GateStatus.PAID
        assert (await harness.get(setup.deal_id)).status == DealStatus.RESOLVED.value
        assert ledger.balances[(harness.seller_address, "USDT")] == Decimal("100")

    @pytest.mark.asyncio
    async def test_decision_is_recorded(self, harness, session_factory, runtime) -> None:
        setup = await _disputed(harness)
        async with session_factory() as session:
            await DisputeService(session, runtime).resolve_dispute(
                setup.deal_id, ARBITER_ID, DisputeDecision.REFUND_BUYER
            )
        async with session_factory() as session:
            dispute = await DisputeService(session, runtime).get_dispute(setup.deal_id)

        assert dispute.status == "resolved"
        assert dispute.decision == "refund_buyer"
        assert dispute.resolved_by == ARBITER_ID
        assert "DISPUTE_DECIDED" in await harness.event_types(setup.deal_id)

    @pytest.mark.asyncio
    async def test_only_arbiters_resolve(self, harness, session, runtime) -> None:
        setup = await _disputed(harness)
        with pytest.raises(NotAnArbiterError):
            await DisputeService(session, runtime).resolve_dispute(
                setup.deal_id, SELLER_ID, DisputeDecision.RELEASE_SELLER
            )

    @pytest.mark.asyncio
    async def test_deal_must_be_in_dispute(self, harness, session, runtime) -> None:
        setup = await harness.locked()
        with pytest.raises(InvalidStateTransitionError):
            await DisputeService(session, runtime).resolve_dispute(
                setup.deal_id, ARBITER_ID, DisputeDecision.REFUND_BUYER
            )
