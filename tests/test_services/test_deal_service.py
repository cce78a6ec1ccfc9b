"""Tests for DealService: creation, wallet collection, work and cancellation."""

from __future__ import annotations

from decimal import Decimal

import pytest

from multisig_escrow.domain.enums import CommissionType, DealStatus, PartyRole
from multisig_escrow.domain.exceptions import (
    ActiveDealExistsError,
    AmountBelowMinimumError,
    DepositAlreadyReceivedError,
    DuplicateDealError,
    InvalidAddressError,
    InvalidStateTransitionError,
    NotAnArbiterError,
    NotAParticipantError,
    UnsupportedAssetError,
    ValidationError,
)
from multisig_escrow.infrastructure.database.repositories import WalletRepository
from multisig_escrow.services.deal_service import DealService, format_deal_id

ARBITER_ID = "arbiter-1"
BUYER_ID = "buyer-1"
SELLER_ID = "seller-1"


class TestCreateDeal:
    @pytest.mark.asyncio
    async def test_buyer_created_deal_waits_for_seller_wallet(self, harness, publisher) -> None:
        setup = await harness.create()
        deal = await harness.get(setup.deal_id)

        assert deal.deal_id == "DL-000001"
        assert deal.status == DealStatus.WAITING_FOR_SELLER_WALLET.value
        assert deal.buyer_address == harness.buyer_address
        assert deal.seller_address is None
        assert deal.commission == Decimal("15")
        assert deal.multisig_address == setup.multisig_address
        assert setup.buyer_secret
        assert setup.breakdown.deposit_required == Decimal("115")
        assert await harness.event_types(setup.deal_id) == ["DEAL_CREATED", "WALLET_REQUESTED"]

    @pytest.mark.asyncio
    async def test_seller_created_deal_waits_for_buyer_wallet(self, harness) -> None:
        setup = await harness.create(creator_role=PartyRole.SELLER)
        deal = await harness.get(setup.deal_id)

        assert deal.status == DealStatus.WAITING_FOR_BUYER_WALLET.value
        assert deal.seller_address == harness.seller_address
        assert setup.seller_secret and setup.buyer_secret is None

    @pytest.mark.asyncio
    async def test_deal_ids_are_sequential(self, harness) -> None:
        first = await harness.create(buyer_id="b1", seller_id="s1")
        second = await harness.create(buyer_id="b2", seller_id="s2")
        assert first.deal_id == format_deal_id(1)
        assert second.deal_id == format_deal_id(2)

    @pytest.mark.asyncio
    async def test_wallet_keys_are_encrypted(self, harness, session_factory, runtime) -> None:
        setup = await harness.create()
        deal = await harness.get(setup.deal_id)
        async with session_factory() as session:
            wallet = await WalletRepository(session).get_by_deal(deal.id)

        assert wallet.address == setup.multisig_address
        assert wallet.threshold == 2
        assert setup.buyer_secret not in wallet.encrypted_buyer_secret
        assert runtime.vault.decrypt(wallet.encrypted_buyer_secret) == setup.buyer_secret
        assert wallet.encrypted_seller_secret is None

    @pytest.mark.asyncio
    async def test_percentage_commission_above_threshold(self, harness) -> None:
        setup = await harness.create(amount=Decimal("1000"), commission_type=CommissionType.SPLIT)
        assert setup.breakdown.commission == Decimal("50")
        assert setup.breakdown.deposit_required == Decimal("1025")

    @pytest.mark.asyncio
    async def test_amount_below_minimum(self, harness) -> None:
        with pytest.raises(AmountBelowMinimumError):
            await harness.create(amount=Decimal("49.99"))

    @pytest.mark.asyncio
    async def test_same_party_rejected(self, harness) -> None:
        with pytest.raises(ValidationError, match="different parties"):
            await harness.create(seller_id=BUYER_ID)

    @pytest.mark.asyncio
    async def test_unsupported_asset(self, session, runtime, harness) -> None:
        with pytest.raises(UnsupportedAssetError):
            await DealService(session, runtime).create_deal(
                creator_role=PartyRole.BUYER,
                buyer_id=BUYER_ID,
                seller_id=SELLER_ID,
                description="Consulting",
                amount=Decimal("100"),
                deadline_hours=24,
                commission_type=CommissionType.BUYER,
                creator_address=harness.buyer_address,
                asset="DOGE",
            )

    @pytest.mark.asyncio
    async def test_unactivated_address_rejected(self, session, runtime, ledger) -> None:
        with pytest.raises(InvalidAddressError, match="not activated"):
            await DealService(session, runtime).create_deal(
                creator_role=PartyRole.BUYER,
                buyer_id=BUYER_ID,
                seller_id=SELLER_ID,
                description="Consulting",
                amount=Decimal("100"),
                deadline_hours=24,
                commission_type=CommissionType.BUYER,
                creator_address=ledger.address_from_key("never-registered"),
            )

    @pytest.mark.asyncio
    async def test_malformed_address_rejected(self, session, runtime) -> None:
        with pytest.raises(InvalidAddressError, match="malformed"):
            await DealService(session, runtime).create_deal(
                creator_role=PartyRole.BUYER,
                buyer_id=BUYER_ID,
                seller_id=SELLER_ID,
                description="Consulting",
                amount=Decimal("100"),
                deadline_hours=24,
                commission_type=CommissionType.BUYER,
                creator_address="not-an-address",
            )

    @pytest.mark.asyncio
    async def test_duplicate_deal_rejected(self, harness) -> None:
        setup = await harness.create()
        with pytest.raises(DuplicateDealError) as exc_info:
            await harness.create()
        assert setup.deal_id in exc_info.value.message

    @pytest.mark.asyncio
    async def test_party_with_active_deal_rejected(self, harness) -> None:
        await harness.awaiting_deposit()
        with pytest.raises(ActiveDealExistsError):
            await harness.create(seller_id="seller-2", description="Another job")


class TestProvideWallet:
    @pytest.mark.asyncio
    async def test_seller_wallet_moves_deal_to_deposit(self, harness, publisher) -> None:
        setup = await harness.awaiting_deposit()
        deal = await harness.get(setup.deal_id)

        assert deal.status == DealStatus.WAITING_FOR_DEPOSIT.value
        assert deal.seller_address == harness.seller_address
        assert setup.seller_secret and setup.seller_secret != setup.buyer_secret

        notice = publisher.last("deal.awaiting_deposit")
        assert notice.deal_id == setup.deal_id
        assert Decimal(notice.context["deposit_required"]) == Decimal("115")
        assert notice.context["multisig_address"] == setup.multisig_address

    @pytest.mark.asyncio
    async def test_only_the_missing_party_may_provide(self, harness, session, runtime) -> None:
        setup = await harness.create()
        with pytest.raises(NotAParticipantError):
            await DealService(session, runtime).provide_wallet(
                setup.deal_id, BUYER_ID, harness.seller_address
            )

    @pytest.mark.asyncio
    async def test_wallet_cannot_be_provided_twice(self, harness, session, runtime) -> None:
        setup = await harness.awaiting_deposit()
        with pytest.raises(InvalidStateTransitionError):
            await DealService(session, runtime).provide_wallet(
                setup.deal_id, SELLER_ID, harness.seller_address
            )


class TestWork:
    @pytest.mark.asyncio
    async def test_submit_work(self, harness, publisher) -> None:
        setup = await harness.in_progress()
        deal = await harness.get(setup.deal_id)

        assert deal.status == DealStatus.IN_PROGRESS.value
        assert publisher.last("deal.work_submitted").recipients == (BUYER_ID,)

    @pytest.mark.asyncio
    async def test_only_seller_submits_work(self, harness, session, runtime) -> None:
        setup = await harness.locked()
        with pytest.raises(NotAParticipantError):
            await DealService(session, runtime).submit_work(setup.deal_id, BUYER_ID)

    @pytest.mark.asyncio
    async def test_accept_requires_in_progress(self, harness, session, runtime) -> None:
        setup = await harness.locked()
        with pytest.raises(InvalidStateTransitionError):
            await DealService(session, runtime).accept_work(setup.deal_id, BUYER_ID)

    @pytest.mark.asyncio
    async def test_accept_gates_seller_payout(self, harness, publisher) -> None:
        setup = await harness.in_progress()
        await harness.accept(setup)
        deal = await harness.get(setup.deal_id)

        assert deal.status == DealStatus.IN_PROGRESS.value
        assert deal.pending_key_validation == "seller_payout"
        notice = publisher.last("deal.payout_authorization_requested")
        assert notice.recipients == (SELLER_ID,)
        assert "WORK_ACCEPTED" in await harness.event_types(setup.deal_id)


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_unfunded_deal(self, harness, session, runtime, publisher) -> None:
        setup = await harness.awaiting_deposit()
        deal = await DealService(session, runtime).cancel_deal(setup.deal_id, BUYER_ID, "changed mind")

        assert deal.status == DealStatus.CANCELLED.value
        assert publisher.last("deal.cancelled").context["cancelled_by"] == BUYER_ID

    @pytest.mark.asyncio
    async def test_cancel_refused_once_funds_arrive(self, harness, session, runtime) -> None:
        setup = await harness.awaiting_deposit()
        harness.fund(setup, Decimal("10"))
        with pytest.raises(DepositAlreadyReceivedError):
            await DealService(session, runtime).cancel_deal(setup.deal_id, SELLER_ID)

    @pytest.mark.asyncio
    async def test_cancel_refused_after_lock(self, harness, session, runtime) -> None:
        setup = await harness.locked()
        with pytest.raises(InvalidStateTransitionError):
            await DealService(session, runtime).cancel_deal(setup.deal_id, BUYER_ID)

    @pytest.mark.asyncio
    async def test_outsider_cannot_cancel(self, harness, session, runtime) -> None:
        setup = await harness.create()
        with pytest.raises(NotAParticipantError):
            await DealService(session, runtime).cancel_deal(setup.deal_id, "someone-else")


class TestArbiterReopen:
    @pytest.mark.asyncio
    async def test_non_arbiter_rejected(self, harness, session, runtime) -> None:
        setup = await harness.in_progress()
        await harness.accept(setup)
        with pytest.raises(NotAnArbiterError):
            await DealService(session, runtime).reopen_gate(setup.deal_id, BUYER_ID)

    @pytest.mark.asyncio
    async def test_reopen_requires_pending_payout(self, harness, session, runtime) -> None:
        setup = await harness.locked()
        with pytest.raises(ValidationError, match="no payout awaiting"):
            await DealService(session, runtime).reopen_gate(setup.deal_id, ARBITER_ID)


class TestReadHelpers:
    @pytest.mark.asyncio
    async def test_status_lists_allowed_events(self, harness, session, runtime) -> None:
        setup = await harness.locked()
        status = await DealService(session, runtime).get_status(setup.deal_id)

        assert status["status"] == "locked"
        assert "open_dispute" in status["allowed_events"]

    @pytest.mark.asyncio
    async def test_list_deals_by_party(self, harness, session, runtime) -> None:
        await harness.create(buyer_id="b1", seller_id="s1")
        await harness.create(buyer_id="b2", seller_id="s2")
        deals = await DealService(session, runtime).list_deals(party_id="s2")
        assert [d.buyer_id for d in deals] == ["b2"]
