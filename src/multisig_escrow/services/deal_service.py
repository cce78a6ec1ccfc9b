"""Deal Service: creation, wallet collection and party actions.

This is the application layer that coordinates between:
    - Domain state machine (transition guard, via DealLifecycle)
    - Wallet provisioning and key custody (WalletService)
    - The key validation gate (every payout is opened through it)
    - Repositories and the audit event log

REST routes and the simulation script both call into this service.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from multisig_escrow.domain.commission import (
    CommissionBreakdown,
    calculate_commission,
    quantize,
)
from multisig_escrow.domain.enums import (
    CANCELLABLE_STATUSES,
    CommissionType,
    DealStatus,
    EventType,
    NotificationEvent,
    PartyRole,
    ValidationType,
)
from multisig_escrow.domain.exceptions import (
    ActiveDealExistsError,
    AmountBelowMinimumError,
    DepositAlreadyReceivedError,
    DuplicateDealError,
    InvalidStateTransitionError,
    NotAnArbiterError,
    NotAParticipantError,
    UnsupportedAssetError,
    ValidationError,
)
from multisig_escrow.domain.state_machine import DealStateMachine
from multisig_escrow.infrastructure.database.orm_models import Deal
from multisig_escrow.infrastructure.database.repositories import (
    CounterRepository,
    TransactionRepository,
)
from multisig_escrow.logging_config import get_logger
from multisig_escrow.services.key_validation import KeyValidationGate, beneficiary_id
from multisig_escrow.services.lifecycle import DealLifecycle
from multisig_escrow.services.wallet_service import WalletService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from multisig_escrow.infrastructure.database.orm_models import DealEvent, Transaction
    from multisig_escrow.services.runtime import EscrowRuntime

logger = get_logger(__name__)

DEAL_ID_COUNTER = "deal_id"


def format_deal_id(sequence: int) -> str:
    return f"DL-{sequence:06d}"


def deal_unique_key(buyer_id: str, seller_id: str, description: str, created_at: datetime) -> str:
    raw = f"{buyer_id}{seller_id}{description}{created_at.isoformat()}"
    return hashlib.sha256(raw.encode()).hexdigest()


@dataclass(frozen=True)
class DealCreated:
    """A new deal plus the creator's secret. The secret is only ever returned here."""

    deal: Deal
    secret: str
    breakdown: CommissionBreakdown


@dataclass(frozen=True)
class WalletProvided:
    """The counterparty's address was accepted; `secret` is its one-time secret."""

    deal: Deal
    secret: str
    breakdown: CommissionBreakdown


class DealService:
    """Manages the deal lifecycle up to the point a payout is gated."""

    def __init__(self, session: AsyncSession, runtime: EscrowRuntime) -> None:
        self._session = session
        self._runtime = runtime
        self._settings = runtime.settings
        self._lifecycle = DealLifecycle(session)
        self._deal_repo = self._lifecycle.deals
        self._event_repo = self._lifecycle.events
        self._tx_repo = TransactionRepository(session)
        self._counter_repo = CounterRepository(session)
        self._wallets = WalletService(session, runtime)
        self._gate = KeyValidationGate(session, runtime)

    # ------------------------------------------------------------------
    # Deal Creation
    # ------------------------------------------------------------------

    async def create_deal(
        self,
        creator_role: PartyRole,
        buyer_id: str,
        seller_id: str,
        description: str,
        amount: Decimal,
        deadline_hours: float,
        commission_type: CommissionType,
        creator_address: str,
        asset: str = "USDT",
        product_name: str | None = None,
    ) -> DealCreated:
        """Create a deal with its multisig wallet and ask the counterparty for an address.

        Raises:
            ValidationError: (and subclasses) for any rejected term.
            ActiveDealExistsError: if either party is already in an active deal.
            DuplicateDealError: if the same parties already have this deal open.
        """
        settings = self._settings
        asset = asset.strip().upper()
        amount = quantize(Decimal(amount))

        if buyer_id == seller_id:
            raise ValidationError("Buyer and seller must be different parties", code="SAME_PARTY")
        if asset not in settings.supported_asset_list:
            raise UnsupportedAssetError(asset)
        if amount < settings.min_deal_amount:
            raise AmountBelowMinimumError(str(amount), str(settings.min_deal_amount))
        if deadline_hours <= 0:
            raise ValidationError("Deadline must be in the future", code="INVALID_DEADLINE")

        if settings.single_active_deal_per_party:
            for party_id in (buyer_id, seller_id):
                if await self._deal_repo.find_active_for_party(party_id) is not None:
                    raise ActiveDealExistsError(party_id)
        existing = await self._deal_repo.find_open_between(buyer_id, seller_id, description)
        if existing is not None:
            raise DuplicateDealError(existing.deal_id)

        creator_address = await self._wallets.validate_settlement_address(creator_address)

        now = datetime.now(UTC)
        commission = calculate_commission(
            amount,
            threshold=settings.commission_threshold,
            flat=settings.commission_flat,
            rate=settings.commission_rate,
        )
        sequence = await self._counter_repo.next_value(DEAL_ID_COUNTER)
        deal = Deal(
            deal_id=format_deal_id(sequence),
            unique_key=deal_unique_key(buyer_id, seller_id, description, now),
            creator_role=creator_role.value,
            buyer_id=buyer_id,
            seller_id=seller_id,
            buyer_address=creator_address if creator_role is PartyRole.BUYER else None,
            seller_address=creator_address if creator_role is PartyRole.SELLER else None,
            product_name=product_name,
            description=description,
            asset=asset,
            amount=amount,
            commission=commission,
            commission_type=commission_type.value,
            deadline=now + timedelta(hours=deadline_hours),
            status=DealStatus.CREATED.value,
        )
        deal = await self._deal_repo.create(deal)
        await self._event_repo.record(
            deal_pk=deal.id,
            event_type=EventType.DEAL_CREATED,
            old_status=None,
            new_status=DealStatus.CREATED,
            actor=buyer_id if creator_role is PartyRole.BUYER else seller_id,
            metadata={
                "amount": str(amount),
                "asset": asset,
                "commission": str(commission),
                "commission_type": commission_type.value,
            },
        )

        wallet = await self._wallets.provision(deal)
        secret = await self._wallets.issue_secret(wallet, creator_role)

        counterparty = PartyRole.SELLER if creator_role is PartyRole.BUYER else PartyRole.BUYER
        await self._lifecycle.fire_or_raise(
            deal,
            f"request_{counterparty.value}_wallet",
            EventType.WALLET_REQUESTED,
            metadata={"party": counterparty.value},
        )
        await self._session.commit()

        breakdown = CommissionBreakdown.for_deal(deal)
        logger.info(
            "deal.created",
            deal_id=deal.deal_id,
            creator_role=creator_role.value,
            amount=str(amount),
            commission=str(commission),
            multisig_address=deal.multisig_address,
        )
        return DealCreated(deal=deal, secret=secret, breakdown=breakdown)

    # ------------------------------------------------------------------
    # Wallet Collection
    # ------------------------------------------------------------------

    async def provide_wallet(self, deal_id: str, actor_id: str, address: str) -> WalletProvided:
        """The missing party supplies its settlement address and receives its secret."""
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        status = DealStatus(deal.status)
        if status is DealStatus.WAITING_FOR_SELLER_WALLET:
            role, party_id = PartyRole.SELLER, deal.seller_id
        elif status is DealStatus.WAITING_FOR_BUYER_WALLET:
            role, party_id = PartyRole.BUYER, deal.buyer_id
        else:
            raise InvalidStateTransitionError(deal.status, "wallet_provided")
        if actor_id != party_id:
            raise NotAParticipantError(deal.deal_id, actor_id)
        if self._settings.single_active_deal_per_party:
            active = await self._deal_repo.find_active_for_party(actor_id)
            if active is not None:
                raise ActiveDealExistsError(actor_id)

        address = await self._wallets.validate_settlement_address(address)
        wallet = await self._wallets.get_for_deal(deal)
        await self._wallets.attach_party(wallet, role, address)
        secret = await self._wallets.issue_secret(wallet, role)

        await self._lifecycle.fire_or_raise(
            deal,
            "wallet_provided",
            EventType.WALLET_PROVIDED,
            actor=actor_id,
            metadata={"party": role.value, "address": address},
            **{f"{role.value}_address": address},
        )
        await self._session.commit()

        breakdown = CommissionBreakdown.for_deal(deal)
        logger.info("deal.wallet_provided", deal_id=deal.deal_id, party=role.value)
        await self._runtime.notify(
            NotificationEvent.DEAL_AWAITING_DEPOSIT,
            deal,
            multisig_address=deal.multisig_address,
            asset=deal.asset,
            deposit_required=str(breakdown.deposit_required),
            deadline=deal.deadline.isoformat(),
        )
        return WalletProvided(deal=deal, secret=secret, breakdown=breakdown)

    # ------------------------------------------------------------------
    # Work
    # ------------------------------------------------------------------

    async def submit_work(self, deal_id: str, seller_id: str) -> Deal:
        """Seller marks the work delivered. Transitions locked -> in_progress."""
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        if seller_id != deal.seller_id:
            raise NotAParticipantError(deal.deal_id, seller_id)
        if deal.pending_key_validation is not None:
            raise ValidationError(
                f"Deal {deal.deal_id} already has a payout awaiting authorization",
                code="PAYOUT_PENDING",
            )

        await self._lifecycle.fire_or_raise(
            deal,
            "submit_work",
            EventType.WORK_SUBMITTED,
            actor=seller_id,
            where={"pending_key_validation": None},
        )
        await self._session.commit()

        logger.info("deal.work_submitted", deal_id=deal.deal_id)
        await self._runtime.notify(
            NotificationEvent.DEAL_WORK_SUBMITTED,
            deal,
            recipients=(deal.buyer_id,),
        )
        return deal

    async def accept_work(self, deal_id: str, buyer_id: str) -> Deal:
        """Buyer accepts the work; the seller is asked to authorize the payout."""
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        if buyer_id != deal.buyer_id:
            raise NotAParticipantError(deal.deal_id, buyer_id)
        if DealStatus(deal.status) is not DealStatus.IN_PROGRESS:
            raise InvalidStateTransitionError(deal.status, "accept_work")

        await self._lifecycle.record_event(deal, EventType.WORK_ACCEPTED, actor=buyer_id)
        logger.info("deal.work_accepted", deal_id=deal.deal_id)
        return await self._gate.open(
            deal.deal_id,
            ValidationType.SELLER_PAYOUT,
            deal.seller_id,
            actor=buyer_id,
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_deal(self, deal_id: str, actor_id: str, reason: str | None = None) -> Deal:
        """Cancel a deal that has not been funded.

        Raises:
            DepositAlreadyReceivedError: if the multisig already holds funds.
        """
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        if actor_id not in (deal.buyer_id, deal.seller_id):
            raise NotAParticipantError(deal.deal_id, actor_id)
        if DealStatus(deal.status) not in CANCELLABLE_STATUSES:
            raise InvalidStateTransitionError(deal.status, "cancel_deal")

        if deal.multisig_address:
            balance = await self._runtime.ledger.get_balance(deal.multisig_address, deal.asset)
            if balance > 0:
                raise DepositAlreadyReceivedError(deal.deal_id)

        await self._lifecycle.fire_or_raise(
            deal,
            "cancel_deal",
            EventType.DEAL_CANCELLED,
            actor=actor_id,
            metadata={"reason": reason} if reason else None,
        )
        await self._session.commit()

        logger.info("deal.cancelled", deal_id=deal.deal_id, by=actor_id)
        await self._runtime.notify(
            NotificationEvent.DEAL_CANCELLED,
            deal,
            cancelled_by=actor_id,
        )
        return deal

    # ------------------------------------------------------------------
    # Arbiter
    # ------------------------------------------------------------------

    async def reopen_gate(self, deal_id: str, arbiter_id: str) -> Deal:
        """Re-open the pending payout gate, e.g. after a failed broadcast."""
        if arbiter_id not in self._settings.arbiter_id_list:
            raise NotAnArbiterError(arbiter_id)
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        if deal.pending_key_validation is None:
            raise ValidationError(
                f"Deal {deal.deal_id} has no payout awaiting authorization",
                code="NO_PENDING_PAYOUT",
            )
        validation_type = ValidationType(deal.pending_key_validation)
        return await self._gate.open(
            deal.deal_id,
            validation_type,
            beneficiary_id(deal, validation_type),
            actor=arbiter_id,
        )

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_deal(self, deal_id: str) -> Deal:
        return await self._lifecycle.get_deal_or_raise(deal_id)

    async def list_deals(
        self,
        status: DealStatus | None = None,
        party_id: str | None = None,
        limit: int = 50,
    ) -> list[Deal]:
        return await self._deal_repo.list_deals(status=status, party_id=party_id, limit=limit)

    async def quote(self, deal_id: str) -> CommissionBreakdown:
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        return CommissionBreakdown.for_deal(deal)

    async def get_status(self, deal_id: str) -> dict:
        """Get deal status with allowed events."""
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        sm = DealStateMachine(current_status=deal.status)
        return {
            "deal_id": deal.deal_id,
            "status": deal.status,
            "pending_key_validation": deal.pending_key_validation,
            "deadline": deal.deadline,
            "allowed_events": sm.get_allowed_events(),
        }

    async def get_events(self, deal_id: str) -> list[DealEvent]:
        """Get audit trail."""
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        return await self._event_repo.get_by_deal(deal.id)

    async def get_transactions(self, deal_id: str) -> list[Transaction]:
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        return await self._tx_repo.get_by_deal(deal.id)
