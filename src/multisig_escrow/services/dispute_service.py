"""Dispute Service: open disputes and apply arbiter decisions.

Opening a dispute supersedes any payout gate already open on the deal
(including one opened by the deadline monitor). The arbiter's decision
opens a fresh gate for the winner; the payout then moves the deal to
resolved.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from multisig_escrow.domain.enums import (
    DealStatus,
    DisputeDecision,
    EventType,
    NotificationEvent,
)
from multisig_escrow.domain.exceptions import (
    DisputeAlreadyOpenError,
    DisputeNotFoundError,
    InvalidStateTransitionError,
    NotAnArbiterError,
    NotAParticipantError,
    ValidationError,
)
from multisig_escrow.infrastructure.database.orm_models import Dispute
from multisig_escrow.infrastructure.database.repositories import DisputeRepository
from multisig_escrow.logging_config import get_logger
from multisig_escrow.services.key_validation import KeyValidationGate, beneficiary_id
from multisig_escrow.services.lifecycle import DealLifecycle

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from multisig_escrow.infrastructure.database.orm_models import Deal
    from multisig_escrow.services.runtime import EscrowRuntime

logger = get_logger(__name__)


class DisputeService:
    def __init__(self, session: AsyncSession, runtime: EscrowRuntime) -> None:
        self._session = session
        self._runtime = runtime
        self._lifecycle = DealLifecycle(session)
        self._dispute_repo = DisputeRepository(session)
        self._gate = KeyValidationGate(session, runtime)

    async def open_dispute(self, deal_id: str, actor_id: str, reason: str) -> Dispute:
        """Either party disputes a funded deal. Transitions locked|in_progress -> dispute."""
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        if actor_id not in (deal.buyer_id, deal.seller_id):
            raise NotAParticipantError(deal.deal_id, actor_id)
        if not reason or not reason.strip():
            raise ValidationError("A dispute needs a reason", code="DISPUTE_REASON_REQUIRED")
        if await self._dispute_repo.get_open(deal.id) is not None:
            raise DisputeAlreadyOpenError(deal.deal_id)

        superseded = deal.pending_key_validation
        await self._lifecycle.fire_or_raise(
            deal,
            "open_dispute",
            EventType.DISPUTE_OPENED,
            actor=actor_id,
            metadata={"reason": reason, "superseded_payout": superseded},
            pending_key_validation=None,
        )
        dispute = await self._dispute_repo.create(
            Dispute(deal_pk=deal.id, opened_by=actor_id, reason=reason.strip())
        )
        await self._session.commit()

        logger.info(
            "dispute.opened",
            deal_id=deal.deal_id,
            by=actor_id,
            superseded_payout=superseded,
        )
        await self._runtime.notify(
            NotificationEvent.DEAL_DISPUTE_OPENED,
            deal,
            opened_by=actor_id,
            reason=dispute.reason,
        )
        return dispute

    async def resolve_dispute(
        self,
        deal_id: str,
        arbiter_id: str,
        decision: DisputeDecision,
    ) -> Deal:
        """Record the arbiter's decision and gate the winner's payout.

        The deal stays in dispute until the winner authorizes the payout.
        """
        if arbiter_id not in self._runtime.settings.arbiter_id_list:
            raise NotAnArbiterError(arbiter_id)
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        if DealStatus(deal.status) is not DealStatus.DISPUTE:
            raise InvalidStateTransitionError(deal.status, "settle_dispute")
        dispute = await self._dispute_repo.get_open(deal.id)
        if dispute is None:
            raise DisputeNotFoundError(deal.deal_id)

        await self._dispute_repo.resolve(dispute, decision, arbiter_id)
        validation_type = decision.validation_type
        await self._lifecycle.record_event(
            deal,
            EventType.DISPUTE_DECIDED,
            actor=arbiter_id,
            metadata={"decision": decision.value, "validation_type": validation_type.value},
        )
        logger.info("dispute.decided", deal_id=deal.deal_id, decision=decision.value)

        return await self._gate.open(
            deal.deal_id,
            validation_type,
            beneficiary_id(deal, validation_type),
            actor=arbiter_id,
        )

    async def get_dispute(self, deal_id: str) -> Dispute:
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        dispute = await self._dispute_repo.get_latest(deal.id)
        if dispute is None:
            raise DisputeNotFoundError(deal.deal_id)
        return dispute
