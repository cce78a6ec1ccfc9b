"""Key Validation Gate: authorization required before any payout moves funds.

The party entitled to a payout must reproduce the secret it was given when
the deal was set up. The gate lives in a TTL session keyed by
(party id, "key_validation"):

    open(deal_id, validation_type, party)   -> session {deal_id, type, attempts=0}
    submit(party, secret) with no session   -> NO_SESSION (not an answer to the gate)
    submit(party, wrong secret)             -> MISMATCH, attempts += 1, session kept
    submit(party, right secret)             -> session cleared, PayoutOrchestrator runs

There is no lockout. From the configured attempt onward the reply carries a
support-contact hint instead of the remaining attempt count. Submissions
for one party are serialized so the attempt counter cannot be lost.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from multisig_escrow.domain.commission import CommissionBreakdown
from multisig_escrow.domain.enums import (
    DealStatus,
    EventType,
    NotificationEvent,
    PartyRole,
    SessionPurpose,
    ValidationType,
)
from multisig_escrow.domain.exceptions import (
    EscrowError,
    InvalidStateTransitionError,
    NotAParticipantError,
)
from multisig_escrow.infrastructure.database.repositories import SessionRepository
from multisig_escrow.logging_config import get_logger
from multisig_escrow.services.lifecycle import DealLifecycle, next_status
from multisig_escrow.services.payout import PayoutOrchestrator, PayoutResult
from multisig_escrow.services.wallet_service import WalletService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from multisig_escrow.infrastructure.database.orm_models import Deal
    from multisig_escrow.services.runtime import EscrowRuntime

logger = get_logger(__name__)

# Statuses from which each payout kind may be gated.
_GATEABLE_FROM: dict[ValidationType, frozenset[DealStatus]] = {
    ValidationType.SELLER_PAYOUT: frozenset({DealStatus.IN_PROGRESS}),
    ValidationType.SELLER_RELEASE: frozenset({DealStatus.IN_PROGRESS}),
    ValidationType.BUYER_REFUND: frozenset({DealStatus.LOCKED}),
    ValidationType.DISPUTE_SELLER: frozenset({DealStatus.DISPUTE}),
    ValidationType.DISPUTE_BUYER: frozenset({DealStatus.DISPUTE}),
}


class GateStatus(enum.StrEnum):
    NO_SESSION = "no_session"
    MISMATCH = "mismatch"
    PAID = "paid"
    PAYOUT_FAILED = "payout_failed"


@dataclass(frozen=True)
class GateOutcome:
    status: GateStatus
    deal_id: str | None = None
    attempts: int = 0
    message: str | None = None
    payout: PayoutResult | None = None


def beneficiary_id(deal: Deal, validation_type: ValidationType) -> str:
    return deal.buyer_id if validation_type.beneficiary is PartyRole.BUYER else deal.seller_id


class KeyValidationGate:
    """Opens authorization sessions and checks submitted secrets."""

    def __init__(self, session: AsyncSession, runtime: EscrowRuntime) -> None:
        self._session = session
        self._runtime = runtime
        self._settings = runtime.settings
        self._lifecycle = DealLifecycle(session)
        self._sessions = SessionRepository(session)
        self._wallets = WalletService(session, runtime)

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    async def open(
        self,
        deal_id: str,
        validation_type: ValidationType,
        authorized_party: str,
        actor: str = "SYSTEM",
    ) -> Deal:
        """Gate a payout behind the authorized party's secret.

        Marks deal.pending_key_validation and (re)creates the party's session
        with zero attempts. Re-opening the same gate resets the attempt
        counter and the TTL.
        """
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        status = DealStatus(deal.status)
        if status not in _GATEABLE_FROM[validation_type]:
            raise InvalidStateTransitionError(deal.status, f"gate_{validation_type.value}")
        next_status(deal.status, validation_type.terminal_event)
        if authorized_party != beneficiary_id(deal, validation_type):
            raise NotAParticipantError(deal.deal_id, authorized_party)

        applied = await self._lifecycle.deals.update_where(
            deal,
            {"status": status.value},
            pending_key_validation=validation_type.value,
        )
        if not applied:
            raise InvalidStateTransitionError(deal.status, f"gate_{validation_type.value}")

        await self._sessions.put(
            authorized_party,
            SessionPurpose.KEY_VALIDATION,
            {"deal_id": deal.deal_id, "validation_type": validation_type.value, "attempts": 0},
            ttl=timedelta(hours=self._settings.key_session_ttl_hours),
        )
        await self._lifecycle.record_event(
            deal,
            EventType.PAYOUT_AUTHORIZATION_REQUESTED,
            actor=actor,
            metadata={"validation_type": validation_type.value, "authorized_party": authorized_party},
        )
        await self._session.commit()

        breakdown = CommissionBreakdown.for_deal(deal)
        logger.info(
            "gate.opened",
            deal_id=deal.deal_id,
            validation_type=validation_type.value,
            authorized_party=authorized_party,
        )
        await self._runtime.notify(
            NotificationEvent.DEAL_PAYOUT_AUTHORIZATION_REQUESTED,
            deal,
            recipients=(authorized_party,),
            validation_type=validation_type.value,
            multisig_address=deal.multisig_address,
            amount=str(deal.amount),
            seller_receives=str(breakdown.seller_receives),
            expires_in_hours=self._settings.key_session_ttl_hours,
        )
        return deal

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit(self, actor_id: str, secret: str) -> GateOutcome:
        """Check a submitted secret. The secret is never logged or returned."""
        async with self._runtime.gate_locks.hold(actor_id):
            try:
                return await self._submit_locked(actor_id, secret)
            finally:
                del secret

    async def _submit_locked(self, actor_id: str, secret: str) -> GateOutcome:
        data = await self._sessions.get(actor_id, SessionPurpose.KEY_VALIDATION, for_update=True)
        if data is None:
            return GateOutcome(status=GateStatus.NO_SESSION)

        validation_type = ValidationType(data["validation_type"])
        deal = await self._lifecycle.deals.get_by_deal_id(data["deal_id"])
        if (
            deal is None
            or DealStatus(deal.status).is_terminal
            or deal.pending_key_validation != validation_type.value
        ):
            # The gate was superseded; drop the stale session.
            await self._sessions.delete(actor_id, SessionPurpose.KEY_VALIDATION)
            await self._session.commit()
            return GateOutcome(status=GateStatus.NO_SESSION)

        wallet = await self._wallets.get_for_deal(deal)
        if not self._wallets.secret_matches(wallet, validation_type.beneficiary, secret):
            return await self._reject(actor_id, deal, data)

        await self._sessions.delete(actor_id, SessionPurpose.KEY_VALIDATION)
        await self._lifecycle.record_event(
            deal,
            EventType.KEY_VALIDATION_PASSED,
            actor=actor_id,
            metadata={"validation_type": validation_type.value},
        )
        await self._session.commit()
        logger.info("gate.passed", deal_id=deal.deal_id, validation_type=validation_type.value)

        orchestrator = PayoutOrchestrator(self._session, self._runtime)
        try:
            payout = await orchestrator.execute(deal.deal_id, validation_type)
        except EscrowError:
            return GateOutcome(
                status=GateStatus.PAYOUT_FAILED,
                deal_id=deal.deal_id,
                attempts=int(data["attempts"]),
                message=(
                    f"Payout for deal {deal.deal_id} could not be completed. "
                    f"Please contact support: {self._settings.support_contact}"
                ),
            )
        return GateOutcome(
            status=GateStatus.PAID,
            deal_id=deal.deal_id,
            attempts=int(data["attempts"]),
            payout=payout,
        )

    async def _reject(self, actor_id: str, deal: Deal, data: dict) -> GateOutcome:
        attempts = int(data["attempts"]) + 1
        await self._sessions.update_data(
            actor_id,
            SessionPurpose.KEY_VALIDATION,
            {**data, "attempts": attempts},
        )
        await self._lifecycle.record_event(
            deal,
            EventType.KEY_VALIDATION_FAILED,
            actor=actor_id,
            metadata={"validation_type": data["validation_type"], "attempts": attempts},
        )
        await self._session.commit()
        logger.warning("gate.mismatch", deal_id=deal.deal_id, attempts=attempts)
        return GateOutcome(
            status=GateStatus.MISMATCH,
            deal_id=deal.deal_id,
            attempts=attempts,
            message=self._mismatch_message(attempts),
        )

    def _mismatch_message(self, attempts: int) -> str:
        hint_from = self._settings.key_attempts_before_hint
        if attempts < hint_from:
            return f"Invalid key. Attempt {attempts} of {hint_from}."
        return (
            f"Invalid key. Attempt {attempts}. "
            f"If you have lost your key, contact support: {self._settings.support_contact}"
        )
