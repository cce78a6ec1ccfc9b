"""Deadline Monitor: enforces time-bounded commitments in two phases.

For every locked / in_progress deal past its deadline:

    phase 1  no warning recorded  -> deal.deadline_warning to both parties,
                                     warned_at stored in a TTL session
    phase 2  warned_at + grace     -> locked:      buyer_refund gate for the buyer
             elapsed                  in_progress: seller_release gate for the seller
                                     empty multisig: expired directly

Grace is 12h for locked deals (the seller's final chance) and 6h for
in_progress deals (protects the seller from buyer inaction). Deals in
dispute, terminal deals and deals with a payout already gated are never
touched. The phase is always recomputed from the stored warning, so a
restart resumes where the last tick left off.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from multisig_escrow.domain.enums import (
    DealStatus,
    EventType,
    NotificationEvent,
    SessionPurpose,
    ValidationType,
)
from multisig_escrow.domain.exceptions import EscrowError
from multisig_escrow.infrastructure.database.repositories import SessionRepository
from multisig_escrow.logging_config import get_logger
from multisig_escrow.monitors.base import run_in_batches
from multisig_escrow.services.key_validation import KeyValidationGate, beneficiary_id
from multisig_escrow.services.lifecycle import DealLifecycle

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from multisig_escrow.infrastructure.database.orm_models import Deal
    from multisig_escrow.services.runtime import EscrowRuntime

logger = get_logger(__name__)

SWEPT_STATUSES = (DealStatus.LOCKED, DealStatus.IN_PROGRESS)

# Warnings outlive their grace window so a late tick still finds them.
WARNING_RETENTION = timedelta(hours=24)


class DeadlineAction(enum.StrEnum):
    WARNED = "warned"
    WAITING = "waiting"
    GATED = "gated"
    EXPIRED = "expired"
    SKIPPED = "skipped"


@dataclass
class DeadlineSweep:
    checked: int = 0
    warned: int = 0
    gated: int = 0
    expired: int = 0
    errors: int = 0


def payout_type_for(status: DealStatus) -> ValidationType:
    """Payout the deadline routes a deal to: refund if work never arrived."""
    if status is DealStatus.LOCKED:
        return ValidationType.BUYER_REFUND
    return ValidationType.SELLER_RELEASE


class DeadlineMonitor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        runtime: EscrowRuntime,
    ) -> None:
        self._session_factory = session_factory
        self._runtime = runtime
        self._settings = runtime.settings

    def grace_for(self, status: DealStatus) -> timedelta:
        if status is DealStatus.LOCKED:
            return timedelta(hours=self._settings.deadline_refund_grace_hours)
        return timedelta(hours=self._settings.deadline_release_grace_hours)

    async def run_once(self, now: datetime | None = None) -> DeadlineSweep:
        now = now or datetime.now(UTC)
        sweep = DeadlineSweep()
        async with self._session_factory() as session:
            deals = await DealLifecycle(session).deals.get_past_deadline(SWEPT_STATUSES, now)
            deal_ids = [d.deal_id for d in deals]

        async def check(deal_id: str) -> DeadlineAction:
            return await self.check_deal(deal_id, now)

        for deal_id, result in await run_in_batches(
            deal_ids, self._settings.deadline_batch_size, check
        ):
            sweep.checked += 1
            if isinstance(result, BaseException):
                sweep.errors += 1
                if isinstance(result, EscrowError):
                    logger.warning(
                        "deadline.check_failed",
                        deal_id=deal_id,
                        code=result.code,
                        error=result.message,
                    )
                else:
                    logger.error("deadline.check_failed", deal_id=deal_id, error=repr(result))
            elif result is DeadlineAction.WARNED:
                sweep.warned += 1
            elif result is DeadlineAction.GATED:
                sweep.gated += 1
            elif result is DeadlineAction.EXPIRED:
                sweep.expired += 1

        if sweep.checked:
            logger.info(
                "deadline.sweep_complete",
                checked=sweep.checked,
                warned=sweep.warned,
                gated=sweep.gated,
                expired=sweep.expired,
                errors=sweep.errors,
            )
        return sweep

    async def check_deal(self, deal_id: str, now: datetime | None = None) -> DeadlineAction:
        now = now or datetime.now(UTC)
        async with self._session_factory() as session:
            deal = await DealLifecycle(session).deals.get_by_deal_id(deal_id)
            if deal is None:
                return DeadlineAction.SKIPPED
            status = DealStatus(deal.status)
            if status not in SWEPT_STATUSES or deal.deadline > now:
                return DeadlineAction.SKIPPED
            if deal.pending_key_validation is not None:
                return DeadlineAction.SKIPPED

            sessions = SessionRepository(session)
            warning = await sessions.get(deal.deal_id, SessionPurpose.DEADLINE_WARNING)
            # Submitting work during the grace window restarts the clock with the new grace.
            if warning is None or warning.get("status") != status.value:
                await self._warn(session, deal, status, now)
                return DeadlineAction.WARNED

            warned_at = datetime.fromisoformat(warning["warned_at"])
            if now < warned_at + self.grace_for(status):
                return DeadlineAction.WAITING

            return await self._escalate(session, deal, status, now)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _warn(
        self,
        session: AsyncSession,
        deal: Deal,
        status: DealStatus,
        now: datetime,
    ) -> None:
        grace = self.grace_for(status)
        await SessionRepository(session).put(
            deal.deal_id,
            SessionPurpose.DEADLINE_WARNING,
            {"warned_at": now.isoformat(), "status": status.value},
            ttl=grace + WARNING_RETENTION,
        )
        await DealLifecycle(session).record_event(
            deal,
            EventType.DEADLINE_WARNING,
            metadata={"grace_hours": grace.total_seconds() / 3600},
        )
        await session.commit()

        logger.info("deadline.warned", deal_id=deal.deal_id, status=status.value)
        await self._runtime.notify(
            NotificationEvent.DEAL_DEADLINE_WARNING,
            deal,
            status=status.value,
            deadline=deal.deadline.isoformat(),
            grace_hours=grace.total_seconds() / 3600,
            action_after_grace=payout_type_for(status).value,
        )

    async def _escalate(
        self,
        session: AsyncSession,
        deal: Deal,
        status: DealStatus,
        now: datetime,
    ) -> DeadlineAction:
        sessions = SessionRepository(session)
        balance = await self._runtime.ledger.get_balance(deal.multisig_address, deal.asset)
        if balance <= 0:
            applied = await DealLifecycle(session).fire(
                deal,
                "expire_deal",
                EventType.DEAL_EXPIRED_EMPTY,
                metadata={"balance": str(balance)},
                where={"pending_key_validation": None},
                completed_at=now,
            )
            await sessions.delete(deal.deal_id, SessionPurpose.DEADLINE_WARNING)
            await session.commit()
            if not applied:
                return DeadlineAction.SKIPPED
            logger.info("deadline.expired_empty", deal_id=deal.deal_id)
            await self._runtime.notify(NotificationEvent.DEAL_EXPIRED, deal, reason="empty")
            return DeadlineAction.EXPIRED

        validation_type = payout_type_for(status)
        await KeyValidationGate(session, self._runtime).open(
            deal.deal_id,
            validation_type,
            beneficiary_id(deal, validation_type),
        )
        await sessions.delete(deal.deal_id, SessionPurpose.DEADLINE_WARNING)
        await session.commit()
        logger.info(
            "deadline.payout_gated",
            deal_id=deal.deal_id,
            validation_type=validation_type.value,
        )
        return DeadlineAction.GATED
