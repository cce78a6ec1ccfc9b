"""Deposit Monitor: detects funding of multisig wallets awaiting deposit.

Each tick:
    1. lists deals in waiting_for_deposit
    2. per deal (own session, batches run concurrently):
         balance >= required - tolerance  -> locked (conditional update), deposit recorded
         0 < balance < required           -> deal.deposit_insufficient (once per balance)
         ledger error                     -> logged, retried next tick, deal untouched
    3. activates newly locked wallets and publishes deal.locked exactly once
    4. recovery pass: publishes deal.locked for locked deals never notified

Consecutive ticks with ledger failures raise a monitor.alert once the
configured threshold is reached.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from multisig_escrow.domain.commission import CommissionBreakdown, quantize
from multisig_escrow.domain.enums import (
    DealStatus,
    EventType,
    NotificationEvent,
    SessionPurpose,
    TransactionType,
)
from multisig_escrow.domain.exceptions import EscrowError
from multisig_escrow.infrastructure.database.repositories import (
    SessionRepository,
    TransactionRepository,
)
from multisig_escrow.logging_config import get_logger
from multisig_escrow.monitors.base import run_in_batches
from multisig_escrow.services.lifecycle import DealLifecycle
from multisig_escrow.services.wallet_service import WalletService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from multisig_escrow.infrastructure.database.orm_models import Deal
    from multisig_escrow.services.runtime import EscrowRuntime

logger = get_logger(__name__)

SHORTFALL_MEMORY = timedelta(days=7)


class DepositOutcome(enum.StrEnum):
    LOCKED = "locked"
    PENDING = "pending"
    INSUFFICIENT = "insufficient"
    SKIPPED = "skipped"


@dataclass
class DepositSweep:
    checked: int = 0
    locked: int = 0
    insufficient: int = 0
    errors: int = 0
    recovered_notifications: int = 0


class DepositMonitor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        runtime: EscrowRuntime,
    ) -> None:
        self._session_factory = session_factory
        self._runtime = runtime
        self._settings = runtime.settings
        self.consecutive_failures = 0

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def run_once(self) -> DepositSweep:
        sweep = DepositSweep()
        try:
            async with self._session_factory() as session:
                deals = await DealLifecycle(session).deals.get_by_status(
                    [DealStatus.WAITING_FOR_DEPOSIT]
                )
                deal_ids = [d.deal_id for d in deals if d.multisig_address]
        except SQLAlchemyError as e:
            logger.error("deposit.sweep_failed", error=str(e))
            sweep.errors += 1
            await self._track_health(sweep)
            return sweep

        for deal_id, result in await run_in_batches(
            deal_ids, self._settings.deposit_batch_size, self.check_deal
        ):
            sweep.checked += 1
            if isinstance(result, BaseException):
                sweep.errors += 1
                self._log_check_failure(deal_id, result)
            elif result is DepositOutcome.LOCKED:
                sweep.locked += 1
            elif result is DepositOutcome.INSUFFICIENT:
                sweep.insufficient += 1

        sweep.recovered_notifications = await self.recover_notifications()
        await self._track_health(sweep)
        if sweep.checked:
            logger.info(
                "deposit.sweep_complete",
                checked=sweep.checked,
                locked=sweep.locked,
                insufficient=sweep.insufficient,
                errors=sweep.errors,
            )
        return sweep

    # ------------------------------------------------------------------
    # Per deal
    # ------------------------------------------------------------------

    async def check_deal(self, deal_id: str) -> DepositOutcome:
        """Check one deal's multisig balance and lock it when funded."""
        async with self._session_factory() as session:
            lifecycle = DealLifecycle(session)
            deal = await lifecycle.deals.get_by_deal_id(deal_id)
            if (
                deal is None
                or deal.status != DealStatus.WAITING_FOR_DEPOSIT.value
                or not deal.multisig_address
            ):
                return DepositOutcome.SKIPPED

            ledger = self._runtime.ledger
            required = CommissionBreakdown.for_deal(deal).deposit_required
            balance = await ledger.get_balance(deal.multisig_address, deal.asset)
            if balance <= 0:
                return DepositOutcome.PENDING
            if balance < required - self._settings.deposit_tolerance:
                await self._report_shortfall(session, deal, balance, required)
                return DepositOutcome.INSUFFICIENT

            deposit = await ledger.find_deposit(deal.multisig_address, deal.asset)
            tx_hash = deposit.tx_hash if deposit is not None else None
            overpayment = quantize(max(balance - required, Decimal("0")))
            applied = await lifecycle.fire(
                deal,
                "deposit_confirmed",
                EventType.DEPOSIT_CONFIRMED,
                metadata={
                    "balance": str(balance),
                    "required": str(required),
                    "tx_hash": tx_hash,
                    "overpayment": str(overpayment),
                },
                deposit_tx_hash=tx_hash,
                deposit_detected_at=datetime.now(UTC),
                actual_deposit_amount=balance,
            )
            if not applied:
                return DepositOutcome.SKIPPED

            tx_repo = TransactionRepository(session)
            if deposit is not None and await tx_repo.get_by_hash(deposit.tx_hash) is None:
                await tx_repo.record(
                    deal_pk=deal.id,
                    tx_type=TransactionType.DEPOSIT,
                    asset=deal.asset,
                    amount=deposit.amount,
                    tx_hash=deposit.tx_hash,
                    from_address=deposit.from_address,
                    to_address=deal.multisig_address,
                    explorer_url=self._runtime.explorer_url(deposit.tx_hash),
                )
            if tx_hash is None:
                logger.warning("deposit.hash_unavailable", deal_id=deal.deal_id)
            await SessionRepository(session).delete(deal.deal_id, SessionPurpose.DEPOSIT_SHORTFALL)
            await session.commit()

            logger.info(
                "deposit.locked",
                deal_id=deal.deal_id,
                balance=str(balance),
                required=str(required),
                overpayment=str(overpayment),
                tx_hash=tx_hash,
            )
            await self._activate(session, deal)
            await self._publish_locked(session, deal)
            return DepositOutcome.LOCKED

    async def _report_shortfall(
        self,
        session: AsyncSession,
        deal: Deal,
        balance: Decimal,
        required: Decimal,
    ) -> None:
        sessions = SessionRepository(session)
        last = await sessions.get(deal.deal_id, SessionPurpose.DEPOSIT_SHORTFALL)
        if last is not None and Decimal(last["balance"]) == balance:
            return

        shortfall = quantize(required - balance)
        await sessions.put(
            deal.deal_id,
            SessionPurpose.DEPOSIT_SHORTFALL,
            {"balance": str(balance)},
            ttl=SHORTFALL_MEMORY,
        )
        await session.commit()
        logger.warning(
            "deposit.insufficient",
            deal_id=deal.deal_id,
            balance=str(balance),
            required=str(required),
            shortfall=str(shortfall),
        )
        await self._runtime.notify(
            NotificationEvent.DEAL_DEPOSIT_INSUFFICIENT,
            deal,
            recipients=(deal.buyer_id,),
            received=str(balance),
            required=str(required),
            shortfall=str(shortfall),
            tolerance=str(self._settings.deposit_tolerance),
            multisig_address=deal.multisig_address,
        )

    async def _activate(self, session: AsyncSession, deal: Deal) -> None:
        """Top up the new multisig with native currency, under the address's payout lock."""
        async with self._runtime.payout_locks.hold(deal.multisig_address):
            try:
                sent, fee = await WalletService(session, self._runtime).activate(deal)
            except EscrowError as e:
                logger.error("deposit.activation_failed", deal_id=deal.deal_id, error=e.message)
                return
        if sent > 0:
            deal.operational_costs = {
                **(deal.operational_costs or {}),
                "activation_sent": str(sent),
                "activation_tx_fee": str(fee),
            }
        await session.commit()

    async def _publish_locked(self, session: AsyncSession, deal: Deal) -> bool:
        if not await DealLifecycle(session).deals.claim_deposit_notification(deal):
            return False
        await session.commit()
        breakdown = CommissionBreakdown.for_deal(deal)
        await self._runtime.notify(
            NotificationEvent.DEAL_LOCKED,
            deal,
            amount=str(deal.amount),
            asset=deal.asset,
            received=str(deal.actual_deposit_amount),
            deposit_required=str(breakdown.deposit_required),
            seller_receives=str(breakdown.seller_receives),
            deposit_tx_hash=deal.deposit_tx_hash,
            explorer_url=self._runtime.explorer_url(deal.deposit_tx_hash),
            deadline=deal.deadline.isoformat(),
        )
        return True

    # ------------------------------------------------------------------
    # Recovery & health
    # ------------------------------------------------------------------

    async def recover_notifications(self) -> int:
        """Publish deal.locked for locked deals whose notification was never claimed."""
        recovered = 0
        async with self._session_factory() as session:
            deals = await DealLifecycle(session).deals.get_locked_unnotified(
                limit=self._settings.deposit_batch_size
            )
            for deal in deals:
                if await self._publish_locked(session, deal):
                    recovered += 1
                    logger.info("deposit.notification_recovered", deal_id=deal.deal_id)
        return recovered

    async def _track_health(self, sweep: DepositSweep) -> None:
        if not sweep.errors:
            if self.consecutive_failures:
                logger.info("deposit.monitor_recovered", after=self.consecutive_failures)
            self.consecutive_failures = 0
            return

        self.consecutive_failures += 1
        threshold = self._settings.deposit_alert_threshold
        if self.consecutive_failures == threshold:
            logger.error(
                "deposit.monitor_degraded",
                consecutive_failures=self.consecutive_failures,
            )
            await self._runtime.notify(
                NotificationEvent.MONITOR_ALERT,
                None,
                monitor="deposit",
                consecutive_failures=self.consecutive_failures,
                last_errors=sweep.errors,
            )

    @staticmethod
    def _log_check_failure(deal_id: str, error: BaseException) -> None:
        if isinstance(error, EscrowError):
            logger.warning("deposit.check_failed", deal_id=deal_id, code=error.code, error=error.message)
        else:
            logger.error("deposit.check_failed", deal_id=deal_id, error=repr(error))
