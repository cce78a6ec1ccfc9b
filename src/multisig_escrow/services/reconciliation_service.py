"""Commission reconciliation.

A commission transfer that failed after the principal was confirmed leaves
a pending reconciliation task. This service retries those transfers under
the same per-address payout lock, records the fee transaction on success,
and gives up on a task after the configured number of attempts.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from multisig_escrow.domain.enums import (
    EventType,
    ReconciliationStatus,
    TransactionType,
)
from multisig_escrow.domain.exceptions import (
    EscrowError,
    InsufficientBalanceError,
)
from multisig_escrow.domain.resource_acquisition import FallbackFunded, ResourceAcquisition
from multisig_escrow.infrastructure.database.repositories import (
    DealRepository,
    ReconciliationRepository,
    TransactionRepository,
)
from multisig_escrow.logging_config import get_logger
from multisig_escrow.services.lifecycle import DealLifecycle
from multisig_escrow.services.payout import ResourceProvisioner, sign_and_broadcast
from multisig_escrow.services.wallet_service import WalletService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from multisig_escrow.infrastructure.database.orm_models import Deal, ReconciliationTask
    from multisig_escrow.services.runtime import EscrowRuntime

logger = get_logger(__name__)


@dataclass
class ReconciliationSummary:
    done: int = 0
    retrying: int = 0
    failed: int = 0


class ReconciliationService:
    def __init__(self, session: AsyncSession, runtime: EscrowRuntime) -> None:
        self._session = session
        self._runtime = runtime
        self._settings = runtime.settings
        self._deal_repo = DealRepository(session)
        self._task_repo = ReconciliationRepository(session)
        self._tx_repo = TransactionRepository(session)
        self._lifecycle = DealLifecycle(session)
        self._wallets = WalletService(session, runtime)
        self._resources = ResourceProvisioner(runtime)

    async def run_pending(self, limit: int = 20) -> ReconciliationSummary:
        """Retry every pending commission transfer once."""
        summary = ReconciliationSummary()
        for task in await self._task_repo.get_pending(limit=limit):
            await self._reconcile(task)
            if task.status == ReconciliationStatus.DONE.value:
                summary.done += 1
            elif task.status == ReconciliationStatus.FAILED.value:
                summary.failed += 1
            else:
                summary.retrying += 1
        if summary.done or summary.failed or summary.retrying:
            logger.info(
                "reconciliation.run_complete",
                done=summary.done,
                retrying=summary.retrying,
                failed=summary.failed,
            )
        return summary

    async def _reconcile(self, task: ReconciliationTask) -> None:
        deal = await self._deal_repo.get_by_id(task.deal_pk)
        if deal is None:
            await self._fail(task, "deal no longer exists")
            return
        try:
            wallet = await self._wallets.get_for_deal(deal)
        except EscrowError as e:
            await self._fail(task, e.message)
            return
        address = wallet.address

        async with self._runtime.payout_locks.hold(address):
            ledger = self._runtime.ledger
            acquisition: ResourceAcquisition | None = None
            try:
                custodial_key = self._wallets.custodial_key(wallet)
                balance = await ledger.get_balance(address, task.asset)
                if balance < task.amount:
                    raise InsufficientBalanceError(address, str(balance), reason="below commission")
                acquisition = await self._resources.for_follow_up(address, None)
                receipt = await sign_and_broadcast(
                    ledger,
                    custodial_key,
                    address,
                    task.to_address,
                    task.amount,
                    task.asset,
                )
            except EscrowError as e:
                if isinstance(acquisition, FallbackFunded):
                    await self._settle_top_up(deal, custodial_key, address, acquisition)
                await self._fail(task, e.message)
                return
            if isinstance(acquisition, FallbackFunded):
                await self._settle_top_up(deal, custodial_key, address, acquisition)
            if not receipt.success or not receipt.tx_hash:
                await self._fail(task, receipt.error or "broadcast failed")
                return

            await self._tx_repo.record(
                deal_pk=deal.id,
                tx_type=TransactionType.FEE,
                asset=task.asset,
                amount=task.amount,
                tx_hash=receipt.tx_hash,
                from_address=address,
                to_address=task.to_address,
                explorer_url=self._runtime.explorer_url(receipt.tx_hash),
            )
            await self._task_repo.mark_done(task, receipt.tx_hash)
            if deal.operational_costs is not None:
                deal.operational_costs = {**deal.operational_costs, "commission_transferred": True}
            await self._lifecycle.record_event(
                deal,
                EventType.COMMISSION_RECONCILED,
                metadata={"amount": str(task.amount), "tx_hash": receipt.tx_hash},
            )
            await self._session.commit()

        logger.info(
            "reconciliation.commission_transferred",
            deal_id=deal.deal_id,
            amount=str(task.amount),
            tx_hash=receipt.tx_hash,
        )

    async def _settle_top_up(
        self,
        deal: Deal,
        custodial_key: str,
        address: str,
        funded: FallbackFunded,
    ) -> None:
        """Sweep a retry's top-up back and add what it cost to the deal's ledger."""
        returned = await self._resources.sweep(deal.deal_id, custodial_key, address)
        spent = funded.sent + funded.tx_fee + funded.rental_cost
        costs = dict(deal.operational_costs or {})
        for key, amount in (
            ("reconciliation_native_sent", spent),
            ("reconciliation_native_returned", returned),
        ):
            costs[key] = str(Decimal(str(costs.get(key, "0"))) + amount)
        deal.operational_costs = costs
        await self._session.commit()
        logger.info(
            "reconciliation.top_up_settled",
            deal_id=deal.deal_id,
            sent=str(spent),
            returned=str(returned),
        )

    async def _fail(self, task: ReconciliationTask, error: str) -> None:
        await self._task_repo.record_failure(
            task, error, max_attempts=self._settings.reconciliation_max_attempts
        )
        await self._session.commit()
        log = logger.error if task.status == ReconciliationStatus.FAILED.value else logger.warning
        log(
            "reconciliation.attempt_failed",
            task_id=str(task.id),
            attempts=task.attempts,
            status=task.status,
            error=error,
        )
