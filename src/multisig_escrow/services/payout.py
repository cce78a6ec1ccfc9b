"""Payout orchestration: turns an authorized payout into confirmed transfers.

Sequence for one payout (serialized per multisig address):

    1. read the multisig balance               (<= 0          -> InsufficientBalanceError)
    2. payout = balance - commission           (<= 0          -> InsufficientBalanceError)
    3. acquire energy: rent it, or fall back to a one-off native top-up
    4. principal transfer -> Transaction(release | refund)
    5. commission transfer -> Transaction(fee); failure -> reconciliation task
    6. finalize: terminal status + cost ledger + deal.completed
    7. fallback only: sweep unspent top-up back to the service wallet

Steps 1-4 failing leave the deal in its last safe state with the gate
marker still set, so an arbiter can re-open the gate and retry. A failed
commission never undoes a confirmed principal transfer.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from multisig_escrow.domain.commission import quantize
from multisig_escrow.domain.enums import (
    DealStatus,
    EventType,
    NotificationEvent,
    PartyRole,
    TransactionType,
    ValidationType,
)
from multisig_escrow.domain.exceptions import (
    BroadcastError,
    EscrowError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    LedgerError,
    ResourceAcquisitionError,
    ValidationError,
)
from multisig_escrow.domain.resource_acquisition import (
    CostLedger,
    FallbackFunded,
    Rented,
    ResourceAcquisition,
)
from multisig_escrow.infrastructure.database.orm_models import ReconciliationTask
from multisig_escrow.infrastructure.database.repositories import (
    ReconciliationRepository,
    TransactionRepository,
)
from multisig_escrow.logging_config import get_logger
from multisig_escrow.services.lifecycle import DealLifecycle, next_status
from multisig_escrow.services.wallet_service import WalletService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from multisig_escrow.domain.ledger import LedgerClient, TransferReceipt
    from multisig_escrow.infrastructure.database.orm_models import Deal
    from multisig_escrow.services.runtime import EscrowRuntime

logger = get_logger(__name__)


@dataclass(frozen=True)
class PayoutResult:
    deal_id: str
    validation_type: ValidationType
    recipient: str
    payout_amount: Decimal
    payout_tx_hash: str
    commission_amount: Decimal
    commission_tx_hash: str | None
    cost_ledger: CostLedger

    @property
    def commission_transferred(self) -> bool:
        return self.cost_ledger.commission_transferred


async def sign_and_broadcast(
    ledger: LedgerClient,
    private_key: str,
    from_address: str,
    to_address: str,
    amount: Decimal,
    asset: str,
) -> TransferReceipt:
    """Build, sign and broadcast one transfer, waiting for the ledger's verdict."""
    unsigned = await ledger.build_transfer(from_address, to_address, amount, asset)
    signed = await ledger.sign(unsigned, private_key)
    return await ledger.broadcast(signed)


# ----------------------------------------------------------------------
# Resource acquisition
# ----------------------------------------------------------------------


class ResourceProvisioner:
    """Gets energy onto a multisig before a token transfer.

    Renting is preferred. When the market is disabled or a rental fails the
    multisig is funded once from the service wallet and no further rental or
    top-up happens for that payout.
    """

    def __init__(self, runtime: EscrowRuntime) -> None:
        self._runtime = runtime
        self._settings = runtime.settings

    async def fund_fallback(self, address: str, rental_cost: Decimal = Decimal("0")) -> FallbackFunded:
        settings = self._settings
        if not settings.service_wallet_private_key:
            raise ResourceAcquisitionError("No service wallet configured for fallback funding")
        try:
            receipt = await self._runtime.ledger.fund_account(
                settings.service_wallet_private_key,
                address,
                settings.fallback_topup_amount,
            )
        except LedgerError as e:
            raise ResourceAcquisitionError(f"Fallback top-up failed: {e.message}") from e
        if not receipt.success:
            raise ResourceAcquisitionError(f"Fallback top-up failed: {receipt.error}")

        logger.info(
            "payout.fallback_funded",
            address=address,
            amount=str(settings.fallback_topup_amount),
            tx_hash=receipt.tx_hash,
        )
        return FallbackFunded(
            sent=settings.fallback_topup_amount,
            tx_fee=settings.native_tx_fee,
            rental_cost=rental_cost,
            funding_tx_hash=receipt.tx_hash,
        )

    async def _rent(self, address: str, units: int) -> Rented | None:
        market = self._runtime.market
        if not market.enabled:
            return None
        result = await market.rent(address, units, self._settings.resource_rental_duration)
        if not result.success:
            logger.warning("payout.rental_failed", address=address, units=units, error=result.error)
            return None
        logger.info("payout.rented", address=address, units=result.units, cost=str(result.cost))
        return Rented(cost=result.cost, units=result.units)

    async def for_principal(self, address: str, recipient: str, amount: Decimal) -> ResourceAcquisition:
        """Acquire energy sized to the estimated cost of the principal transfer."""
        if self._runtime.market.enabled:
            units = await self._runtime.ledger.estimate_transfer_resource(address, recipient, amount)
            rented = await self._rent(address, units)
            if rented is not None:
                return rented
        return await self.fund_fallback(address)

    async def for_follow_up(
        self,
        address: str,
        acquisition: ResourceAcquisition | None,
    ) -> ResourceAcquisition:
        """Make sure a second transfer from `address` has energy.

        Reuses what is left when it covers one transfer, otherwise rents the
        difference. After a fallback top-up nothing more is acquired.
        """
        if isinstance(acquisition, FallbackFunded):
            return acquisition

        minimum = self._settings.energy_min_for_transfer
        available = await self._runtime.ledger.available_resource(address)
        if available >= minimum:
            logger.info("payout.energy_reused", address=address, available=available)
            return acquisition if acquisition is not None else Rented(cost=Decimal("0"))

        units = math.ceil((minimum - available) * self._settings.energy_multiplier)
        rented = await self._rent(address, units)
        if rented is not None:
            if acquisition is None:
                return rented
            return acquisition.add_rental(rented.cost, rented.units)

        prior = acquisition.cost if acquisition is not None else Decimal("0")
        return await self.fund_fallback(address, rental_cost=prior)

    async def sweep(self, deal_id: str, custodial_key: str, address: str) -> Decimal:
        """Return unspent top-up to the service wallet, keeping a fee reserve.

        Returns the amount sent back; zero when nothing was worth returning
        or the transfer failed.
        """
        settings = self._settings
        service_address = self._runtime.service_address
        if not service_address:
            return Decimal("0")

        await asyncio.sleep(settings.transfer_settle_seconds)
        ledger = self._runtime.ledger
        try:
            native = await ledger.get_balance(address, settings.native_asset)
            returnable = quantize(native - settings.sweep_reserve)
            if returnable <= settings.sweep_min_return:
                logger.info("payout.sweep_skipped", deal_id=deal_id, balance=str(native))
                return Decimal("0")
            receipt = await sign_and_broadcast(
                ledger, custodial_key, address, service_address, returnable, settings.native_asset
            )
        except LedgerError as e:
            logger.error("payout.sweep_failed", deal_id=deal_id, error=e.message)
            return Decimal("0")
        if not receipt.success:
            logger.error("payout.sweep_failed", deal_id=deal_id, error=receipt.error)
            return Decimal("0")

        logger.info("payout.swept", deal_id=deal_id, returned=str(returnable), tx_hash=receipt.tx_hash)
        return returnable


# ----------------------------------------------------------------------
# Orchestrator
# ----------------------------------------------------------------------


class PayoutOrchestrator:
    """Executes authorized payouts for a deal."""

    def __init__(self, session: AsyncSession, runtime: EscrowRuntime) -> None:
        self._session = session
        self._runtime = runtime
        self._settings = runtime.settings
        self._lifecycle = DealLifecycle(session)
        self._wallets = WalletService(session, runtime)
        self._tx_repo = TransactionRepository(session)
        self._reconciliation_repo = ReconciliationRepository(session)
        self._resources = ResourceProvisioner(runtime)

    async def execute(self, deal_id: str, validation_type: ValidationType) -> PayoutResult:
        """Run a payout. Raises EscrowError subclasses when it cannot complete.

        Every failure is audited as PAYOUT_FAILED and published as
        deal.payout_failed (with the support contact) before re-raising.
        """
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        async with self._runtime.payout_locks.hold(deal.multisig_address or deal.deal_id):
            try:
                return await self._execute_locked(deal_id, validation_type)
            except EscrowError as e:
                await self._report_failure(deal_id, validation_type, e)
                raise

    async def _execute_locked(self, deal_id: str, validation_type: ValidationType) -> PayoutResult:
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        await self._session.refresh(deal)
        if DealStatus(deal.status).is_terminal:
            raise InvalidStateTransitionError(deal.status, validation_type.terminal_event)
        next_status(deal.status, validation_type.terminal_event)
        if deal.pending_key_validation != validation_type.value:
            raise ValidationError(
                f"Deal {deal.deal_id} is not authorized for {validation_type.value}",
                code="PAYOUT_NOT_AUTHORIZED",
            )

        recipient = (
            deal.buyer_address
            if validation_type.beneficiary is PartyRole.BUYER
            else deal.seller_address
        )
        if not recipient:
            raise ValidationError(f"Deal {deal.deal_id} has no {validation_type.beneficiary} address")

        wallet = await self._wallets.get_for_deal(deal)
        address = wallet.address
        ledger = self._runtime.ledger

        # 1-2. Amounts
        balance = await ledger.get_balance(address, deal.asset)
        if balance <= 0:
            raise InsufficientBalanceError(address, str(balance), reason="multisig balance is empty")
        commission = quantize(deal.commission)
        payout_amount = quantize(balance - commission)
        if payout_amount <= 0:
            raise InsufficientBalanceError(address, str(balance), reason="balance too low")

        logger.info(
            "payout.started",
            deal_id=deal.deal_id,
            validation_type=validation_type.value,
            balance=str(balance),
            payout_amount=str(payout_amount),
            commission=str(commission),
        )

        # 3. Resources for the principal
        acquisition = await self._resources.for_principal(address, recipient, payout_amount)

        # 4. Principal
        custodial_key = self._wallets.custodial_key(wallet)
        receipt = await self._transfer(custodial_key, address, recipient, payout_amount, deal.asset)
        if not receipt.success or not receipt.tx_hash:
            raise BroadcastError(
                f"Principal transfer for deal {deal.deal_id} failed: {receipt.error}",
                tx_hash=receipt.tx_hash,
            )
        await self._tx_repo.record(
            deal_pk=deal.id,
            tx_type=validation_type.transaction_type,
            asset=deal.asset,
            amount=payout_amount,
            tx_hash=receipt.tx_hash,
            from_address=address,
            to_address=recipient,
            explorer_url=self._runtime.explorer_url(receipt.tx_hash),
        )
        await self._session.commit()
        logger.info(
            "payout.principal_confirmed",
            deal_id=deal.deal_id,
            tx_hash=receipt.tx_hash,
            amount=str(payout_amount),
        )

        # 5. Commission
        commission_tx_hash: str | None = None
        notes: list[str] = []
        if commission > 0:
            commission_tx_hash, acquisition, note = await self._transfer_commission(
                deal, custodial_key, address, commission, acquisition
            )
            if note:
                notes.append(note)

        # 6. Finalize
        costs = CostLedger(
            completion_type=validation_type.value,
            acquisition=acquisition,
            activation_sent=self._stored_cost(deal, "activation_sent"),
            activation_tx_fee=self._stored_cost(deal, "activation_tx_fee"),
            commission_transferred=commission <= 0 or commission_tx_hash is not None,
            notes=notes,
        )
        await self._finalize(deal, validation_type, costs, receipt.tx_hash, payout_amount)

        # 7. Sweep
        if isinstance(acquisition, FallbackFunded):
            costs = await self._sweep(deal, custodial_key, address, costs, acquisition)

        return PayoutResult(
            deal_id=deal.deal_id,
            validation_type=validation_type,
            recipient=recipient,
            payout_amount=payout_amount,
            payout_tx_hash=receipt.tx_hash,
            commission_amount=commission,
            commission_tx_hash=commission_tx_hash,
            cost_ledger=costs,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _transfer(
        self,
        private_key: str,
        from_address: str,
        to_address: str,
        amount: Decimal,
        asset: str,
    ) -> TransferReceipt:
        return await sign_and_broadcast(
            self._runtime.ledger, private_key, from_address, to_address, amount, asset
        )

    async def _transfer_commission(
        self,
        deal: Deal,
        custodial_key: str,
        address: str,
        commission: Decimal,
        acquisition: ResourceAcquisition,
    ) -> tuple[str | None, ResourceAcquisition, str | None]:
        """Send the commission. Returns (tx_hash or None, acquisition, note)."""
        service_address = self._runtime.service_address
        if not service_address:
            error = "no service wallet address configured"
            await self._record_commission_failure(deal, commission, None, error)
            return None, acquisition, error

        try:
            acquisition = await self._resources.for_follow_up(address, acquisition)
            receipt = await self._transfer(custodial_key, address, service_address, commission, deal.asset)
        except (LedgerError, ResourceAcquisitionError) as e:
            await self._record_commission_failure(deal, commission, service_address, e.message)
            return None, acquisition, f"commission transfer failed: {e.message}"

        if not receipt.success or not receipt.tx_hash:
            await self._record_commission_failure(deal, commission, service_address, receipt.error)
            return None, acquisition, f"commission transfer failed: {receipt.error}"

        await self._tx_repo.record(
            deal_pk=deal.id,
            tx_type=TransactionType.FEE,
            asset=deal.asset,
            amount=commission,
            tx_hash=receipt.tx_hash,
            from_address=address,
            to_address=service_address,
            explorer_url=self._runtime.explorer_url(receipt.tx_hash),
        )
        await self._session.commit()
        logger.info("payout.commission_confirmed", deal_id=deal.deal_id, tx_hash=receipt.tx_hash)
        return receipt.tx_hash, acquisition, None

    async def _record_commission_failure(
        self,
        deal: Deal,
        commission: Decimal,
        to_address: str | None,
        error: str | None,
    ) -> None:
        logger.error(
            "payout.commission_failed",
            deal_id=deal.deal_id,
            amount=str(commission),
            error=error,
        )
        if to_address:
            await self._reconciliation_repo.create(
                ReconciliationTask(
                    deal_pk=deal.id,
                    amount=commission,
                    asset=deal.asset,
                    to_address=to_address,
                    last_error=error,
                )
            )
        await self._lifecycle.record_event(
            deal,
            EventType.COMMISSION_FAILED,
            metadata={"amount": str(commission), "error": error},
        )
        await self._session.commit()
        await self._runtime.notify(
            NotificationEvent.DEAL_COMMISSION_FAILED,
            deal,
            recipients=(),
            amount=str(commission),
        )

    async def _finalize(
        self,
        deal: Deal,
        validation_type: ValidationType,
        costs: CostLedger,
        payout_tx_hash: str,
        payout_amount: Decimal,
    ) -> None:
        applied = await self._lifecycle.fire(
            deal,
            validation_type.terminal_event,
            EventType.PAYOUT_COMPLETED,
            metadata={
                "validation_type": validation_type.value,
                "payout_tx_hash": payout_tx_hash,
                "payout_amount": str(payout_amount),
                "commission_transferred": costs.commission_transferred,
            },
            pending_key_validation=None,
            completed_at=datetime.now(UTC),
            operational_costs=costs.to_dict(),
        )
        await self._session.commit()
        if not applied:
            # Funds already moved; the deal was changed underneath us.
            logger.error(
                "payout.finalize_lost",
                deal_id=deal.deal_id,
                status=deal.status,
                payout_tx_hash=payout_tx_hash,
            )
            return

        logger.info(
            "payout.completed",
            deal_id=deal.deal_id,
            status=deal.status,
            total_native_spent=str(costs.total_native_spent),
        )
        await self._runtime.notify(
            NotificationEvent.DEAL_COMPLETED,
            deal,
            status=deal.status,
            validation_type=validation_type.value,
            payout_amount=str(payout_amount),
            payout_tx_hash=payout_tx_hash,
            explorer_url=self._runtime.explorer_url(payout_tx_hash),
        )

    async def _sweep(
        self,
        deal: Deal,
        custodial_key: str,
        address: str,
        costs: CostLedger,
        funded: FallbackFunded,
    ) -> CostLedger:
        returned = await self._resources.sweep(deal.deal_id, custodial_key, address)
        if returned <= 0:
            return costs

        costs = CostLedger(
            completion_type=costs.completion_type,
            acquisition=funded.with_returned(returned),
            activation_sent=costs.activation_sent,
            activation_tx_fee=costs.activation_tx_fee,
            commission_transferred=costs.commission_transferred,
            notes=costs.notes,
        )
        deal.operational_costs = costs.to_dict()
        await self._session.commit()
        return costs

    async def _report_failure(
        self,
        deal_id: str,
        validation_type: ValidationType,
        error: EscrowError,
    ) -> None:
        await self._session.rollback()
        deal = await self._lifecycle.get_deal_or_raise(deal_id)
        logger.error(
            "payout.failed",
            deal_id=deal_id,
            validation_type=validation_type.value,
            code=error.code,
            error=error.message,
        )
        await self._lifecycle.record_event(
            deal,
            EventType.PAYOUT_FAILED,
            metadata={"validation_type": validation_type.value, "code": error.code},
        )
        await self._session.commit()
        beneficiary = (
            deal.buyer_id if validation_type.beneficiary is PartyRole.BUYER else deal.seller_id
        )
        await self._runtime.notify(
            NotificationEvent.DEAL_PAYOUT_FAILED,
            deal,
            recipients=(beneficiary,),
            validation_type=validation_type.value,
            support_contact=self._settings.support_contact,
        )

    @staticmethod
    def _stored_cost(deal: Deal, key: str) -> Decimal:
        return Decimal(str((deal.operational_costs or {}).get(key, "0")))
