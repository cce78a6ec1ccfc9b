"""Application services: use case orchestration."""

from multisig_escrow.services.deal_service import DealCreated, DealService, WalletProvided
from multisig_escrow.services.dispute_service import DisputeService
from multisig_escrow.services.key_validation import GateOutcome, GateStatus, KeyValidationGate
from multisig_escrow.services.payout import PayoutOrchestrator, PayoutResult
from multisig_escrow.services.reconciliation_service import ReconciliationService
from multisig_escrow.services.runtime import EscrowRuntime, build_runtime

__all__ = [
    "DealCreated",
    "DealService",
    "DisputeService",
    "EscrowRuntime",
    "GateOutcome",
    "GateStatus",
    "KeyValidationGate",
    "PayoutOrchestrator",
    "PayoutResult",
    "ReconciliationService",
    "WalletProvided",
    "build_runtime",
]
