"""Domain layer: pure business logic with zero framework dependencies."""

from multisig_escrow.domain.commission import CommissionBreakdown, calculate_commission
from multisig_escrow.domain.enums import (
    CommissionType,
    DealStatus,
    EventType,
    NotificationEvent,
    ValidationType,
)
from multisig_escrow.domain.exceptions import (
    DealNotFoundError,
    EscrowError,
    InvalidStateTransitionError,
)
from multisig_escrow.domain.ledger import LedgerClient, ResourceMarket
from multisig_escrow.domain.notifications import DealNotification, NotificationPublisher
from multisig_escrow.domain.resource_acquisition import (
    CostLedger,
    FallbackFunded,
    Rented,
    ResourceAcquisition,
)
from multisig_escrow.domain.state_machine import DealStateMachine, validate_transition

__all__ = [
    "CommissionBreakdown",
    "calculate_commission",
    "CommissionType",
    "DealStatus",
    "EventType",
    "NotificationEvent",
    "ValidationType",
    "DealNotFoundError",
    "EscrowError",
    "InvalidStateTransitionError",
    "LedgerClient",
    "ResourceMarket",
    "DealNotification",
    "NotificationPublisher",
    "CostLedger",
    "FallbackFunded",
    "Rented",
    "ResourceAcquisition",
    "DealStateMachine",
    "validate_transition",
]
