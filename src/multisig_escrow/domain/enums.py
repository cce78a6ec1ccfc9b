"""Domain enumerations for the multisig escrow engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class DealStatus(enum.StrEnum):
    """Lifecycle states of a deal.

    State transitions are enforced by the DealStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    CREATED = "created"
    WAITING_FOR_SELLER_WALLET = "waiting_for_seller_wallet"
    WAITING_FOR_BUYER_WALLET = "waiting_for_buyer_wallet"
    WAITING_FOR_DEPOSIT = "waiting_for_deposit"
    LOCKED = "locked"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISPUTE = "dispute"
    RESOLVED = "resolved"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {DealStatus.COMPLETED, DealStatus.RESOLVED, DealStatus.EXPIRED, DealStatus.CANCELLED}
)

# A party may hold at most one deal in these states.
ACTIVE_STATUSES = frozenset(
    {
        DealStatus.WAITING_FOR_DEPOSIT,
        DealStatus.LOCKED,
        DealStatus.IN_PROGRESS,
        DealStatus.DISPUTE,
    }
)

CANCELLABLE_STATUSES = frozenset(
    {
        DealStatus.CREATED,
        DealStatus.WAITING_FOR_SELLER_WALLET,
        DealStatus.WAITING_FOR_BUYER_WALLET,
        DealStatus.WAITING_FOR_DEPOSIT,
    }
)


class PartyRole(enum.StrEnum):
    BUYER = "buyer"
    SELLER = "seller"


class CommissionType(enum.StrEnum):
    """Who bears the service commission."""

    BUYER = "buyer"
    SELLER = "seller"
    SPLIT = "split"


class ValidationType(enum.StrEnum):
    """Payout kinds gated by the key validation gate.

    Stored in deals.pending_key_validation while a gate is open.
    """

    SELLER_PAYOUT = "seller_payout"
    SELLER_RELEASE = "seller_release"
    BUYER_REFUND = "buyer_refund"
    DISPUTE_SELLER = "dispute_seller"
    DISPUTE_BUYER = "dispute_buyer"

    @property
    def beneficiary(self) -> PartyRole:
        """The party whose secret authorizes this payout and who receives it."""
        if self in (ValidationType.BUYER_REFUND, ValidationType.DISPUTE_BUYER):
            return PartyRole.BUYER
        return PartyRole.SELLER

    @property
    def transaction_type(self) -> "TransactionType":
        if self.beneficiary is PartyRole.BUYER:
            return TransactionType.REFUND
        return TransactionType.RELEASE

    @property
    def terminal_status(self) -> DealStatus:
        if self is ValidationType.BUYER_REFUND:
            return DealStatus.EXPIRED
        if self in (ValidationType.DISPUTE_SELLER, ValidationType.DISPUTE_BUYER):
            return DealStatus.RESOLVED
        return DealStatus.COMPLETED

    @property
    def terminal_event(self) -> str:
        """State machine event that finalizes a deal paid out this way."""
        return {
            DealStatus.COMPLETED: "release_to_seller",
            DealStatus.EXPIRED: "expire_deal",
            DealStatus.RESOLVED: "settle_dispute",
        }[self.terminal_status]


class TransactionType(enum.StrEnum):
    DEPOSIT = "deposit"
    RELEASE = "release"
    REFUND = "refund"
    FEE = "fee"


class DisputeDecision(enum.StrEnum):
    REFUND_BUYER = "refund_buyer"
    RELEASE_SELLER = "release_seller"

    @property
    def validation_type(self) -> ValidationType:
        if self is DisputeDecision.REFUND_BUYER:
            return ValidationType.DISPUTE_BUYER
        return ValidationType.DISPUTE_SELLER


class DisputeStatus(enum.StrEnum):
    OPEN = "open"
    RESOLVED = "resolved"


class EnergyMethod(enum.StrEnum):
    """How transfer resources were obtained for a payout."""

    RENTED = "rented"
    FALLBACK = "fallback"
    NONE = "none"


class ReconciliationStatus(enum.StrEnum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class SessionPurpose(enum.StrEnum):
    """Purposes for TTL session records, keyed together with an actor id."""

    KEY_VALIDATION = "key_validation"
    DEADLINE_WARNING = "deadline_warning"
    DEPOSIT_SHORTFALL = "deposit_shortfall"


class EventType(enum.StrEnum):
    """Types of audit events recorded in the deal_events table.

    Every state transition MUST produce exactly one event.
    This is the append-only forensic trail for disputes.
    """

    # Lifecycle events
    DEAL_CREATED = "DEAL_CREATED"
    WALLET_REQUESTED = "WALLET_REQUESTED"
    WALLET_PROVIDED = "WALLET_PROVIDED"
    DEPOSIT_CONFIRMED = "DEPOSIT_CONFIRMED"
    WORK_SUBMITTED = "WORK_SUBMITTED"
    WORK_ACCEPTED = "WORK_ACCEPTED"
    DEAL_CANCELLED = "DEAL_CANCELLED"

    # Deadline events
    DEADLINE_WARNING = "DEADLINE_WARNING"
    DEAL_EXPIRED_EMPTY = "DEAL_EXPIRED_EMPTY"

    # Authorization events
    PAYOUT_AUTHORIZATION_REQUESTED = "PAYOUT_AUTHORIZATION_REQUESTED"
    KEY_VALIDATION_PASSED = "KEY_VALIDATION_PASSED"
    KEY_VALIDATION_FAILED = "KEY_VALIDATION_FAILED"

    # Settlement events
    PAYOUT_COMPLETED = "PAYOUT_COMPLETED"
    PAYOUT_FAILED = "PAYOUT_FAILED"
    COMMISSION_FAILED = "COMMISSION_FAILED"
    COMMISSION_RECONCILED = "COMMISSION_RECONCILED"

    # Dispute events
    DISPUTE_OPENED = "DISPUTE_OPENED"
    DISPUTE_DECIDED = "DISPUTE_DECIDED"


class NotificationEvent(enum.StrEnum):
    """Events published to the notification layer."""

    DEAL_AWAITING_DEPOSIT = "deal.awaiting_deposit"
    DEAL_LOCKED = "deal.locked"
    DEAL_WORK_SUBMITTED = "deal.work_submitted"
    DEAL_DEADLINE_WARNING = "deal.deadline_warning"
    DEAL_PAYOUT_AUTHORIZATION_REQUESTED = "deal.payout_authorization_requested"
    DEAL_COMPLETED = "deal.completed"
    DEAL_PAYOUT_FAILED = "deal.payout_failed"
    DEAL_DEPOSIT_INSUFFICIENT = "deal.deposit_insufficient"
    DEAL_CANCELLED = "deal.cancelled"
    DEAL_EXPIRED = "deal.expired"
    DEAL_DISPUTE_OPENED = "deal.dispute_opened"
    DEAL_COMMISSION_FAILED = "deal.commission_failed"
    MONITOR_ALERT = "monitor.alert"
