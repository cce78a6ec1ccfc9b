"""Domain exceptions for the multisig escrow engine.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.
"""


class EscrowError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Validation Errors ---


class ValidationError(EscrowError):
    """Rejected input. Raised before any state change."""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message=message, code=code)


class InvalidAddressError(ValidationError):
    """Raised when a settlement address fails the format or existence check."""

    def __init__(self, address: str, reason: str) -> None:
        super().__init__(
            message=f"Invalid wallet address {address}: {reason}",
            code="INVALID_ADDRESS",
        )
        self.address = address
        self.reason = reason


class AmountBelowMinimumError(ValidationError):
    def __init__(self, amount: str, minimum: str) -> None:
        super().__init__(
            message=f"Deal amount {amount} is below the minimum of {minimum}",
            code="AMOUNT_BELOW_MINIMUM",
        )


class UnsupportedAssetError(ValidationError):
    def __init__(self, asset: str) -> None:
        super().__init__(message=f"Unsupported asset: {asset}", code="UNSUPPORTED_ASSET")


class NotAParticipantError(ValidationError):
    """Raised when an actor acts on a deal they are not a party to (or the wrong party)."""

    def __init__(self, deal_id: str, actor_id: str) -> None:
        super().__init__(
            message=f"{actor_id} may not perform this action on deal {deal_id}",
            code="NOT_A_PARTICIPANT",
        )


class DepositAlreadyReceivedError(ValidationError):
    """Raised when cancelling a deal whose multisig already holds funds."""

    def __init__(self, deal_id: str) -> None:
        super().__init__(
            message=f"Deal {deal_id} already received funds and cannot be cancelled",
            code="DEPOSIT_ALREADY_RECEIVED",
        )


# --- Conflict Errors ---


class ActiveDealExistsError(EscrowError):
    """Raised when a party already participates in an active deal."""

    def __init__(self, party_id: str) -> None:
        super().__init__(
            message=f"Party {party_id} already has an active deal",
            code="ACTIVE_DEAL_EXISTS",
        )
        self.party_id = party_id


class DuplicateDealError(EscrowError):
    """Raised when an active deal with the same parties and context exists."""

    def __init__(self, existing_deal_id: str) -> None:
        super().__init__(
            message=f"A similar deal already exists between these parties: {existing_deal_id}",
            code="DUPLICATE_DEAL",
        )


class DuplicateOperationError(EscrowError):
    """Raised when a duplicate idempotency key is detected."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {idempotency_key}",
            code="DUPLICATE_OPERATION",
        )


# --- State Machine Errors ---


class InvalidStateTransitionError(EscrowError):
    """Raised when an attempted state transition is not allowed.

    Terminal deals reject every transition through this error.
    """

    def __init__(self, current_state: str, attempted_event: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {attempted_event} from {current_state}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted_event = attempted_event


# --- Lookup Errors ---


class DealNotFoundError(EscrowError):
    def __init__(self, deal_id: str) -> None:
        super().__init__(message=f"Deal not found: {deal_id}", code="DEAL_NOT_FOUND")
        self.deal_id = deal_id


class DisputeNotFoundError(EscrowError):
    def __init__(self, deal_id: str) -> None:
        super().__init__(
            message=f"No open dispute for deal: {deal_id}",
            code="DISPUTE_NOT_FOUND",
        )


class DisputeAlreadyOpenError(EscrowError):
    def __init__(self, deal_id: str) -> None:
        super().__init__(
            message=f"Dispute already exists for deal: {deal_id}",
            code="DISPUTE_ALREADY_OPEN",
        )


# --- Authorization Errors ---


class AuthorizationError(EscrowError):
    def __init__(self, message: str, code: str = "AUTHORIZATION_ERROR") -> None:
        super().__init__(message=message, code=code)


class NotAnArbiterError(AuthorizationError):
    def __init__(self, actor_id: str) -> None:
        super().__init__(
            message=f"{actor_id} is not an arbiter",
            code="NOT_AN_ARBITER",
        )


# --- Ledger Errors ---


class LedgerError(EscrowError):
    """Raised when a ledger query or broadcast fails.

    Fatal for the current step; the deal stays in its last safe state.
    """

    def __init__(self, message: str, code: str = "LEDGER_ERROR") -> None:
        super().__init__(message=message, code=code)


class InsufficientBalanceError(LedgerError):
    """Raised when the multisig balance cannot cover a payout."""

    def __init__(self, address: str, balance: str, reason: str = "insufficient balance") -> None:
        super().__init__(
            message=f"{reason}: {address} holds {balance}",
            code="INSUFFICIENT_BALANCE",
        )
        self.address = address
        self.balance = balance


class BroadcastError(LedgerError):
    """Raised when a signed transfer is rejected or never confirmed."""

    def __init__(self, message: str, tx_hash: str | None = None) -> None:
        super().__init__(message=message, code="BROADCAST_FAILED")
        self.tx_hash = tx_hash


# --- Resource Errors ---


class ResourceAcquisitionError(EscrowError):
    """Raised when transfer resources can be neither rented nor funded."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="RESOURCE_ACQUISITION_FAILED")


# --- Configuration Errors ---


class ConfigurationError(EscrowError):
    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="CONFIGURATION_ERROR")
