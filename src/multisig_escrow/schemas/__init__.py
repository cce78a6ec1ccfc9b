"""Pydantic API schemas."""

from multisig_escrow.schemas.deals import (
    CancelDealRequest,
    CreateDealRequest,
    DealEventResponse,
    DealResponse,
    DealSecretResponse,
    DealStatusResponse,
    DisputeResponse,
    HealthResponse,
    KeyValidationResponse,
    OpenDisputeRequest,
    PartyActionRequest,
    ProvideWalletRequest,
    QuoteResponse,
    ReopenGateRequest,
    ResolveDisputeRequest,
    SubmitKeyRequest,
    TransactionResponse,
)

__all__ = [
    "CancelDealRequest",
    "CreateDealRequest",
    "DealEventResponse",
    "DealResponse",
    "DealSecretResponse",
    "DealStatusResponse",
    "DisputeResponse",
    "HealthResponse",
    "KeyValidationResponse",
    "OpenDisputeRequest",
    "PartyActionRequest",
    "ProvideWalletRequest",
    "QuoteResponse",
    "ReopenGateRequest",
    "ResolveDisputeRequest",
    "SubmitKeyRequest",
    "TransactionResponse",
]
