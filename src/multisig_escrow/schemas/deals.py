"""Pydantic schemas for the Deal API.

These schemas define the request/response shapes for the REST API. They are
separate from the ORM models to maintain clean boundaries between the API
and database layers. No response schema carries key material except
DealSecretResponse, which is returned exactly once per party.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - resolved at runtime by pydantic
from datetime import datetime  # noqa: TC003 - resolved at runtime by pydantic
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from multisig_escrow.domain.commission import CommissionBreakdown  # noqa: TC001
from multisig_escrow.domain.enums import CommissionType, DisputeDecision, PartyRole

SECRET_NOTICE = (
    "Store this key safely. It is shown only once and is required to "
    "authorize any payout to you."
)

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateDealRequest(BaseModel):
    """Request body for creating a new deal."""

    creator_role: PartyRole = Field(
        ...,
        description="Which side of the deal the creator is on",
        examples=["buyer"],
    )
    buyer_id: str = Field(..., min_length=1, max_length=64, examples=["user-1001"])
    seller_id: str = Field(..., min_length=1, max_length=64, examples=["user-2002"])
    description: str = Field(
        ...,
        min_length=3,
        max_length=5000,
        description="What the seller delivers",
        examples=["Logo design, three revisions"],
    )
    product_name: str | None = Field(default=None, max_length=200)
    amount: Decimal = Field(
        ...,
        gt=0,
        decimal_places=6,
        description="Deal principal in the deal asset",
        examples=[250],
    )
    asset: str = Field(default="USDT", min_length=2, max_length=10)
    deadline_hours: float = Field(
        ...,
        gt=0,
        le=24 * 90,
        description="Hours from creation until the deal deadline",
        examples=[72],
    )
    commission_type: CommissionType = Field(
        default=CommissionType.BUYER,
        description="Who bears the service commission",
    )
    creator_address: str = Field(
        ...,
        min_length=20,
        max_length=64,
        description="Creator's settlement address on the ledger",
    )
    idempotency_key: str | None = Field(
        default=None,
        max_length=128,
        description="Optional idempotency key to prevent duplicate deal creation",
    )


class ProvideWalletRequest(BaseModel):
    """The counterparty supplies its settlement address."""

    actor_id: str = Field(..., min_length=1, max_length=64)
    address: str = Field(..., min_length=20, max_length=64)


class PartyActionRequest(BaseModel):
    """Request body for a party action without payload (submit work, accept work)."""

    actor_id: str = Field(..., min_length=1, max_length=64)


class CancelDealRequest(BaseModel):
    actor_id: str = Field(..., min_length=1, max_length=64)
    reason: str | None = Field(default=None, max_length=2000)


class OpenDisputeRequest(BaseModel):
    """Request body for opening a dispute on a funded deal."""

    actor_id: str = Field(..., min_length=1, max_length=64)
    reason: str = Field(
        ...,
        min_length=10,
        max_length=2000,
        description="Detailed reason for the dispute",
    )


class ResolveDisputeRequest(BaseModel):
    arbiter_id: str = Field(..., min_length=1, max_length=64)
    decision: DisputeDecision


class ReopenGateRequest(BaseModel):
    arbiter_id: str = Field(..., min_length=1, max_length=64)


class SubmitKeyRequest(BaseModel):
    """A party answers its open payout authorization with its secret."""

    actor_id: str = Field(..., min_length=1, max_length=64)
    secret: SecretStr = Field(..., min_length=1, max_length=256)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class QuoteResponse(BaseModel):
    """Commission breakdown. Every surface quotes these same figures."""

    amount: Decimal
    commission: Decimal
    commission_type: CommissionType
    buyer_pays: Decimal
    seller_pays: Decimal
    deposit_required: Decimal
    seller_receives: Decimal

    @classmethod
    def from_breakdown(cls, breakdown: CommissionBreakdown) -> QuoteResponse:
        return cls(
            amount=breakdown.amount,
            commission=breakdown.commission,
            commission_type=breakdown.commission_type,
            buyer_pays=breakdown.buyer_pays,
            seller_pays=breakdown.seller_pays,
            deposit_required=breakdown.deposit_required,
            seller_receives=breakdown.seller_receives,
        )


class DealResponse(BaseModel):
    """Response schema for a deal."""

    model_config = ConfigDict(from_attributes=True)

    deal_id: str
    status: str
    creator_role: str
    buyer_id: str
    seller_id: str
    buyer_address: str | None
    seller_address: str | None
    product_name: str | None
    description: str
    asset: str
    amount: Decimal
    commission: Decimal
    commission_type: str
    deadline: datetime
    multisig_address: str | None
    deposit_tx_hash: str | None
    actual_deposit_amount: Decimal | None
    pending_key_validation: str | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class DealSecretResponse(BaseModel):
    """A deal plus the caller's one-time secret."""

    deal: DealResponse
    quote: QuoteResponse
    secret: str
    notice: str = SECRET_NOTICE


class DealStatusResponse(BaseModel):
    """Lightweight status check response."""

    deal_id: str
    status: str
    pending_key_validation: str | None
    deadline: datetime
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )


class DealEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    type: str
    asset: str
    amount: Decimal
    tx_hash: str
    from_address: str | None
    to_address: str | None
    status: str
    explorer_url: str | None
    created_at: datetime


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    opened_by: str
    reason: str
    status: str
    decision: str | None
    resolved_by: str | None
    resolved_at: datetime | None
    created_at: datetime


class KeyValidationResponse(BaseModel):
    """Outcome of a secret submission. Never echoes the secret."""

    status: str
    deal_id: str | None = None
    attempts: int = 0
    message: str | None = None
    payout_amount: Decimal | None = None
    payout_tx_hash: str | None = None
    commission_tx_hash: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
    scheduler: str = "disabled"
