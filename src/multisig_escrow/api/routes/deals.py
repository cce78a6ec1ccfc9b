"""Deal REST API routes.

These endpoints are the HTTP surface of the escrow engine. The simulation
script and the scheduled monitors call the same service layer.

Routes:
    POST   /api/v1/deals                          Create a deal (returns creator secret)
    GET    /api/v1/deals                          List deals
    GET    /api/v1/deals/{id}                     Deal details and quote
    GET    /api/v1/deals/{id}/status              Lightweight status check
    GET    /api/v1/deals/{id}/events              Audit trail
    GET    /api/v1/deals/{id}/transactions        Ledger transactions
    GET    /api/v1/deals/{id}/quote               Commission breakdown
    POST   /api/v1/deals/{id}/wallet              Counterparty address (returns its secret)
    POST   /api/v1/deals/{id}/submit-work         Seller delivers
    POST   /api/v1/deals/{id}/accept              Buyer accepts, seller payout gated
    POST   /api/v1/deals/{id}/cancel              Cancel an unfunded deal
    POST   /api/v1/deals/{id}/disputes            Open a dispute
    GET    /api/v1/deals/{id}/disputes            Latest dispute
    POST   /api/v1/deals/{id}/disputes/resolve    Arbiter decision
    POST   /api/v1/deals/{id}/key-validation      Arbiter re-opens the pending gate
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from multisig_escrow.api.deps import get_deal_service, get_dispute_service
from multisig_escrow.domain.commission import CommissionBreakdown
from multisig_escrow.domain.enums import DealStatus
from multisig_escrow.domain.exceptions import DuplicateOperationError
from multisig_escrow.infrastructure import redis_client
from multisig_escrow.logging_config import get_logger
from multisig_escrow.schemas.deals import (
    CancelDealRequest,
    CreateDealRequest,
    DealEventResponse,
    DealResponse,
    DealSecretResponse,
    DealStatusResponse,
    DisputeResponse,
    OpenDisputeRequest,
    PartyActionRequest,
    ProvideWalletRequest,
    QuoteResponse,
    ReopenGateRequest,
    ResolveDisputeRequest,
    TransactionResponse,
)
from multisig_escrow.services.deal_service import DealService
from multisig_escrow.services.dispute_service import DisputeService

router = APIRouter(prefix="/api/v1/deals", tags=["Deals"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=DealSecretResponse,
    status_code=201,
    summary="Create a new deal",
)
async def create_deal(
    request: CreateDealRequest,
    svc: DealService = Depends(get_deal_service),
) -> DealSecretResponse:
    """Create a deal with its multisig wallet. The creator's secret is returned once."""
    key = request.idempotency_key
    if key and redis_client.redis_available():
        existing = await redis_client.get_idempotent_result(key)
        if existing is not None:
            logger.warning("deal.duplicate_request", idempotency_key=key, deal_id=existing)
            raise DuplicateOperationError(key)

    created = await svc.create_deal(
        creator_role=request.creator_role,
        buyer_id=request.buyer_id,
        seller_id=request.seller_id,
        description=request.description,
        amount=request.amount,
        deadline_hours=request.deadline_hours,
        commission_type=request.commission_type,
        creator_address=request.creator_address,
        asset=request.asset,
        product_name=request.product_name,
    )
    if key and redis_client.redis_available():
        await redis_client.set_idempotency(key, created.deal.deal_id)

    return DealSecretResponse(
        deal=DealResponse.model_validate(created.deal),
        quote=QuoteResponse.from_breakdown(created.breakdown),
        secret=created.secret,
    )


# ---------------------------------------------------------------------------
# Wallet collection
# ---------------------------------------------------------------------------


@router.post(
    "/{deal_id}/wallet",
    response_model=DealSecretResponse,
    summary="Counterparty provides its settlement address",
)
async def provide_wallet(
    deal_id: str,
    request: ProvideWalletRequest,
    svc: DealService = Depends(get_deal_service),
) -> DealSecretResponse:
    """Transitions waiting_for_*_wallet -> waiting_for_deposit. Returns the party's secret once."""
    provided = await svc.provide_wallet(deal_id, request.actor_id, request.address)
    return DealSecretResponse(
        deal=DealResponse.model_validate(provided.deal),
        quote=QuoteResponse.from_breakdown(provided.breakdown),
        secret=provided.secret,
    )


# ---------------------------------------------------------------------------
# Work
# ---------------------------------------------------------------------------


@router.post(
    "/{deal_id}/submit-work",
    response_model=DealResponse,
    summary="Seller submits the work",
)
async def submit_work(
    deal_id: str,
    request: PartyActionRequest,
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    deal = await svc.submit_work(deal_id, request.actor_id)
    return DealResponse.model_validate(deal)


@router.post(
    "/{deal_id}/accept",
    response_model=DealResponse,
    summary="Buyer accepts the work",
)
async def accept_work(
    deal_id: str,
    request: PartyActionRequest,
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    """Opens the seller payout gate. Funds move only once the seller submits its key."""
    deal = await svc.accept_work(deal_id, request.actor_id)
    return DealResponse.model_validate(deal)


@router.post(
    "/{deal_id}/cancel",
    response_model=DealResponse,
    summary="Cancel an unfunded deal",
)
async def cancel_deal(
    deal_id: str,
    request: CancelDealRequest,
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    deal = await svc.cancel_deal(deal_id, request.actor_id, reason=request.reason)
    return DealResponse.model_validate(deal)


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


@router.post(
    "/{deal_id}/disputes",
    response_model=DisputeResponse,
    status_code=201,
    summary="Open a dispute",
)
async def open_dispute(
    deal_id: str,
    request: OpenDisputeRequest,
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    """Valid from locked or in_progress. Supersedes any pending payout gate."""
    dispute = await svc.open_dispute(deal_id, request.actor_id, request.reason)
    return DisputeResponse.model_validate(dispute)


@router.get(
    "/{deal_id}/disputes",
    response_model=DisputeResponse,
    summary="Get the latest dispute",
)
async def get_dispute(
    deal_id: str,
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    dispute = await svc.get_dispute(deal_id)
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{deal_id}/disputes/resolve",
    response_model=DealResponse,
    summary="Arbiter resolves a dispute",
)
async def resolve_dispute(
    deal_id: str,
    request: ResolveDisputeRequest,
    svc: DisputeService = Depends(get_dispute_service),
) -> DealResponse:
    """Gates the winner's payout; the deal resolves once the winner submits its key."""
    deal = await svc.resolve_dispute(deal_id, request.arbiter_id, request.decision)
    return DealResponse.model_validate(deal)


@router.post(
    "/{deal_id}/key-validation",
    response_model=DealResponse,
    summary="Arbiter re-opens the pending payout gate",
)
async def reopen_gate(
    deal_id: str,
    request: ReopenGateRequest,
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    deal = await svc.reopen_gate(deal_id, request.arbiter_id)
    return DealResponse.model_validate(deal)


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=list[DealResponse],
    summary="List deals",
)
async def list_deals(
    status: DealStatus | None = None,
    party_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    svc: DealService = Depends(get_deal_service),
) -> list[DealResponse]:
    deals = await svc.list_deals(status=status, party_id=party_id, limit=limit)
    return [DealResponse.model_validate(d) for d in deals]


@router.get(
    "/{deal_id}",
    response_model=DealResponse,
    summary="Get deal details",
)
async def get_deal(
    deal_id: str,
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    deal = await svc.get_deal(deal_id)
    return DealResponse.model_validate(deal)


@router.get(
    "/{deal_id}/quote",
    response_model=QuoteResponse,
    summary="Get the commission breakdown",
)
async def get_quote(
    deal_id: str,
    svc: DealService = Depends(get_deal_service),
) -> QuoteResponse:
    breakdown: CommissionBreakdown = await svc.quote(deal_id)
    return QuoteResponse.from_breakdown(breakdown)


@router.get(
    "/{deal_id}/status",
    response_model=DealStatusResponse,
    summary="Get lightweight status check",
)
async def get_status(
    deal_id: str,
    svc: DealService = Depends(get_deal_service),
) -> DealStatusResponse:
    """Return the current status and allowed next events."""
    status_data = await svc.get_status(deal_id)
    return DealStatusResponse(**status_data)


@router.get(
    "/{deal_id}/events",
    response_model=list[DealEventResponse],
    summary="Get audit trail",
)
async def get_events(
    deal_id: str,
    svc: DealService = Depends(get_deal_service),
) -> list[DealEventResponse]:
    """Return the full audit trail for a deal."""
    events = await svc.get_events(deal_id)
    return [DealEventResponse.model_validate(e) for e in events]


@router.get(
    "/{deal_id}/transactions",
    response_model=list[TransactionResponse],
    summary="Get ledger transactions",
)
async def get_transactions(
    deal_id: str,
    svc: DealService = Depends(get_deal_service),
) -> list[TransactionResponse]:
    transactions = await svc.get_transactions(deal_id)
    return [TransactionResponse.model_validate(t) for t in transactions]
