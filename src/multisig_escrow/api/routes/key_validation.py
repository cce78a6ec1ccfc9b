"""Key submission endpoint.

A party answers its open payout authorization with the secret it received
when the deal was set up. A matching secret runs the payout immediately.

Routes:
    POST   /api/v1/key-validation    Submit a secret for the caller's open gate
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from multisig_escrow.api.deps import get_key_gate
from multisig_escrow.schemas.deals import KeyValidationResponse, SubmitKeyRequest
from multisig_escrow.services.key_validation import GateOutcome, GateStatus, KeyValidationGate

router = APIRouter(prefix="/api/v1/key-validation", tags=["Key Validation"])


def _to_response(outcome: GateOutcome) -> KeyValidationResponse:
    response = KeyValidationResponse(
        status=outcome.status.value,
        deal_id=outcome.deal_id,
        attempts=outcome.attempts,
        message=outcome.message,
    )
    if outcome.status is GateStatus.NO_SESSION:
        response.message = "No payout is awaiting your authorization."
    if outcome.payout is not None:
        response.payout_amount = outcome.payout.payout_amount
        response.payout_tx_hash = outcome.payout.payout_tx_hash
        response.commission_tx_hash = outcome.payout.commission_tx_hash
    return response


@router.post(
    "",
    response_model=KeyValidationResponse,
    summary="Submit a payout authorization secret",
)
async def submit_key(
    request: SubmitKeyRequest,
    gate: KeyValidationGate = Depends(get_key_gate),
) -> KeyValidationResponse:
    """Mismatches are counted and never lock the party out."""
    outcome = await gate.submit(request.actor_id, request.secret.get_secret_value())
    return _to_response(outcome)
