"""Dispute resolution routes.

Routes:
    GET    /api/v1/disputes/{id}          — Dispute details
    POST   /api/v1/disputes/{id}/resolve  — Arbiter decision
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI reads path parameter annotations at runtime

from fastapi import APIRouter, Depends

from escrow_engine.api.deps import get_escrow_service
from escrow_engine.schemas.escrow import ContractSnapshot, DisputeSnapshot, ResolveDisputeRequest
from escrow_engine.services.escrow_service import EscrowService

router = APIRouter(prefix="/api/v1/disputes", tags=["Disputes"])


@router.get(
    "/{dispute_id}",
    response_model=DisputeSnapshot,
    summary="Get dispute details",
)
async def get_dispute(
    dispute_id: uuid.UUID,
    svc: EscrowService = Depends(get_escrow_service),
) -> DisputeSnapshot:
    return DisputeSnapshot.model_validate(await svc.get_dispute(dispute_id))


@router.post(
    "/{dispute_id}/resolve",
    response_model=ContractSnapshot,
    summary="Resolve a dispute",
)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    request: ResolveDisputeRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> ContractSnapshot:
    """Apply release, refund, or split. Transitions DISPUTE_HELD -> RESOLVED."""
    return await svc.resolve_dispute(
        dispute_id,
        outcome=request.outcome,
        arbiter=request.arbiter_id,
        fraction=request.fraction,
    )
