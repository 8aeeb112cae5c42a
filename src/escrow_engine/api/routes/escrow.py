"""Escrow contract REST API routes.

These endpoints provide the HTTP interface for the contract lifecycle.
The MCP tools in mcp_server/tools.py call the same service layer,
ensuring consistency.

Routes:
    POST   /api/v1/escrow                      — Create a new escrow contract
    GET    /api/v1/escrow?party=...            — List a party's contracts
    GET    /api/v1/escrow/{id}                 — Contract snapshot
    GET    /api/v1/escrow/{id}/events          — Audit trail
    POST   /api/v1/escrow/{id}/open            — Open the deposit window
    POST   /api/v1/escrow/{id}/deposit         — Deposit observed
    POST   /api/v1/escrow/{id}/confirmations   — Confirmation observed
    POST   /api/v1/escrow/{id}/release         — Depositor releases funds
    POST   /api/v1/escrow/{id}/refund          — Refund to depositor
    POST   /api/v1/escrow/{id}/cancel          — Consent to cancel
    POST   /api/v1/escrow/{id}/dispute         — Raise dispute
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI reads path parameter annotations at runtime

from fastapi import APIRouter, Depends, Query

from escrow_engine.api.deps import get_escrow_service
from escrow_engine.domain.exceptions import DuplicateOperationError
from escrow_engine.infrastructure import redis_client
from escrow_engine.logging_config import get_logger
from escrow_engine.schemas.escrow import (
    ContractSnapshot,
    CreateEscrowRequest,
    EscrowEventResponse,
    NotifyConfirmationRequest,
    NotifyDepositRequest,
    OpenForDepositRequest,
    PartyActionRequest,
    RaiseDisputeRequest,
)
from escrow_engine.services.escrow_service import EscrowService

router = APIRouter(prefix="/api/v1/escrow", tags=["Escrow"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=ContractSnapshot,
    status_code=201,
    summary="Create a new escrow contract",
)
async def create_escrow(
    request: CreateEscrowRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> ContractSnapshot:
    """Create a contract; it opens for deposit immediately unless told not to."""
    key = request.idempotency_key
    if key and redis_client.is_redis_ready():
        existing = await redis_client.reserve_idempotency(key)
        if existing is not None:
            raise DuplicateOperationError(key, existing)
    elif key:
        logger.warning("idempotency.unavailable", key=key)

    try:
        contract_id = await svc.create_escrow(
            depositor_id=request.depositor_id,
            beneficiary_id=request.beneficiary_id,
            currency=request.currency,
            amount=request.amount,
            required_confirmations=request.required_confirmations,
            payment_deadline=request.payment_deadline,
            kind=request.kind,
            auto_release_after=request.auto_release_after_seconds,
            milestone_ref=request.milestone_ref,
            trade_ref=request.trade_ref,
            description=request.description,
            open_immediately=request.open_immediately,
        )
    except Exception:
        if key and redis_client.is_redis_ready():
            await redis_client.release_idempotency(key)
        raise

    if key and redis_client.is_redis_ready():
        await redis_client.complete_idempotency(key, str(contract_id))
    return await svc.get_contract(contract_id)


# ---------------------------------------------------------------------------
# Funding
# ---------------------------------------------------------------------------


@router.post(
    "/{contract_id}/open",
    response_model=ContractSnapshot,
    summary="Open the deposit window",
)
async def open_for_deposit(
    contract_id: uuid.UUID,
    request: OpenForDepositRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> ContractSnapshot:
    """Transitions CREATED -> AWAITING_DEPOSIT."""
    return await svc.open_for_deposit(contract_id, expected_version=request.expected_version)


@router.post(
    "/{contract_id}/deposit",
    response_model=ContractSnapshot,
    summary="Report an observed deposit",
)
async def notify_deposit(
    contract_id: uuid.UUID,
    request: NotifyDepositRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> ContractSnapshot:
    """Transitions AWAITING_DEPOSIT -> PENDING_CONFIRMATION (or straight to HELD)."""
    return await svc.notify_deposit(
        contract_id,
        observed_amount=request.observed_amount,
        expected_version=request.expected_version,
    )


@router.post(
    "/{contract_id}/confirmations",
    response_model=ContractSnapshot,
    summary="Report a blockchain confirmation",
)
async def notify_confirmation(
    contract_id: uuid.UUID,
    request: NotifyConfirmationRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> ContractSnapshot:
    """Idempotent: duplicates and stale heights are accepted and ignored."""
    return await svc.notify_confirmation(
        contract_id,
        observation_id=request.observation_id,
        height=request.height,
    )


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


@router.post(
    "/{contract_id}/release",
    response_model=ContractSnapshot,
    summary="Release held funds to the beneficiary",
)
async def request_release(
    contract_id: uuid.UUID,
    request: PartyActionRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> ContractSnapshot:
    return await svc.request_release(
        contract_id, request.requested_by, expected_version=request.expected_version
    )


@router.post(
    "/{contract_id}/refund",
    response_model=ContractSnapshot,
    summary="Refund funds to the depositor",
)
async def request_refund(
    contract_id: uuid.UUID,
    request: PartyActionRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> ContractSnapshot:
    return await svc.request_refund(
        contract_id, request.requested_by, expected_version=request.expected_version
    )


@router.post(
    "/{contract_id}/cancel",
    response_model=ContractSnapshot,
    summary="Consent to cancel before any deposit",
)
async def request_cancel(
    contract_id: uuid.UUID,
    request: PartyActionRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> ContractSnapshot:
    """The contract cancels once both parties have consented."""
    return await svc.request_cancel(
        contract_id, request.requested_by, expected_version=request.expected_version
    )


# ---------------------------------------------------------------------------
# Dispute
# ---------------------------------------------------------------------------


@router.post(
    "/{contract_id}/dispute",
    response_model=ContractSnapshot,
    summary="Raise a dispute",
)
async def raise_dispute(
    contract_id: uuid.UUID,
    request: RaiseDisputeRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> ContractSnapshot:
    """Raise a dispute on a HELD contract. Freezes the funds in escrow."""
    return await svc.raise_dispute(
        contract_id,
        raised_by=request.raised_by,
        evidence=request.evidence,
        reason=request.reason,
        expected_version=request.expected_version,
    )


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=list[ContractSnapshot],
    summary="List a party's contracts",
)
async def list_escrows(
    party: str = Query(..., min_length=1, description="Depositor or beneficiary id"),
    svc: EscrowService = Depends(get_escrow_service),
) -> list[ContractSnapshot]:
    return await svc.list_contracts(party)


@router.get(
    "/{contract_id}",
    response_model=ContractSnapshot,
    summary="Get contract snapshot",
)
async def get_escrow(
    contract_id: uuid.UUID,
    svc: EscrowService = Depends(get_escrow_service),
) -> ContractSnapshot:
    """State, version, deadlines, dispute, and both parties' balances."""
    return await svc.get_contract(contract_id)


@router.get(
    "/{contract_id}/events",
    response_model=list[EscrowEventResponse],
    summary="Get audit trail",
)
async def get_events(
    contract_id: uuid.UUID,
    svc: EscrowService = Depends(get_escrow_service),
) -> list[EscrowEventResponse]:
    """Return the full audit trail for a contract."""
    events = await svc.get_events(contract_id)
    return [EscrowEventResponse.model_validate(e) for e in events]
