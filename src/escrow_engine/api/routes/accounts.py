"""Account and ledger routes.

Routes:
    POST   /api/v1/accounts                                — Open an account
    POST   /api/v1/accounts/transfer                       — Direct transfer
    GET    /api/v1/accounts/{owner}/{currency}             — Balance snapshot
    GET    /api/v1/accounts/{owner}/{currency}/entries     — Ledger entries
    POST   /api/v1/accounts/{owner}/{currency}/deposit     — External deposit
    POST   /api/v1/accounts/{owner}/{currency}/withdraw    — External withdrawal
    POST   /api/v1/accounts/{owner}/{currency}/reconcile   — Replay and repair
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from escrow_engine.api.deps import get_escrow_service
from escrow_engine.schemas.accounts import (
    AmountRequest,
    BalanceSnapshot,
    LedgerEntryResponse,
    OpenAccountRequest,
    ReconcileResponse,
    TransferRequest,
    TransferResponse,
)
from escrow_engine.services.escrow_service import EscrowService

router = APIRouter(prefix="/api/v1/accounts", tags=["Accounts"])


@router.post(
    "",
    response_model=BalanceSnapshot,
    status_code=201,
    summary="Open an account (idempotent)",
)
async def open_account(
    request: OpenAccountRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> BalanceSnapshot:
    return await svc.open_account(request.owner_id, request.currency)


@router.post(
    "/transfer",
    response_model=TransferResponse,
    summary="Transfer available funds between two owners",
)
async def transfer_direct(
    request: TransferRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> TransferResponse:
    source, target = await svc.transfer_direct(
        request.from_owner,
        request.to_owner,
        request.currency,
        request.amount,
        memo=request.memo,
    )
    return TransferResponse(source=source, target=target)


@router.get(
    "/{owner_id}/{currency}",
    response_model=BalanceSnapshot,
    summary="Get balances",
)
async def get_balance(
    owner_id: str,
    currency: str,
    svc: EscrowService = Depends(get_escrow_service),
) -> BalanceSnapshot:
    return await svc.get_balance(owner_id, currency)


@router.get(
    "/{owner_id}/{currency}/entries",
    response_model=list[LedgerEntryResponse],
    summary="Get ledger entries",
)
async def get_entries(
    owner_id: str,
    currency: str,
    svc: EscrowService = Depends(get_escrow_service),
) -> list[LedgerEntryResponse]:
    entries = await svc.get_entries(owner_id, currency)
    return [LedgerEntryResponse.model_validate(e) for e in entries]


@router.post(
    "/{owner_id}/{currency}/deposit",
    response_model=BalanceSnapshot,
    summary="Credit available funds from outside the engine",
)
async def deposit_external(
    owner_id: str,
    currency: str,
    request: AmountRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> BalanceSnapshot:
    return await svc.deposit_external(owner_id, currency, request.amount, memo=request.memo)


@router.post(
    "/{owner_id}/{currency}/withdraw",
    response_model=BalanceSnapshot,
    summary="Debit available funds to outside the engine",
)
async def withdraw_external(
    owner_id: str,
    currency: str,
    request: AmountRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> BalanceSnapshot:
    return await svc.withdraw_external(owner_id, currency, request.amount, memo=request.memo)


@router.post(
    "/{owner_id}/{currency}/reconcile",
    response_model=ReconcileResponse,
    summary="Replay the ledger and repair the balance projection",
)
async def reconcile(
    owner_id: str,
    currency: str,
    svc: EscrowService = Depends(get_escrow_service),
) -> ReconcileResponse:
    drift = await svc.reconcile_account(owner_id, currency, repair=True)
    return ReconcileResponse(
        owner_id=owner_id,
        currency=currency.upper(),
        in_sync=drift is None,
        drift=drift,
    )
