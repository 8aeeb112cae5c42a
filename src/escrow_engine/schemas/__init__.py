"""Pydantic API schemas."""

from escrow_engine.schemas.accounts import (
    AmountRequest,
    BalanceSnapshot,
    LedgerEntryResponse,
    OpenAccountRequest,
    ReconcileResponse,
    TransferRequest,
    TransferResponse,
)
from escrow_engine.schemas.escrow import (
    ContractSnapshot,
    CreateEscrowRequest,
    DisputeSnapshot,
    EscrowEventResponse,
    HealthResponse,
    NotifyConfirmationRequest,
    NotifyDepositRequest,
    OpenForDepositRequest,
    PartyActionRequest,
    RaiseDisputeRequest,
    ResolveDisputeRequest,
)

__all__ = [
    "AmountRequest",
    "BalanceSnapshot",
    "ContractSnapshot",
    "CreateEscrowRequest",
    "DisputeSnapshot",
    "EscrowEventResponse",
    "HealthResponse",
    "LedgerEntryResponse",
    "NotifyConfirmationRequest",
    "NotifyDepositRequest",
    "OpenAccountRequest",
    "OpenForDepositRequest",
    "PartyActionRequest",
    "RaiseDisputeRequest",
    "ReconcileResponse",
    "ResolveDisputeRequest",
    "TransferRequest",
    "TransferResponse",
]
