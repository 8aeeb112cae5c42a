"""Application services — use case orchestration."""

from escrow_engine.services.confirmation_tracker import ConfirmationResult, ConfirmationTracker
from escrow_engine.services.dispute_resolver import DisputeResolver
from escrow_engine.services.escrow_service import EscrowService
from escrow_engine.services.ledger import AccountLedger
from escrow_engine.services.reconciliation_service import (
    ReconciliationReport,
    ReconciliationService,
)

__all__ = [
    "AccountLedger",
    "ConfirmationResult",
    "ConfirmationTracker",
    "DisputeResolver",
    "EscrowService",
    "ReconciliationReport",
    "ReconciliationService",
]
