"""Domain layer — pure business logic with zero framework dependencies."""

from escrow_engine.domain.enums import (
    SYSTEM_ACTOR,
    TERMINAL_STATUSES,
    Bucket,
    ContractKind,
    DeadlineKind,
    DisputeOutcome,
    DisputeStatus,
    EscrowStatus,
    EventType,
)
from escrow_engine.domain.exceptions import (
    AccountNotFoundError,
    ContractNotFoundError,
    CurrencyMismatchError,
    DeadlineExpiredError,
    DisputeAlreadyOpenError,
    DisputeNotFoundError,
    DisputeNotOpenError,
    EscrowEngineError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidStateTransitionError,
    LedgerContentionError,
    StaleContractVersionError,
    UnauthorizedActionError,
)
from escrow_engine.domain.money import from_minor_units, split_amount, to_minor_units
from escrow_engine.domain.state_machine import (
    EscrowStateMachine,
    transition_table,
    validate_transition,
)

__all__ = [
    "SYSTEM_ACTOR",
    "TERMINAL_STATUSES",
    "Bucket",
    "ContractKind",
    "DeadlineKind",
    "DisputeOutcome",
    "DisputeStatus",
    "EscrowStatus",
    "EventType",
    "AccountNotFoundError",
    "ContractNotFoundError",
    "CurrencyMismatchError",
    "DeadlineExpiredError",
    "DisputeAlreadyOpenError",
    "DisputeNotFoundError",
    "DisputeNotOpenError",
    "EscrowEngineError",
    "InsufficientFundsError",
    "InvalidAmountError",
    "InvalidStateTransitionError",
    "LedgerContentionError",
    "StaleContractVersionError",
    "UnauthorizedActionError",
    "EscrowStateMachine",
    "transition_table",
    "validate_transition",
    "from_minor_units",
    "split_amount",
    "to_minor_units",
]
