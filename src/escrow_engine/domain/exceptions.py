"""Domain exceptions for the Escrow Settlement Engine.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.
Nothing here is ever silently corrected: the caller decides whether to retry
(e.g. re-read on StaleContractVersionError) or surface it to the end user.
"""


class EscrowEngineError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_ENGINE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- State Machine Errors ---


class InvalidStateTransitionError(EscrowEngineError):
    """Raised when an event is not allowed from the contract's current state.

    Example: CREATED -> release_requested (funds were never deposited).
    """

    def __init__(self, current_state: str, attempted_event: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {attempted_event} from {current_state}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted_event = attempted_event


class StaleContractVersionError(EscrowEngineError):
    """Raised when the caller's expected version no longer matches the stored one."""

    def __init__(self, contract_id: str, expected: int | None, actual: int | None) -> None:
        super().__init__(
            message=(
                f"Stale contract version for {contract_id}: "
                f"expected {expected}, found {actual}"
            ),
            code="STALE_CONTRACT_VERSION",
        )
        self.contract_id = contract_id
        self.expected = expected
        self.actual = actual


class DeadlineExpiredError(EscrowEngineError):
    """Raised when an action arrives after the deadline that governs it."""

    def __init__(self, contract_id: str, deadline: str) -> None:
        super().__init__(
            message=f"Deadline {deadline} has passed for contract {contract_id}",
            code="DEADLINE_EXPIRED",
        )
        self.contract_id = contract_id


class UnauthorizedActionError(EscrowEngineError):
    """Raised when the requesting party may not perform the action."""

    def __init__(self, actor: str, action: str, contract_id: str) -> None:
        super().__init__(
            message=f"{actor} is not allowed to {action} on contract {contract_id}",
            code="UNAUTHORIZED_ACTION",
        )
        self.actor = actor
        self.action = action


# --- Contract / Dispute Lookup Errors ---


class ContractNotFoundError(EscrowEngineError):
    """Raised when a contract ID does not exist."""

    def __init__(self, contract_id: str) -> None:
        super().__init__(
            message=f"Contract not found: {contract_id}",
            code="CONTRACT_NOT_FOUND",
        )
        self.contract_id = contract_id


class DisputeNotFoundError(EscrowEngineError):
    """Raised when a dispute ID does not exist."""

    def __init__(self, dispute_id: str) -> None:
        super().__init__(
            message=f"Dispute not found: {dispute_id}",
            code="DISPUTE_NOT_FOUND",
        )
        self.dispute_id = dispute_id


class DisputeAlreadyOpenError(EscrowEngineError):
    """Raised when a dispute is raised on a contract that already has one open."""

    def __init__(self, contract_id: str) -> None:
        super().__init__(
            message=f"A dispute is already open for contract: {contract_id}",
            code="DISPUTE_ALREADY_OPEN",
        )
        self.contract_id = contract_id


class DisputeNotOpenError(EscrowEngineError):
    """Raised when resolving a dispute that has already been resolved."""

    def __init__(self, dispute_id: str) -> None:
        super().__init__(
            message=f"Dispute is not open: {dispute_id}",
            code="DISPUTE_NOT_OPEN",
        )
        self.dispute_id = dispute_id


# --- Ledger Errors ---


class LedgerError(EscrowEngineError):
    """Base exception for ledger violations."""


class AccountNotFoundError(LedgerError):
    """Raised when no account exists for an (owner, currency) pair."""

    def __init__(self, owner_id: str, currency: str) -> None:
        super().__init__(
            message=f"Account not found: {owner_id}/{currency}",
            code="ACCOUNT_NOT_FOUND",
        )
        self.owner_id = owner_id
        self.currency = currency


class CurrencyMismatchError(LedgerError):
    """Raised when funds would move between accounts of different currencies."""

    def __init__(self, source_currency: str, target_currency: str) -> None:
        super().__init__(
            message=f"Currency mismatch: {source_currency} -> {target_currency}",
            code="CURRENCY_MISMATCH",
        )
        self.source_currency = source_currency
        self.target_currency = target_currency


class InsufficientFundsError(LedgerError):
    """Raised when a debit would make a bucket negative."""

    def __init__(self, account: str, bucket: str, required: int, available: int) -> None:
        super().__init__(
            message=(
                f"Insufficient funds in {account} [{bucket}]: "
                f"required {required}, available {available}"
            ),
            code="INSUFFICIENT_FUNDS",
        )
        self.bucket = bucket
        self.required = required
        self.available = available


class InvalidAmountError(LedgerError):
    """Raised for non-positive amounts or deposits that do not cover the contract."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="INVALID_AMOUNT")


class LedgerContentionError(LedgerError):
    """Raised when an account stayed contended after the bounded retry budget."""

    def __init__(self, account: str, attempts: int) -> None:
        super().__init__(
            message=f"Account {account} still contended after {attempts} attempts",
            code="LEDGER_CONTENTION",
        )
        self.attempts = attempts


# --- Idempotency Errors ---


class DuplicateOperationError(EscrowEngineError):
    """Raised when a duplicate idempotency key is detected."""

    def __init__(self, idempotency_key: str, existing_id: str | None = None) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {idempotency_key}",
            code="DUPLICATE_OPERATION",
        )
        self.existing_id = existing_id
