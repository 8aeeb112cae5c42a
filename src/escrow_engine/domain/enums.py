"""Domain enumerations for the Escrow Settlement Engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class EscrowStatus(enum.StrEnum):
    """Lifecycle states of an escrow contract.

    State transitions are enforced by the EscrowStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    CREATED = "CREATED"
    AWAITING_DEPOSIT = "AWAITING_DEPOSIT"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    HELD = "HELD"
    RELEASING = "RELEASING"
    RELEASED = "RELEASED"
    REFUNDING = "REFUNDING"
    REFUNDED = "REFUNDED"
    DISPUTE_HELD = "DISPUTE_HELD"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        EscrowStatus.RELEASED,
        EscrowStatus.REFUNDED,
        EscrowStatus.RESOLVED,
        EscrowStatus.CANCELLED,
        EscrowStatus.EXPIRED,
    }
)


class ContractKind(enum.StrEnum):
    """What the escrow is for. Drives the default auto-release policy."""

    TRADE = "trade"
    MILESTONE = "milestone"


class Bucket(enum.StrEnum):
    """Sub-balances of an account."""

    AVAILABLE = "available"
    ESCROW = "escrow"
    PENDING = "pending"


class DeadlineKind(enum.StrEnum):
    """Kinds of deadlines held by the DeadlineScheduler."""

    PAYMENT = "payment"
    AUTO_RELEASE = "auto_release"
    DISPUTE_SLA = "dispute_sla"


class DisputeStatus(enum.StrEnum):
    OPEN = "open"
    RESOLVED = "resolved"


class DisputeOutcome(enum.StrEnum):
    """Arbiter decisions for a disputed contract."""

    RELEASE = "release"
    REFUND = "refund"
    SPLIT = "split"


class EventType(enum.StrEnum):
    """Types of audit events recorded in the escrow_events table.

    Every state transition MUST produce exactly one event.
    This is the append-only forensic trail for disputes.
    """

    # Lifecycle events
    CONTRACT_CREATED = "CONTRACT_CREATED"
    DEPOSIT_WINDOW_OPENED = "DEPOSIT_WINDOW_OPENED"
    DEPOSIT_OBSERVED = "DEPOSIT_OBSERVED"
    CONFIRMATION_THRESHOLD_MET = "CONFIRMATION_THRESHOLD_MET"

    # Settlement events
    RELEASE_REQUESTED = "RELEASE_REQUESTED"
    AUTO_RELEASE_FIRED = "AUTO_RELEASE_FIRED"
    FUNDS_RELEASED = "FUNDS_RELEASED"
    REFUND_REQUESTED = "REFUND_REQUESTED"
    FUNDS_REFUNDED = "FUNDS_REFUNDED"

    # Dispute events
    DISPUTE_RAISED = "DISPUTE_RAISED"
    DISPUTE_ESCALATED = "DISPUTE_ESCALATED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"

    # Pre-deposit exits
    CANCEL_CONSENT_RECORDED = "CANCEL_CONSENT_RECORDED"
    CONTRACT_CANCELLED = "CONTRACT_CANCELLED"
    PAYMENT_DEADLINE_EXPIRED = "PAYMENT_DEADLINE_EXPIRED"


SYSTEM_ACTOR = "SYSTEM"
