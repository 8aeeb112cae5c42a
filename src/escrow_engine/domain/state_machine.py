"""Escrow Contract State Machine Guard.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter which transport or background job drives a contract, an illegal
(state, event) pair raises TransitionNotAllowed here before any funds move.

The state machine is instantiated per-operation at the contract's persisted
status and validates a transition before the ORM row's status field is updated.

Transition table:
    CREATED              -> AWAITING_DEPOSIT      (open_for_deposit)
    CREATED              -> CANCELLED             (cancel_requested)
    AWAITING_DEPOSIT     -> PENDING_CONFIRMATION  (deposit_observed)
    AWAITING_DEPOSIT     -> CANCELLED             (cancel_requested)
    AWAITING_DEPOSIT     -> EXPIRED               (payment_deadline_expired)
    PENDING_CONFIRMATION -> HELD                  (confirmation_threshold_met)
    PENDING_CONFIRMATION -> REFUNDING             (refund_requested)
    HELD                 -> RELEASING             (release_requested)
    HELD                 -> RELEASING             (auto_release_deadline_fired)
    HELD                 -> REFUNDING             (refund_requested)
    HELD                 -> DISPUTE_HELD          (dispute_raised)
    RELEASING            -> RELEASED              (release_settled)
    REFUNDING            -> REFUNDED              (refund_settled)
    DISPUTE_HELD         -> RESOLVED              (dispute_resolved)
"""

from __future__ import annotations

from statemachine import State, StateMachine


class EscrowStateMachine(StateMachine):
    """State machine that guards escrow contract lifecycle transitions.

    Usage:
        sm = EscrowStateMachine(current_status="HELD")
        sm.release_requested()  # transitions to RELEASING
        sm.status               # "RELEASING"
    """

    # --- States ---
    CREATED = State("CREATED", initial=True)
    AWAITING_DEPOSIT = State("AWAITING_DEPOSIT")
    PENDING_CONFIRMATION = State("PENDING_CONFIRMATION")
    HELD = State("HELD")
    RELEASING = State("RELEASING")
    RELEASED = State("RELEASED", final=True)
    REFUNDING = State("REFUNDING")
    REFUNDED = State("REFUNDED", final=True)
    DISPUTE_HELD = State("DISPUTE_HELD")
    RESOLVED = State("RESOLVED", final=True)
    CANCELLED = State("CANCELLED", final=True)
    EXPIRED = State("EXPIRED", final=True)

    # --- Events / Transitions ---

    # Funding
    open_for_deposit = CREATED.to(AWAITING_DEPOSIT)
    deposit_observed = AWAITING_DEPOSIT.to(PENDING_CONFIRMATION)
    confirmation_threshold_met = PENDING_CONFIRMATION.to(HELD)

    # Release
    release_requested = HELD.to(RELEASING)
    auto_release_deadline_fired = HELD.to(RELEASING)
    release_settled = RELEASING.to(RELEASED)

    # Refund
    refund_requested = HELD.to(REFUNDING) | PENDING_CONFIRMATION.to(REFUNDING)
    refund_settled = REFUNDING.to(REFUNDED)

    # Disputes
    dispute_raised = HELD.to(DISPUTE_HELD)
    dispute_resolved = DISPUTE_HELD.to(RESOLVED)

    # Pre-deposit exits
    payment_deadline_expired = AWAITING_DEPOSIT.to(EXPIRED)
    cancel_requested = CREATED.to(CANCELLED) | AWAITING_DEPOSIT.to(CANCELLED)

    def __init__(self, current_status: str = "CREATED") -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current EscrowStatus value (e.g., "HELD").
                           Must match one of the State value strings exactly.
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches EscrowStatus enum)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [_event_id(event) for event in self.allowed_events]


def _event_id(event) -> str:  # noqa: ANN001
    # Newer python-statemachine releases give events a humanized ``name``
    # alongside the attribute ``id``.
    return getattr(event, "id", None) or getattr(event, "name", None) or str(event)


def validate_transition(current_status: str, event_name: str) -> str:
    """Validate a state transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns
    the resulting status string.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = EscrowStateMachine(current_status=current_status)

    if event_name not in transition_events():
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    getattr(sm, event_name)()
    return sm.status


def transition_table() -> dict[tuple[str, str], str]:
    """Flatten the machine into ``{(state, event): target_state}``.

    Any (state, event) pair missing from this mapping is rejected.
    """
    table: dict[tuple[str, str], str] = {}
    for state in EscrowStateMachine.states:
        status = str(state.value)
        for event_name in EscrowStateMachine(status).get_allowed_events():
            sm = EscrowStateMachine(status)
            getattr(sm, event_name)()
            table[(status, event_name)] = sm.status
    return table


def transition_events() -> list[str]:
    """All event names known to the escrow state machine."""
    return sorted({event for _, event in transition_table()})
