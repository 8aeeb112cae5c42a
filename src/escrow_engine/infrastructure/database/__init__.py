"""Database infrastructure — engine, ORM models, and repositories."""

from escrow_engine.infrastructure.database.engine import (
    build_engine,
    close_db,
    create_schema,
    get_session_factory,
    init_db,
    make_session_factory,
)
from escrow_engine.infrastructure.database.orm_models import (
    Account,
    Base,
    ConfirmationObservation,
    Dispute,
    EscrowContract,
    EscrowEvent,
    LedgerEntry,
)
from escrow_engine.infrastructure.database.repositories import (
    AccountRepository,
    DisputeRepository,
    EscrowRepository,
    EventRepository,
    LedgerEntryRepository,
    ObservationRepository,
)

__all__ = [
    "Account",
    "Base",
    "ConfirmationObservation",
    "Dispute",
    "EscrowContract",
    "EscrowEvent",
    "LedgerEntry",
    "AccountRepository",
    "DisputeRepository",
    "EscrowRepository",
    "EventRepository",
    "LedgerEntryRepository",
    "ObservationRepository",
    "build_engine",
    "close_db",
    "create_schema",
    "get_session_factory",
    "init_db",
    "make_session_factory",
]
