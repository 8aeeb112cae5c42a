"""SQLAlchemy 2.0 ORM models for the Escrow Settlement Engine.

Six tables:
    1. accounts                   — Per-owner, per-currency balance projection.
    2. ledger_entries             — Append-only source of truth for balances.
    3. escrow_contracts           — The escrow agreements and their lifecycle state.
    4. disputes                   — At most one dispute per contract.
    5. confirmation_observations  — Dedupe log of external confirmation events.
    6. escrow_events              — Append-only audit log of every state transition.

Design decisions:
    - UUIDs as primary keys (no sequential leakage).
    - Integer minor units for every amount (no floating point, no Decimal drift).
    - Optimistic concurrency via a version column on accounts and contracts.
    - CHECK constraints keep balances non-negative and statuses valid at DB level.
    - ledger_entries and escrow_events are append-only: no UPDATE or DELETE at
      the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from escrow_engine.domain.enums import EscrowStatus

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on the way in and hands back naive values; this
    normalizes to UTC before storing and re-attaches UTC on load so
    deadline comparisons never mix naive and aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001, ANN201
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):  # noqa: ANN001, ANN201
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# Helper: auto-set updated_at on flush
# ---------------------------------------------------------------------------
def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = utc_now()


# ---------------------------------------------------------------------------
# 1. accounts
# ---------------------------------------------------------------------------
class Account(Base):
    """Materialized balances of one owner in one currency.

    Always re-derivable by replaying ledger_entries; every mutation goes
    through AccountLedger, never direct attribute writes.
    """

    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    owner_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="External user id of the account owner",
    )
    currency: Mapped[str] = mapped_column(
        String(12),
        nullable=False,
        comment="Currency code, upper-case (e.g. USDT)",
    )

    # --- Buckets (minor units) ---
    available: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    escrow: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    pending: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # --- Concurrency ---
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Bumped on every mutation; guards conditional updates",
    )
    last_sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Sequence number of the most recent ledger entry",
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "currency", name="uq_account_owner_currency"),
        CheckConstraint("available >= 0", name="ck_account_available_non_negative"),
        CheckConstraint("escrow >= 0", name="ck_account_escrow_non_negative"),
        CheckConstraint("pending >= 0", name="ck_account_pending_non_negative"),
    )

    @property
    def total(self) -> int:
        return self.available + self.escrow + self.pending

    @property
    def label(self) -> str:
        return f"{self.owner_id}/{self.currency}"

    def __repr__(self) -> str:
        return (
            f"<Account {self.label} available={self.available} "
            f"escrow={self.escrow} pending={self.pending} v{self.version}>"
        )


# ---------------------------------------------------------------------------
# 2. ledger_entries (Append-Only)
# ---------------------------------------------------------------------------
class LedgerEntry(Base):
    """Immutable record of one signed change to one bucket of one account."""

    __tablename__ = "ledger_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("accounts.id", ondelete="RESTRICT"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Per-account, gap-free ordering of entries",
    )
    delta: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Signed change in minor units",
    )
    bucket: Mapped[str] = mapped_column(String(16), nullable=False)
    contract_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        nullable=True,
        default=None,
        comment="Causing escrow contract, or null for direct transfers",
    )
    memo: Mapped[str | None] = mapped_column(String(120), nullable=True, default=None)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("account_id", "sequence", name="uq_ledger_account_sequence"),
        CheckConstraint("delta <> 0", name="ck_ledger_non_zero_delta"),
        CheckConstraint(
            "bucket IN ('available', 'escrow', 'pending')",
            name="ck_ledger_valid_bucket",
        ),
        Index("idx_ledger_contract", "contract_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry account={self.account_id} #{self.sequence} "
            f"{self.bucket} {self.delta:+d}>"
        )


# ---------------------------------------------------------------------------
# 3. escrow_contracts
# ---------------------------------------------------------------------------
class EscrowContract(Base):
    """A trust-held transaction between a depositor and a beneficiary."""

    __tablename__ = "escrow_contracts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Participants ---
    depositor_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Party whose funds are held (buyer / client)",
    )
    beneficiary_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Party paid on release (seller / freelancer)",
    )

    # --- Financials ---
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="trade")
    currency: Mapped[str] = mapped_column(String(12), nullable=False)
    amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Escrowed amount in minor units",
    )
    observed_deposit: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
        default=None,
        comment="Amount reported by the payment collaborator",
    )

    # --- Status (Enum-guarded) ---
    status: Mapped[str] = mapped_column(
        String(24),
        nullable=False,
        default=EscrowStatus.CREATED.value,
        comment="Current lifecycle state (guarded by EscrowStateMachine)",
    )

    # --- Confirmations ---
    required_confirmations: Mapped[int] = mapped_column(Integer, nullable=False)
    observed_confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # --- Deadlines ---
    payment_deadline: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, default=None
    )
    auto_release_after_seconds: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        default=None,
        comment="Auto-release window started when funds become HELD",
    )
    auto_release_deadline: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, default=None
    )

    # --- References ---
    dispute_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, default=None)
    milestone_ref: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)
    trade_ref: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)
    description: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    cancel_consents: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # --- Concurrency ---
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('CREATED', 'AWAITING_DEPOSIT', 'PENDING_CONFIRMATION', 'HELD', "
            "'RELEASING', 'RELEASED', 'REFUNDING', 'REFUNDED', 'DISPUTE_HELD', "
            "'RESOLVED', 'CANCELLED', 'EXPIRED')",
            name="ck_escrow_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_escrow_positive_amount"),
        CheckConstraint("required_confirmations >= 0", name="ck_escrow_confirmations"),
        CheckConstraint("depositor_id <> beneficiary_id", name="ck_escrow_distinct_parties"),
        Index("idx_escrow_status", "status"),
        Index("idx_escrow_depositor", "depositor_id"),
        Index("idx_escrow_beneficiary", "beneficiary_id"),
        Index("idx_escrow_auto_release", "auto_release_deadline"),
    )

    @property
    def is_terminal(self) -> bool:
        return EscrowStatus(self.status).is_terminal

    def __repr__(self) -> str:
        return (
            f"<EscrowContract id={self.id} status={self.status} "
            f"amount={self.amount} {self.currency} v{self.version}>"
        )


# ---------------------------------------------------------------------------
# 4. disputes
# ---------------------------------------------------------------------------
class Dispute(Base):
    """A dispute hold on a contract and the arbiter's resolution."""

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    contract_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_contracts.id", ondelete="RESTRICT"),
        nullable=False,
    )
    raised_by: Mapped[str] = mapped_column(String(64), nullable=False)
    against_party: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    evidence: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Evidence references (file URLs, message ids)",
    )

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    outcome: Mapped[str | None] = mapped_column(String(16), nullable=True, default=None)
    split_fraction: Mapped[Decimal | None] = mapped_column(
        Numeric(9, 8),
        nullable=True,
        default=None,
        comment="Beneficiary share for split outcomes",
    )
    released_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True, default=None)
    refunded_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True, default=None)
    arbiter_id: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)

    sla_deadline: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)
    escalated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, default=None)

    __table_args__ = (
        UniqueConstraint("contract_id", name="uq_dispute_contract"),
        CheckConstraint("status IN ('open', 'resolved')", name="ck_dispute_valid_status"),
        CheckConstraint(
            "outcome IS NULL OR outcome IN ('release', 'refund', 'split')",
            name="ck_dispute_valid_outcome",
        ),
        Index("idx_dispute_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Dispute id={self.id} contract={self.contract_id} status={self.status}>"


# ---------------------------------------------------------------------------
# 5. confirmation_observations
# ---------------------------------------------------------------------------
class ConfirmationObservation(Base):
    """One accepted confirmation event from the blockchain watcher."""

    __tablename__ = "confirmation_observations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    contract_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_contracts.id", ondelete="RESTRICT"),
        nullable=False,
    )
    observation_id: Mapped[str] = mapped_column(String(128), nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("contract_id", "observation_id", name="uq_observation_per_contract"),
    )


# ---------------------------------------------------------------------------
# 6. escrow_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class EscrowEvent(Base):
    """Immutable audit record of every state transition in a contract's lifecycle.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level. Every row represents a single atomic event.
    """

    __tablename__ = "escrow_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    contract_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_contracts.id", ondelete="RESTRICT"),
        nullable=False,
    )

    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Per-contract ordering of audit events",
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(
        String(24),
        nullable=True,
        comment="Contract status before this event (null for creation)",
    )
    new_status: Mapped[str] = mapped_column(String(24), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="SYSTEM",
        comment="Who triggered this event (party id, arbiter id or SYSTEM)",
    )
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("contract_id", "sequence", name="uq_event_contract_sequence"),
        Index("idx_event_contract", "contract_id"),
        Index("idx_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowEvent id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


event.listen(EscrowContract, "before_update", _set_updated_at)
