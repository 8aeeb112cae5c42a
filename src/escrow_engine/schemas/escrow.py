"""Pydantic schemas for the Escrow API.

These schemas define the request/response shapes for the REST API and
MCP tools. They are separate from the ORM models to maintain clean
boundaries between the API and database layers. All amounts are integer
minor units.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves these annotations at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field

from escrow_engine.domain.enums import ContractKind, DisputeOutcome
from escrow_engine.schemas.accounts import BalanceSnapshot

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateEscrowRequest(BaseModel):
    """Request body for creating a new escrow contract."""

    depositor_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Party whose funds are held (buyer / client)",
        examples=["buyer-42"],
    )
    beneficiary_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Party paid on release (seller / freelancer)",
        examples=["seller-7"],
    )
    currency: str = Field(..., min_length=2, max_length=12, examples=["USDT"])
    amount: int = Field(
        ...,
        gt=0,
        description="Escrow amount in minor units of the currency",
        examples=[100_000_000],
    )
    kind: ContractKind = Field(default=ContractKind.TRADE)
    required_confirmations: int | None = Field(
        default=None,
        ge=0,
        description="Override the per-currency confirmation threshold",
    )
    payment_deadline: datetime | None = Field(
        default=None,
        description="UTC time after which an unpaid contract expires",
    )
    auto_release_after_seconds: int | None = Field(
        default=None,
        ge=0,
        description="Override the per-kind auto-release window (0 disables it)",
    )
    milestone_ref: str | None = Field(default=None, max_length=64)
    trade_ref: str | None = Field(default=None, max_length=64)
    description: str | None = Field(default=None, max_length=5000)
    open_immediately: bool = Field(
        default=True,
        description="Open the deposit window right away (CREATED -> AWAITING_DEPOSIT)",
    )
    idempotency_key: str | None = Field(
        default=None,
        description="Optional idempotency key to prevent duplicate contract creation",
    )


class VersionedRequest(BaseModel):
    expected_version: int | None = Field(
        default=None,
        ge=1,
        description="Reject with 409 if the contract has moved past this version",
    )


class OpenForDepositRequest(VersionedRequest):
    """Request body for opening the deposit window of a CREATED contract."""


class NotifyDepositRequest(VersionedRequest):
    """Deposit report from the wallet / payment collaborator."""

    observed_amount: int = Field(..., gt=0, description="Amount received, in minor units")


class NotifyConfirmationRequest(BaseModel):
    """Confirmation event from the blockchain watcher."""

    observation_id: str = Field(..., min_length=1, max_length=128)
    height: int = Field(..., ge=0, description="Confirmation count / depth observed")


class PartyActionRequest(VersionedRequest):
    """Release, refund or cancel request by one of the parties."""

    requested_by: str = Field(..., min_length=1, max_length=64)


class RaiseDisputeRequest(VersionedRequest):
    """Request body for raising a dispute against a contract."""

    raised_by: str = Field(..., min_length=1, max_length=64)
    evidence: list[str] = Field(
        default_factory=list,
        description="Evidence references (file URLs, message ids)",
    )
    reason: str | None = Field(default=None, max_length=2000)


class ResolveDisputeRequest(BaseModel):
    """Arbiter decision for an open dispute."""

    outcome: DisputeOutcome
    arbiter_id: str = Field(..., min_length=1, max_length=64)
    fraction: Decimal | None = Field(
        default=None,
        ge=0,
        le=1,
        description="Beneficiary share for split outcomes",
        examples=["0.5"],
    )


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class DisputeSnapshot(BaseModel):
    """Response schema for a dispute."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    contract_id: uuid.UUID
    raised_by: str
    against_party: str
    reason: str | None
    evidence: list[str]
    status: str
    outcome: str | None
    split_fraction: Decimal | None
    released_amount: int | None
    refunded_amount: int | None
    arbiter_id: str | None
    sla_deadline: datetime | None
    escalated_at: datetime | None
    created_at: datetime
    resolved_at: datetime | None


class ContractSnapshot(BaseModel):
    """Point-in-time view of a contract and both parties' balances."""

    id: uuid.UUID
    kind: str
    depositor_id: str
    beneficiary_id: str
    currency: str
    amount: int
    observed_deposit: int | None
    status: str
    version: int
    required_confirmations: int
    observed_confirmations: int
    payment_deadline: datetime | None
    auto_release_deadline: datetime | None
    milestone_ref: str | None
    trade_ref: str | None
    description: str | None
    cancel_consents: list[str]
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None
    dispute: DisputeSnapshot | None = None
    depositor_balance: BalanceSnapshot | None = None
    beneficiary_balance: BalanceSnapshot | None = None
    allowed_events: list[str] = Field(
        default_factory=list,
        description="State machine events that can fire from the current status",
    )


class EscrowEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: uuid.UUID
    contract_id: uuid.UUID
    sequence: int
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
    scheduled_deadlines: int = 0
