"""Pydantic schemas for account and ledger endpoints."""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves these annotations at runtime
from datetime import datetime  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field


class OpenAccountRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=64)
    currency: str = Field(..., min_length=2, max_length=12, examples=["USDT"])


class AmountRequest(BaseModel):
    """External deposit or withdrawal against the ``available`` bucket."""

    amount: int = Field(..., gt=0, description="Minor units")
    memo: str | None = Field(default=None, max_length=120)


class TransferRequest(BaseModel):
    """Direct available-to-available transfer with no escrow contract."""

    from_owner: str = Field(..., min_length=1, max_length=64)
    to_owner: str = Field(..., min_length=1, max_length=64)
    currency: str = Field(..., min_length=2, max_length=12)
    amount: int = Field(..., gt=0)
    memo: str | None = Field(default=None, max_length=120)


class BalanceSnapshot(BaseModel):
    """Materialized balances of one account."""

    model_config = ConfigDict(from_attributes=True)

    owner_id: str
    currency: str
    available: int
    escrow: int
    pending: int
    total: int
    version: int


class TransferResponse(BaseModel):
    source: BalanceSnapshot
    target: BalanceSnapshot


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    account_id: uuid.UUID
    sequence: int
    delta: int
    bucket: str
    contract_id: uuid.UUID | None
    memo: str | None
    created_at: datetime


class ReconcileResponse(BaseModel):
    owner_id: str
    currency: str
    in_sync: bool
    drift: dict | None = None
