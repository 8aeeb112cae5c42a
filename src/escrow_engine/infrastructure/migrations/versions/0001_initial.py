"""Initial schema: accounts, ledger, contracts, disputes, observations, events

Revision ID: 0001_initial
Revises:
Create Date: 2025-01-01 00:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
TZDateTime = sa.DateTime(timezone=True)


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("currency", sa.String(12), nullable=False),
        sa.Column("available", sa.BigInteger(), nullable=False),
        sa.Column("escrow", sa.BigInteger(), nullable=False),
        sa.Column("pending", sa.BigInteger(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("last_sequence", sa.Integer(), nullable=False),
        sa.Column("created_at", TZDateTime, nullable=False),
        sa.Column("updated_at", TZDateTime, nullable=False),
        sa.UniqueConstraint("owner_id", "currency", name="uq_account_owner_currency"),
        sa.CheckConstraint("available >= 0", name="ck_account_available_non_negative"),
        sa.CheckConstraint("escrow >= 0", name="ck_account_escrow_non_negative"),
        sa.CheckConstraint("pending >= 0", name="ck_account_pending_non_negative"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "account_id",
            sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("delta", sa.BigInteger(), nullable=False),
        sa.Column("bucket", sa.String(16), nullable=False),
        sa.Column("contract_id", sa.Uuid(), nullable=True),
        sa.Column("memo", sa.String(120), nullable=True),
        sa.Column("created_at", TZDateTime, nullable=False),
        sa.UniqueConstraint("account_id", "sequence", name="uq_ledger_account_sequence"),
        sa.CheckConstraint("delta <> 0", name="ck_ledger_non_zero_delta"),
        sa.CheckConstraint(
            "bucket IN ('available', 'escrow', 'pending')", name="ck_ledger_valid_bucket"
        ),
    )
    op.create_index("idx_ledger_contract", "ledger_entries", ["contract_id"])

    op.create_table(
        "escrow_contracts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("depositor_id", sa.String(64), nullable=False),
        sa.Column("beneficiary_id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("currency", sa.String(12), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("observed_deposit", sa.BigInteger(), nullable=True),
        sa.Column("status", sa.String(24), nullable=False),
        sa.Column("required_confirmations", sa.Integer(), nullable=False),
        sa.Column("observed_confirmations", sa.Integer(), nullable=False),
        sa.Column("payment_deadline", TZDateTime, nullable=True),
        sa.Column("auto_release_after_seconds", sa.Integer(), nullable=True),
        sa.Column("auto_release_deadline", TZDateTime, nullable=True),
        sa.Column("dispute_id", sa.Uuid(), nullable=True),
        sa.Column("milestone_ref", sa.String(64), nullable=True),
        sa.Column("trade_ref", sa.String(64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("cancel_consents", JSONType, nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", TZDateTime, nullable=False),
        sa.Column("updated_at", TZDateTime, nullable=False),
        sa.Column("closed_at", TZDateTime, nullable=True),
        sa.CheckConstraint(
            "status IN ('CREATED', 'AWAITING_DEPOSIT', 'PENDING_CONFIRMATION', 'HELD', "
            "'RELEASING', 'RELEASED', 'REFUNDING', 'REFUNDED', 'DISPUTE_HELD', "
            "'RESOLVED', 'CANCELLED', 'EXPIRED')",
            name="ck_escrow_valid_status",
        ),
        sa.CheckConstraint("amount > 0", name="ck_escrow_positive_amount"),
        sa.CheckConstraint("required_confirmations >= 0", name="ck_escrow_confirmations"),
        sa.CheckConstraint("depositor_id <> beneficiary_id", name="ck_escrow_distinct_parties"),
    )
    op.create_index("idx_escrow_status", "escrow_contracts", ["status"])
    op.create_index("idx_escrow_depositor", "escrow_contracts", ["depositor_id"])
    op.create_index("idx_escrow_beneficiary", "escrow_contracts", ["beneficiary_id"])
    op.create_index("idx_escrow_auto_release", "escrow_contracts", ["auto_release_deadline"])

    op.create_table(
        "disputes",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "contract_id",
            sa.Uuid(),
            sa.ForeignKey("escrow_contracts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("raised_by", sa.String(64), nullable=False),
        sa.Column("against_party", sa.String(64), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("evidence", JSONType, nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("outcome", sa.String(16), nullable=True),
        sa.Column("split_fraction", sa.Numeric(9, 8), nullable=True),
        sa.Column("released_amount", sa.BigInteger(), nullable=True),
        sa.Column("refunded_amount", sa.BigInteger(), nullable=True),
        sa.Column("arbiter_id", sa.String(64), nullable=True),
        sa.Column("sla_deadline", TZDateTime, nullable=True),
        sa.Column("escalated_at", TZDateTime, nullable=True),
        sa.Column("created_at", TZDateTime, nullable=False),
        sa.Column("resolved_at", TZDateTime, nullable=True),
        sa.UniqueConstraint("contract_id", name="uq_dispute_contract"),
        sa.CheckConstraint("status IN ('open', 'resolved')", name="ck_dispute_valid_status"),
        sa.CheckConstraint(
            "outcome IS NULL OR outcome IN ('release', 'refund', 'split')",
            name="ck_dispute_valid_outcome",
        ),
    )
    op.create_index("idx_dispute_status", "disputes", ["status"])

    op.create_table(
        "confirmation_observations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "contract_id",
            sa.Uuid(),
            sa.ForeignKey("escrow_contracts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("observation_id", sa.String(128), nullable=False),
        sa.Column("height", sa.Integer(), nullable=False),
        sa.Column("recorded_at", TZDateTime, nullable=False),
        sa.UniqueConstraint(
            "contract_id", "observation_id", name="uq_observation_per_contract"
        ),
    )

    op.create_table(
        "escrow_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "contract_id",
            sa.Uuid(),
            sa.ForeignKey("escrow_contracts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("old_status", sa.String(24), nullable=True),
        sa.Column("new_status", sa.String(24), nullable=False),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("metadata", JSONType, nullable=True),
        sa.Column("created_at", TZDateTime, nullable=False),
        sa.UniqueConstraint("contract_id", "sequence", name="uq_event_contract_sequence"),
    )
    op.create_index("idx_event_contract", "escrow_events", ["contract_id"])
    op.create_index("idx_event_type", "escrow_events", ["event_type"])


def downgrade() -> None:
    op.drop_table("escrow_events")
    op.drop_table("confirmation_observations")
    op.drop_table("disputes")
    op.drop_table("escrow_contracts")
    op.drop_table("ledger_entries")
    op.drop_table("accounts")
