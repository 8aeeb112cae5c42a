"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import func, or_, select, update

from escrow_engine.domain.enums import TERMINAL_STATUSES, DisputeStatus
from escrow_engine.infrastructure.database.orm_models import (
    Account,
    ConfirmationObservation,
    Dispute,
    EscrowContract,
    EscrowEvent,
    LedgerEntry,
    utc_now,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_engine.domain.enums import EscrowStatus, EventType


class AccountRepository:
    """Data access for account balance rows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, account: Account) -> Account:
        self._session.add(account)
        await self._session.flush()
        return account

    async def get(self, owner_id: str, currency: str) -> Account | None:
        result = await self._session.execute(
            select(Account).where(Account.owner_id == owner_id, Account.currency == currency)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, account_id: uuid.UUID) -> Account | None:
        return await self._session.get(Account, account_id)

    async def lock(self, account_id: uuid.UUID) -> Account | None:
        """Re-read an account row under ``SELECT ... FOR UPDATE``.

        ``populate_existing`` makes sure a previously loaded object picks up
        the committed values instead of the session's cached copy.
        """
        result = await self._session.execute(
            select(Account)
            .where(Account.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def compare_and_set(
        self,
        account: Account,
        expected_version: int,
        *,
        available: int,
        escrow: int,
        pending: int,
        last_sequence: int,
    ) -> bool:
        """Write new balances only if the row is still at ``expected_version``.

        Returns False when another writer got there first.
        """
        result = await self._session.execute(
            update(Account)
            .where(Account.id == account.id, Account.version == expected_version)
            .values(
                available=available,
                escrow=escrow,
                pending=pending,
                last_sequence=last_sequence,
                version=expected_version + 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self._session.refresh(account)
        return True

    async def list_all(self) -> list[Account]:
        result = await self._session.execute(select(Account).order_by(Account.created_at))
        return list(result.scalars().all())

    async def overwrite_balances(
        self, account: Account, *, available: int, escrow: int, pending: int
    ) -> Account:
        """Reset the projection to replayed values (reconciliation only)."""
        account.available = available
        account.escrow = escrow
        account.pending = pending
        account.version += 1
        await self._session.flush()
        return account


class LedgerEntryRepository:
    """Data access for the append-only ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, entries: Sequence[LedgerEntry]) -> None:
        """Append entries. This is the ONLY write operation allowed."""
        self._session.add_all(entries)
        await self._session.flush()

    async def get_by_account(self, account_id: uuid.UUID) -> list[LedgerEntry]:
        result = await self._session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.sequence.asc())
        )
        return list(result.scalars().all())

    async def get_by_contract(self, contract_id: uuid.UUID) -> list[LedgerEntry]:
        result = await self._session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.contract_id == contract_id)
            .order_by(LedgerEntry.created_at.asc(), LedgerEntry.sequence.asc())
        )
        return list(result.scalars().all())

    async def sum_by_bucket(self, account_id: uuid.UUID) -> dict[str, int]:
        """Replay an account's entries into per-bucket totals."""
        result = await self._session.execute(
            select(LedgerEntry.bucket, func.coalesce(func.sum(LedgerEntry.delta), 0))
            .where(LedgerEntry.account_id == account_id)
            .group_by(LedgerEntry.bucket)
        )
        return {bucket: int(total) for bucket, total in result.all()}


class EscrowRepository:
    """Data access for escrow contracts."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, contract: EscrowContract) -> EscrowContract:
        """Insert a new escrow contract."""
        self._session.add(contract)
        await self._session.flush()
        return contract

    async def get_by_id(self, contract_id: uuid.UUID) -> EscrowContract | None:
        """Fetch a contract by its UUID, refreshing any cached copy."""
        result = await self._session.execute(
            select(EscrowContract)
            .where(EscrowContract.id == contract_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_status(self, status: EscrowStatus) -> list[EscrowContract]:
        """Fetch all contracts with a given status."""
        result = await self._session.execute(
            select(EscrowContract)
            .where(EscrowContract.status == status.value)
            .order_by(EscrowContract.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_by_party(self, party_id: str) -> list[EscrowContract]:
        """Fetch all contracts where the party is depositor or beneficiary."""
        result = await self._session.execute(
            select(EscrowContract)
            .where(
                or_(
                    EscrowContract.depositor_id == party_id,
                    EscrowContract.beneficiary_id == party_id,
                )
            )
            .order_by(EscrowContract.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_with_pending_deadlines(self) -> list[EscrowContract]:
        """Non-terminal contracts that carry a payment or auto-release deadline."""
        result = await self._session.execute(
            select(EscrowContract).where(
                EscrowContract.status.not_in([s.value for s in TERMINAL_STATUSES]),
                or_(
                    EscrowContract.payment_deadline.is_not(None),
                    EscrowContract.auto_release_deadline.is_not(None),
                ),
            )
        )
        return list(result.scalars().all())

    async def update_status(
        self,
        contract: EscrowContract,
        new_status: EscrowStatus,
    ) -> EscrowContract:
        """Update the status of a contract (call AFTER state machine validation).

        The flush carries ``WHERE version = <loaded version>``; a concurrent
        writer surfaces here as StaleDataError.
        """
        contract.status = new_status.value
        if new_status.is_terminal:
            contract.closed_at = utc_now()
        await self._session.flush()
        return contract

    async def save(self, contract: EscrowContract) -> EscrowContract:
        await self._session.flush()
        return contract


class DisputeRepository:
    """Data access for disputes."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, dispute: Dispute) -> Dispute:
        self._session.add(dispute)
        await self._session.flush()
        return dispute

    async def get_by_id(self, dispute_id: uuid.UUID) -> Dispute | None:
        result = await self._session.execute(
            select(Dispute)
            .where(Dispute.id == dispute_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_contract(self, contract_id: uuid.UUID) -> Dispute | None:
        result = await self._session.execute(
            select(Dispute).where(Dispute.contract_id == contract_id)
        )
        return result.scalar_one_or_none()

    async def get_open_with_sla(self) -> list[Dispute]:
        result = await self._session.execute(
            select(Dispute).where(
                Dispute.status == DisputeStatus.OPEN.value,
                Dispute.sla_deadline.is_not(None),
                Dispute.escalated_at.is_(None),
            )
        )
        return list(result.scalars().all())

    async def save(self, dispute: Dispute) -> Dispute:
        await self._session.flush()
        return dispute


class ObservationRepository:
    """Data access for the confirmation dedupe log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def exists(self, contract_id: uuid.UUID, observation_id: str) -> bool:
        result = await self._session.execute(
            select(ConfirmationObservation.id).where(
                ConfirmationObservation.contract_id == contract_id,
                ConfirmationObservation.observation_id == observation_id,
            )
        )
        return result.first() is not None

    async def record(
        self, contract_id: uuid.UUID, observation_id: str, height: int
    ) -> ConfirmationObservation:
        obs = ConfirmationObservation(
            contract_id=contract_id,
            observation_id=observation_id,
            height=height,
        )
        self._session.add(obs)
        await self._session.flush()
        return obs

    async def get_by_contract(self, contract_id: uuid.UUID) -> list[ConfirmationObservation]:
        result = await self._session.execute(
            select(ConfirmationObservation)
            .where(ConfirmationObservation.contract_id == contract_id)
            .order_by(ConfirmationObservation.height.asc())
        )
        return list(result.scalars().all())


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        contract_id: uuid.UUID,
        event_type: EventType,
        old_status: EscrowStatus | None,
        new_status: EscrowStatus,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> EscrowEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        last = await self._session.scalar(
            select(func.coalesce(func.max(EscrowEvent.sequence), 0)).where(
                EscrowEvent.contract_id == contract_id
            )
        )
        evt = EscrowEvent(
            contract_id=contract_id,
            sequence=int(last or 0) + 1,
            event_type=event_type.value,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_contract(self, contract_id: uuid.UUID) -> list[EscrowEvent]:
        """Fetch all events for a contract in the order they were recorded."""
        result = await self._session.execute(
            select(EscrowEvent)
            .where(EscrowEvent.contract_id == contract_id)
            .order_by(EscrowEvent.sequence.asc())
        )
        return list(result.scalars().all())
