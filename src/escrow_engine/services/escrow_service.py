"""Escrow Service — core business logic for contract lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - AccountLedger (every balance change)
    - ConfirmationTracker and DisputeResolver
    - Repositories and the audit event log
    - DeadlineScheduler (kept in sync after every commit)

Both REST routes and MCP tools call into this service, ensuring a single
source of truth for all business rules.

Every operation runs as one unit of work: take the contract lock, open a
session and transaction, take the parties' account locks (sorted), apply
the change, commit, then update the scheduler, and only then release the
locks. Two operations on one contract therefore never interleave, and the
loser of a race sees the winner's committed state.
"""

from __future__ import annotations

import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy.orm.exc import StaleDataError
from statemachine.exceptions import TransitionNotAllowed

from escrow_engine.config import get_settings
from escrow_engine.domain.enums import (
    SYSTEM_ACTOR,
    Bucket,
    ContractKind,
    DeadlineKind,
    DisputeOutcome,
    DisputeStatus,
    EscrowStatus,
    EventType,
)
from escrow_engine.domain.exceptions import (
    ContractNotFoundError,
    DeadlineExpiredError,
    DisputeNotFoundError,
    EscrowEngineError,
    InvalidAmountError,
    InvalidStateTransitionError,
    StaleContractVersionError,
    UnauthorizedActionError,
)
from escrow_engine.domain.state_machine import EscrowStateMachine
from escrow_engine.infrastructure.database.orm_models import EscrowContract
from escrow_engine.infrastructure.database.repositories import (
    AccountRepository,
    DisputeRepository,
    EscrowRepository,
    EventRepository,
)
from escrow_engine.logging_config import contract_log_context, get_logger
from escrow_engine.orchestration.clock import SystemClock
from escrow_engine.orchestration.locks import KeyedLock
from escrow_engine.schemas.accounts import BalanceSnapshot
from escrow_engine.schemas.escrow import ContractSnapshot, DisputeSnapshot
from escrow_engine.services.confirmation_tracker import ConfirmationTracker
from escrow_engine.services.dispute_resolver import DisputeResolver
from escrow_engine.services.ledger import AccountLedger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.config import Settings
    from escrow_engine.infrastructure.database.orm_models import (
        Account,
        Dispute,
        EscrowEvent,
        LedgerEntry,
    )
    from escrow_engine.orchestration.clock import Clock
    from escrow_engine.orchestration.deadline_scheduler import DeadlineScheduler

logger = get_logger(__name__)

_CONTRACT_FIELDS = (
    "id",
    "kind",
    "depositor_id",
    "beneficiary_id",
    "currency",
    "amount",
    "observed_deposit",
    "status",
    "version",
    "required_confirmations",
    "observed_confirmations",
    "payment_deadline",
    "auto_release_deadline",
    "milestone_ref",
    "trade_ref",
    "description",
    "cancel_consents",
    "created_at",
    "updated_at",
    "closed_at",
)


def account_key(owner_id: str, currency: str) -> str:
    return f"{owner_id}:{currency.upper()}"


class _UnitOfWork:
    """Session-scoped collaborators for one locked operation."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        lock_stack: AsyncExitStack,
        account_locks: KeyedLock,
    ) -> None:
        self.session = session
        self.contracts = EscrowRepository(session)
        self.events = EventRepository(session)
        self.disputes = DisputeRepository(session)
        self.accounts = AccountRepository(session)
        self.ledger = AccountLedger(session, settings)
        self.tracker = ConfirmationTracker(session)
        self.resolver = DisputeResolver(session, self.ledger, settings)
        self._lock_stack = lock_stack
        self._account_locks = account_locks
        self._locked_accounts = False
        self.callbacks: list[Callable[[], None]] = []

    async def lock_accounts(self, *keys: str) -> None:
        """Take account locks; held until after commit. Call at most once."""
        if self._locked_accounts:
            raise RuntimeError("Account locks must be taken in a single sorted batch")
        self._locked_accounts = True
        await self._lock_stack.enter_async_context(self._account_locks.hold_many(keys))

    def after_commit(self, callback: Callable[[], None]) -> None:
        self.callbacks.append(callback)


class EscrowService:
    """Manages the escrow contract lifecycle and the accounts behind it."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        clock: Clock | None = None,
        scheduler: DeadlineScheduler | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._scheduler = scheduler
        self._contract_locks = KeyedLock("contract")
        self._account_locks = KeyedLock("account")

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def settings(self) -> Settings:
        return self._settings

    def attach_scheduler(self, scheduler: DeadlineScheduler | None) -> None:
        self._scheduler = scheduler

    # ------------------------------------------------------------------
    # Contract Creation
    # ------------------------------------------------------------------

    async def create_escrow(
        self,
        depositor_id: str,
        beneficiary_id: str,
        currency: str,
        amount: int,
        required_confirmations: int | None = None,
        payment_deadline: datetime | None = None,
        kind: ContractKind | str = ContractKind.TRADE,
        auto_release_after: int | timedelta | None = None,
        milestone_ref: str | None = None,
        trade_ref: str | None = None,
        description: str | None = None,
        open_immediately: bool = True,
    ) -> uuid.UUID:
        """Create a contract in CREATED (or AWAITING_DEPOSIT) and return its id.

        The depositor must already hold an account in ``currency``; the
        beneficiary's account is opened on demand.
        """
        currency = currency.upper()
        kind = ContractKind(kind)
        now = self._clock.now()

        if depositor_id == beneficiary_id:
            raise EscrowEngineError(
                "Depositor and beneficiary must be different parties", code="INVALID_CONTRACT"
            )
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(f"Escrow amount must be a positive integer, got {amount!r}")
        if required_confirmations is None:
            required_confirmations = self._settings.confirmations_for(currency)
        if required_confirmations < 0:
            raise EscrowEngineError(
                "Required confirmations cannot be negative", code="INVALID_CONTRACT"
            )
        if payment_deadline is not None:
            if payment_deadline.tzinfo is None:
                raise EscrowEngineError(
                    "Payment deadline must be timezone-aware", code="INVALID_CONTRACT"
                )
            if payment_deadline <= now:
                raise DeadlineExpiredError("new", payment_deadline.isoformat())

        if auto_release_after is None:
            window = self._settings.auto_release_seconds_for(kind.value)
        elif isinstance(auto_release_after, timedelta):
            window = int(auto_release_after.total_seconds()) or None
        else:
            window = int(auto_release_after) or None
        if window is not None and window < 0:
            raise EscrowEngineError(
                "Auto-release window cannot be negative", code="INVALID_CONTRACT"
            )

        contract_id = uuid.uuid4()
        async with self._unit_of_work(contract_id) as uow:
            await uow.lock_accounts(
                account_key(depositor_id, currency), account_key(beneficiary_id, currency)
            )
            await uow.ledger.get_account(depositor_id, currency)
            await uow.ledger.open_account(beneficiary_id, currency)

            contract = await uow.contracts.create(
                EscrowContract(
                    id=contract_id,
                    kind=kind.value,
                    depositor_id=depositor_id,
                    beneficiary_id=beneficiary_id,
                    currency=currency,
                    amount=amount,
                    status=EscrowStatus.CREATED.value,
                    required_confirmations=required_confirmations,
                    observed_confirmations=0,
                    payment_deadline=payment_deadline,
                    auto_release_after_seconds=window,
                    milestone_ref=milestone_ref,
                    trade_ref=trade_ref,
                    description=description,
                    cancel_consents=[],
                )
            )
            await uow.events.record(
                contract_id=contract.id,
                event_type=EventType.CONTRACT_CREATED,
                old_status=None,
                new_status=EscrowStatus.CREATED,
                actor=depositor_id,
                metadata={
                    "amount": amount,
                    "currency": currency,
                    "kind": kind.value,
                    "required_confirmations": required_confirmations,
                },
            )
            if open_immediately:
                await self._transition(
                    uow,
                    contract,
                    "open_for_deposit",
                    EventType.DEPOSIT_WINDOW_OPENED,
                    actor=depositor_id,
                )
            await self._schedule_after_commit(uow, contract)

        logger.info(
            "escrow.created",
            contract_id=str(contract_id),
            amount=amount,
            currency=currency,
            kind=kind.value,
        )
        return contract_id

    async def open_for_deposit(
        self,
        contract_id: uuid.UUID,
        expected_version: int | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> ContractSnapshot:
        """CREATED -> AWAITING_DEPOSIT; starts the payment deadline if set."""
        async with self._unit_of_work(contract_id) as uow:
            contract = await self._load(uow, contract_id, expected_version)
            self._require_party_or_system(contract, actor, "open the deposit window")
            await self._transition(
                uow, contract, "open_for_deposit", EventType.DEPOSIT_WINDOW_OPENED, actor=actor
            )
            await self._schedule_after_commit(uow, contract)
            return await self._snapshot(uow, contract)

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    async def notify_deposit(
        self,
        contract_id: uuid.UUID,
        observed_amount: int,
        expected_version: int | None = None,
    ) -> ContractSnapshot:
        """Record a deposit reported by the payment collaborator.

        Moves the contract amount from the depositor's ``available`` to
        ``pending``. Overpayment moves only the contract amount.
        """
        now = self._clock.now()
        async with self._unit_of_work(contract_id) as uow:
            contract = await self._load(uow, contract_id, expected_version)
            self._check(contract, "deposit_observed")

            if contract.payment_deadline is not None and now >= contract.payment_deadline:
                raise DeadlineExpiredError(str(contract.id), contract.payment_deadline.isoformat())
            if observed_amount < contract.amount:
                raise InvalidAmountError(
                    f"Deposit of {observed_amount} does not cover the escrow amount "
                    f"{contract.amount}"
                )

            depositor, _ = await self._party_accounts(uow, contract)
            await uow.ledger.move(
                depositor,
                Bucket.AVAILABLE,
                Bucket.PENDING,
                contract.amount,
                contract_id=contract.id,
                memo="deposit observed",
            )
            contract.observed_deposit = observed_amount
            await self._transition(
                uow,
                contract,
                "deposit_observed",
                EventType.DEPOSIT_OBSERVED,
                metadata={
                    "observed_amount": observed_amount,
                    "excess": observed_amount - contract.amount,
                },
            )
            logger.info(
                "escrow.deposit_observed",
                observed_amount=observed_amount,
                amount=contract.amount,
            )

            if contract.observed_confirmations >= contract.required_confirmations:
                await self._hold_funds(uow, contract, depositor, now)

            await self._schedule_after_commit(uow, contract)
            return await self._snapshot(uow, contract)

    async def notify_confirmation(
        self,
        contract_id: uuid.UUID,
        observation_id: str,
        height: int,
    ) -> ContractSnapshot:
        """Record a confirmation from the blockchain watcher.

        Duplicates, stale heights and confirmations for contracts that are no
        longer waiting on them are absorbed, never raised.
        """
        now = self._clock.now()
        async with self._unit_of_work(contract_id) as uow:
            contract = await self._load(uow, contract_id)
            depositor = None
            if contract.status == EscrowStatus.PENDING_CONFIRMATION.value:
                # Account locks are taken before the first write of the unit.
                depositor, _ = await self._party_accounts(uow, contract)
            result = await uow.tracker.record_confirmation(contract, observation_id, height)

            if result.threshold_crossed:
                if depositor is not None:
                    await self._hold_funds(uow, contract, depositor, now)
                else:
                    logger.info(
                        "confirmation.threshold_met_without_transition",
                        status=contract.status,
                        observed=result.observed,
                    )
            elif result.accepted and contract.status != EscrowStatus.PENDING_CONFIRMATION.value:
                logger.info(
                    "confirmation.recorded_no_transition",
                    status=contract.status,
                    observed=result.observed,
                )

            await self._schedule_after_commit(uow, contract)
            return await self._snapshot(uow, contract)

    # ------------------------------------------------------------------
    # Release / Refund / Cancel
    # ------------------------------------------------------------------

    async def request_release(
        self,
        contract_id: uuid.UUID,
        requested_by: str,
        expected_version: int | None = None,
    ) -> ContractSnapshot:
        """Depositor approves payout: HELD -> RELEASING -> RELEASED."""
        async with self._unit_of_work(contract_id) as uow:
            contract = await self._load(uow, contract_id, expected_version)
            if requested_by != contract.depositor_id:
                raise UnauthorizedActionError(requested_by, "release funds", str(contract.id))
            self._check(contract, "release_requested")

            await self._release(
                uow, contract, "release_requested", EventType.RELEASE_REQUESTED, requested_by
            )
            await self._schedule_after_commit(uow, contract)
            return await self._snapshot(uow, contract)

    async def request_refund(
        self,
        contract_id: uuid.UUID,
        requested_by: str,
        expected_version: int | None = None,
    ) -> ContractSnapshot:
        """Return funds to the depositor from HELD or PENDING_CONFIRMATION.

        The beneficiary may always refund voluntarily and SYSTEM refunds on
        failed payment; the depositor may only pull back funds that are
        still waiting for confirmations.
        """
        async with self._unit_of_work(contract_id) as uow:
            contract = await self._load(uow, contract_id, expected_version)
            self._check(contract, "refund_requested")

            allowed = {contract.beneficiary_id, SYSTEM_ACTOR}
            if contract.status == EscrowStatus.PENDING_CONFIRMATION.value:
                allowed.add(contract.depositor_id)
            if requested_by not in allowed:
                raise UnauthorizedActionError(requested_by, "refund funds", str(contract.id))

            source = (
                Bucket.ESCROW
                if contract.status == EscrowStatus.HELD.value
                else Bucket.PENDING
            )
            depositor, _ = await self._party_accounts(uow, contract)
            await self._transition(
                uow,
                contract,
                "refund_requested",
                EventType.REFUND_REQUESTED,
                actor=requested_by,
            )
            await uow.ledger.move(
                depositor,
                source,
                Bucket.AVAILABLE,
                contract.amount,
                contract_id=contract.id,
                memo="refund",
            )
            contract.auto_release_deadline = None
            await self._transition(
                uow,
                contract,
                "refund_settled",
                EventType.FUNDS_REFUNDED,
                actor=requested_by,
                metadata={"amount": contract.amount, "from_bucket": source.value},
            )
            logger.info("escrow.refunded", amount=contract.amount, by=requested_by)

            await self._schedule_after_commit(uow, contract)
            return await self._snapshot(uow, contract)

    async def request_cancel(
        self,
        contract_id: uuid.UUID,
        requested_by: str,
        expected_version: int | None = None,
    ) -> ContractSnapshot:
        """Record one party's consent to cancel; cancels once both agree."""
        async with self._unit_of_work(contract_id) as uow:
            contract = await self._load(uow, contract_id, expected_version)
            if requested_by not in (contract.depositor_id, contract.beneficiary_id):
                raise UnauthorizedActionError(requested_by, "cancel", str(contract.id))
            self._check(contract, "cancel_requested")

            consents = list(contract.cancel_consents or [])
            if requested_by not in consents:
                consents.append(requested_by)
                contract.cancel_consents = consents

            if {contract.depositor_id, contract.beneficiary_id} <= set(consents):
                await self._transition(
                    uow,
                    contract,
                    "cancel_requested",
                    EventType.CONTRACT_CANCELLED,
                    actor=requested_by,
                    metadata={"consents": consents},
                )
                logger.info("escrow.cancelled")
            else:
                await uow.contracts.save(contract)
                status = EscrowStatus(contract.status)
                await uow.events.record(
                    contract_id=contract.id,
                    event_type=EventType.CANCEL_CONSENT_RECORDED,
                    old_status=status,
                    new_status=status,
                    actor=requested_by,
                    metadata={"consents": consents},
                )
                logger.info("escrow.cancel_consent_recorded", by=requested_by)

            await self._schedule_after_commit(uow, contract)
            return await self._snapshot(uow, contract)

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def raise_dispute(
        self,
        contract_id: uuid.UUID,
        raised_by: str,
        evidence: list[str] | None = None,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> ContractSnapshot:
        """Freeze a HELD contract: HELD -> DISPUTE_HELD, auto-release cancelled."""
        now = self._clock.now()
        async with self._unit_of_work(contract_id) as uow:
            contract = await self._load(uow, contract_id, expected_version)
            if raised_by not in (contract.depositor_id, contract.beneficiary_id):
                raise UnauthorizedActionError(raised_by, "raise a dispute", str(contract.id))

            dispute = await uow.resolver.open(contract, raised_by, evidence or [], reason, now)
            contract.dispute_id = dispute.id
            contract.auto_release_deadline = None
            await self._transition(
                uow,
                contract,
                "dispute_raised",
                EventType.DISPUTE_RAISED,
                actor=raised_by,
                metadata={
                    "dispute_id": str(dispute.id),
                    "reason": reason,
                    "evidence": list(dispute.evidence),
                },
            )
            logger.info("escrow.dispute_raised", dispute_id=str(dispute.id), by=raised_by)

            await self._schedule_after_commit(uow, contract)
            return await self._snapshot(uow, contract)

    async def resolve_dispute(
        self,
        dispute_id: uuid.UUID,
        outcome: DisputeOutcome | str,
        arbiter: str,
        fraction: Decimal | str | None = None,
    ) -> ContractSnapshot:
        """Apply an arbiter's decision: DISPUTE_HELD -> RESOLVED."""
        try:
            outcome = DisputeOutcome(outcome)
        except ValueError as err:
            raise EscrowEngineError(
                f"Unknown dispute outcome: {outcome!r}", code="INVALID_OUTCOME"
            ) from err

        contract_id = await self._contract_id_for_dispute(dispute_id)
        now = self._clock.now()
        async with self._unit_of_work(contract_id) as uow:
            dispute = await uow.disputes.get_by_id(dispute_id)
            if dispute is None:
                raise DisputeNotFoundError(str(dispute_id))
            contract = await self._load(uow, contract_id)

            uow.resolver.authorize(dispute, contract, arbiter)
            self._check(contract, "dispute_resolved")
            uow.resolver.outcome_amounts(contract.amount, outcome, fraction)

            depositor, beneficiary = await self._party_accounts(uow, contract)
            await uow.resolver.settle(
                dispute, contract, outcome, fraction, arbiter, depositor, beneficiary, now
            )
            await self._transition(
                uow,
                contract,
                "dispute_resolved",
                EventType.DISPUTE_RESOLVED,
                actor=arbiter,
                metadata={
                    "dispute_id": str(dispute.id),
                    "outcome": outcome.value,
                    "fraction": str(dispute.split_fraction)
                    if dispute.split_fraction is not None
                    else None,
                    "released_amount": dispute.released_amount,
                    "refunded_amount": dispute.refunded_amount,
                },
            )

            await self._schedule_after_commit(uow, contract)
            return await self._snapshot(uow, contract)

    async def get_dispute(self, dispute_id: uuid.UUID) -> Dispute:
        async with self._session_factory() as session:
            dispute = await DisputeRepository(session).get_by_id(dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(str(dispute_id))
        return dispute

    # ------------------------------------------------------------------
    # Deadlines (called by the DeadlineScheduler)
    # ------------------------------------------------------------------

    async def handle_deadline(self, contract_id: uuid.UUID, kind: DeadlineKind | str) -> bool:
        """Fire a due deadline if the persisted state still calls for it.

        Returns True if something happened. A deadline that no longer applies
        (contract moved on, deadline pushed back, dispute already escalated)
        is a logged no-op.
        """
        kind = DeadlineKind(kind)
        now = self._clock.now()
        try:
            async with self._unit_of_work(contract_id) as uow:
                contract = await uow.contracts.get_by_id(contract_id)
                if contract is None:
                    logger.warning("scheduler.contract_missing", kind=kind.value)
                    return False

                if kind == DeadlineKind.PAYMENT:
                    fired = await self._expire_payment(uow, contract, now)
                elif kind == DeadlineKind.AUTO_RELEASE:
                    fired = await self._auto_release(uow, contract, now)
                else:
                    fired = await self._escalate_dispute(uow, contract, now)

                await self._schedule_after_commit(uow, contract)
        except (InvalidStateTransitionError, StaleContractVersionError) as err:
            logger.info("scheduler.fire_lost_race", kind=kind.value, error=err.code)
            return False

        if not fired:
            logger.debug("scheduler.fire_skipped", kind=kind.value)
        return fired

    async def pending_deadlines(self) -> list[tuple[uuid.UUID, DeadlineKind, datetime]]:
        """Every deadline implied by persisted state (used on restart)."""
        async with self._session_factory() as session:
            contracts = await EscrowRepository(session).get_with_pending_deadlines()
            disputes = await DisputeRepository(session).get_open_with_sla()

        pending: list[tuple[uuid.UUID, DeadlineKind, datetime]] = []
        for contract in contracts:
            for kind, fires_at in _deadlines_for(contract, None).items():
                if kind != DeadlineKind.DISPUTE_SLA and fires_at is not None:
                    pending.append((contract.id, kind, fires_at))
        for dispute in disputes:
            pending.append((dispute.contract_id, DeadlineKind.DISPUTE_SLA, dispute.sla_deadline))
        return pending

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_contract(self, contract_id: uuid.UUID) -> ContractSnapshot:
        """Contract state, deadlines, dispute, and both parties' balances."""
        async with self._session_factory() as session:
            contract = await EscrowRepository(session).get_by_id(contract_id)
            if contract is None:
                raise ContractNotFoundError(str(contract_id))
            return await _build_snapshot(
                contract, DisputeRepository(session), AccountRepository(session)
            )

    async def get_events(self, contract_id: uuid.UUID) -> list[EscrowEvent]:
        """Get audit trail."""
        async with self._session_factory() as session:
            if await EscrowRepository(session).get_by_id(contract_id) is None:
                raise ContractNotFoundError(str(contract_id))
            return await EventRepository(session).get_by_contract(contract_id)

    async def list_contracts(self, party_id: str) -> list[ContractSnapshot]:
        async with self._session_factory() as session:
            contracts = await EscrowRepository(session).get_by_party(party_id)
            disputes = DisputeRepository(session)
            accounts = AccountRepository(session)
            return [await _build_snapshot(c, disputes, accounts) for c in contracts]

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def open_account(self, owner_id: str, currency: str) -> BalanceSnapshot:
        async with self._account_work(owner_id, currency) as uow:
            account = await uow.ledger.open_account(owner_id, currency)
            return BalanceSnapshot.model_validate(account)

    async def deposit_external(
        self, owner_id: str, currency: str, amount: int, memo: str | None = None
    ) -> BalanceSnapshot:
        """Credit ``available`` from outside the engine (wallet top-up)."""
        async with self._account_work(owner_id, currency) as uow:
            account = await uow.ledger.get_account(owner_id, currency)
            await uow.ledger.credit(
                account, Bucket.AVAILABLE, amount, memo=memo or "external deposit"
            )
            logger.info("ledger.external_deposit", owner=owner_id, currency=currency, amount=amount)
            return BalanceSnapshot.model_validate(account)

    async def withdraw_external(
        self, owner_id: str, currency: str, amount: int, memo: str | None = None
    ) -> BalanceSnapshot:
        """Debit ``available`` to outside the engine (cash-out)."""
        async with self._account_work(owner_id, currency) as uow:
            account = await uow.ledger.get_account(owner_id, currency)
            await uow.ledger.debit(
                account, Bucket.AVAILABLE, amount, memo=memo or "external withdrawal"
            )
            logger.info(
                "ledger.external_withdrawal", owner=owner_id, currency=currency, amount=amount
            )
            return BalanceSnapshot.model_validate(account)

    async def transfer_direct(
        self,
        from_owner: str,
        to_owner: str,
        currency: str,
        amount: int,
        memo: str | None = None,
    ) -> tuple[BalanceSnapshot, BalanceSnapshot]:
        """Contract-less available -> available transfer between two owners."""
        async with self._account_work(from_owner, currency, to_owner) as uow:
            source = await uow.ledger.get_account(from_owner, currency)
            target = await uow.ledger.get_account(to_owner, currency)
            await uow.ledger.transfer(
                source,
                Bucket.AVAILABLE,
                target,
                Bucket.AVAILABLE,
                amount,
                memo=memo or "direct transfer",
            )
            logger.info(
                "ledger.direct_transfer",
                source=source.label,
                target=target.label,
                amount=amount,
            )
            return BalanceSnapshot.model_validate(source), BalanceSnapshot.model_validate(target)

    async def get_balance(self, owner_id: str, currency: str) -> BalanceSnapshot:
        async with self._session_factory() as session:
            account = await AccountLedger(session, self._settings).get_account(owner_id, currency)
            return BalanceSnapshot.model_validate(account)

    async def get_entries(self, owner_id: str, currency: str) -> list[LedgerEntry]:
        async with self._session_factory() as session:
            ledger = AccountLedger(session, self._settings)
            account = await ledger.get_account(owner_id, currency)
            return await ledger.entries(account)

    async def reconcile_account(
        self, owner_id: str, currency: str, *, repair: bool = True
    ) -> dict | None:
        """Replay one account's ledger; repair the projection on drift."""
        async with self._account_work(owner_id, currency) as uow:
            account = await uow.ledger.get_account(owner_id, currency)
            return await uow.ledger.reconcile(account, repair=repair)

    async def list_accounts(self) -> list[Account]:
        async with self._session_factory() as session:
            return await AccountRepository(session).list_all()

    # ------------------------------------------------------------------
    # Private helpers: units of work
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _unit_of_work(self, contract_id: uuid.UUID) -> AsyncIterator[_UnitOfWork]:
        async with AsyncExitStack() as locks:
            await locks.enter_async_context(self._contract_locks.hold(contract_id))
            locks.enter_context(contract_log_context(contract_id))
            try:
                async with self._session_factory() as session, session.begin():
                    uow = _UnitOfWork(session, self._settings, locks, self._account_locks)
                    yield uow
            except StaleDataError as err:
                logger.warning("escrow.stale_write")
                raise StaleContractVersionError(str(contract_id), None, None) from err
            for callback in uow.callbacks:
                callback()

    @asynccontextmanager
    async def _account_work(
        self, owner_id: str, currency: str, *others: str
    ) -> AsyncIterator[_UnitOfWork]:
        async with AsyncExitStack() as locks:
            async with self._session_factory() as session, session.begin():
                uow = _UnitOfWork(session, self._settings, locks, self._account_locks)
                await uow.lock_accounts(
                    account_key(owner_id, currency),
                    *(account_key(other, currency) for other in others),
                )
                yield uow

    async def _contract_id_for_dispute(self, dispute_id: uuid.UUID) -> uuid.UUID:
        async with self._session_factory() as session:
            dispute = await DisputeRepository(session).get_by_id(dispute_id)
            if dispute is None:
                raise DisputeNotFoundError(str(dispute_id))
            return dispute.contract_id

    async def _load(
        self,
        uow: _UnitOfWork,
        contract_id: uuid.UUID,
        expected_version: int | None = None,
    ) -> EscrowContract:
        contract = await uow.contracts.get_by_id(contract_id)
        if contract is None:
            raise ContractNotFoundError(str(contract_id))
        if expected_version is not None and contract.version != expected_version:
            raise StaleContractVersionError(str(contract_id), expected_version, contract.version)
        return contract

    async def _party_accounts(
        self, uow: _UnitOfWork, contract: EscrowContract
    ) -> tuple[Account, Account]:
        await uow.lock_accounts(
            account_key(contract.depositor_id, contract.currency),
            account_key(contract.beneficiary_id, contract.currency),
        )
        depositor = await uow.ledger.get_account(contract.depositor_id, contract.currency)
        beneficiary = await uow.ledger.get_account(contract.beneficiary_id, contract.currency)
        return depositor, beneficiary

    def _require_party_or_system(self, contract: EscrowContract, actor: str, action: str) -> None:
        if actor not in (contract.depositor_id, contract.beneficiary_id, SYSTEM_ACTOR):
            raise UnauthorizedActionError(actor, action, str(contract.id))

    # ------------------------------------------------------------------
    # Private helpers: transitions
    # ------------------------------------------------------------------

    def _check(self, contract: EscrowContract, event_name: str) -> EscrowStatus:
        """Validate a state machine transition and return the target status.

        Raises InvalidStateTransitionError if the transition is illegal.
        """
        sm = EscrowStateMachine(current_status=contract.status)
        event_method = getattr(sm, event_name, None)
        if event_method is None:
            raise InvalidStateTransitionError(contract.status, event_name)
        try:
            event_method()
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(contract.status, event_name) from err
        return EscrowStatus(sm.status)

    async def _transition(
        self,
        uow: _UnitOfWork,
        contract: EscrowContract,
        event_name: str,
        event_type: EventType,
        actor: str = SYSTEM_ACTOR,
        metadata: dict | None = None,
    ) -> EscrowStatus:
        old_status = EscrowStatus(contract.status)
        new_status = self._check(contract, event_name)
        await uow.contracts.update_status(contract, new_status)
        await uow.events.record(
            contract_id=contract.id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
            metadata=metadata,
        )
        logger.debug(
            "escrow.transition",
            trigger=event_name,
            old_status=old_status.value,
            new_status=new_status.value,
        )
        return new_status

    async def _hold_funds(
        self, uow: _UnitOfWork, contract: EscrowContract, depositor: Account, now: datetime
    ) -> None:
        """PENDING_CONFIRMATION -> HELD; starts the auto-release window."""
        self._check(contract, "confirmation_threshold_met")
        await uow.ledger.move(
            depositor,
            Bucket.PENDING,
            Bucket.ESCROW,
            contract.amount,
            contract_id=contract.id,
            memo="confirmation threshold met",
        )
        if contract.auto_release_after_seconds:
            contract.auto_release_deadline = now + timedelta(
                seconds=contract.auto_release_after_seconds
            )
        await self._transition(
            uow,
            contract,
            "confirmation_threshold_met",
            EventType.CONFIRMATION_THRESHOLD_MET,
            metadata={
                "observed": contract.observed_confirmations,
                "required": contract.required_confirmations,
                "auto_release_deadline": contract.auto_release_deadline.isoformat()
                if contract.auto_release_deadline
                else None,
            },
        )
        logger.info("escrow.held", amount=contract.amount)

    async def _release(
        self,
        uow: _UnitOfWork,
        contract: EscrowContract,
        trigger: str,
        trigger_event: EventType,
        actor: str,
    ) -> None:
        """HELD -> RELEASING -> RELEASED; depositor escrow to beneficiary available."""
        depositor, beneficiary = await self._party_accounts(uow, contract)
        await self._transition(uow, contract, trigger, trigger_event, actor=actor)
        await uow.ledger.transfer(
            depositor,
            Bucket.ESCROW,
            beneficiary,
            Bucket.AVAILABLE,
            contract.amount,
            contract_id=contract.id,
            memo="release",
        )
        contract.auto_release_deadline = None
        await self._transition(
            uow,
            contract,
            "release_settled",
            EventType.FUNDS_RELEASED,
            actor=actor,
            metadata={"amount": contract.amount, "beneficiary": contract.beneficiary_id},
        )
        logger.info("escrow.released", amount=contract.amount, trigger=trigger)

    async def _expire_payment(
        self, uow: _UnitOfWork, contract: EscrowContract, now: datetime
    ) -> bool:
        if contract.status != EscrowStatus.AWAITING_DEPOSIT.value:
            return False
        if contract.payment_deadline is None or contract.payment_deadline > now:
            return False
        await self._transition(
            uow,
            contract,
            "payment_deadline_expired",
            EventType.PAYMENT_DEADLINE_EXPIRED,
            metadata={"payment_deadline": contract.payment_deadline.isoformat()},
        )
        logger.info("escrow.expired")
        return True

    async def _auto_release(
        self, uow: _UnitOfWork, contract: EscrowContract, now: datetime
    ) -> bool:
        # Dispute wins any tie: a disputed contract is no longer HELD.
        if contract.status != EscrowStatus.HELD.value:
            return False
        if contract.auto_release_deadline is None or contract.auto_release_deadline > now:
            return False
        await self._release(
            uow,
            contract,
            "auto_release_deadline_fired",
            EventType.AUTO_RELEASE_FIRED,
            SYSTEM_ACTOR,
        )
        return True

    async def _escalate_dispute(
        self, uow: _UnitOfWork, contract: EscrowContract, now: datetime
    ) -> bool:
        dispute = await uow.disputes.get_by_contract(contract.id)
        if dispute is None or not await uow.resolver.escalate(dispute, now):
            return False
        status = EscrowStatus(contract.status)
        await uow.events.record(
            contract_id=contract.id,
            event_type=EventType.DISPUTE_ESCALATED,
            old_status=status,
            new_status=status,
            metadata={
                "dispute_id": str(dispute.id),
                "sla_deadline": dispute.sla_deadline.isoformat(),
            },
        )
        return True

    # ------------------------------------------------------------------
    # Private helpers: scheduler sync and snapshots
    # ------------------------------------------------------------------

    async def _schedule_after_commit(self, uow: _UnitOfWork, contract: EscrowContract) -> None:
        if self._scheduler is None:
            return
        dispute = None
        if contract.dispute_id is not None:
            dispute = await uow.disputes.get_by_contract(contract.id)
        deadlines = _deadlines_for(contract, dispute)
        scheduler = self._scheduler
        contract_id = contract.id

        def sync() -> None:
            for kind, fires_at in deadlines.items():
                if fires_at is None:
                    scheduler.cancel(contract_id, kind)
                else:
                    scheduler.schedule(contract_id, kind, fires_at)

        uow.after_commit(sync)

    async def _snapshot(self, uow: _UnitOfWork, contract: EscrowContract) -> ContractSnapshot:
        await uow.session.flush()
        return await _build_snapshot(contract, uow.disputes, uow.accounts)


def _deadlines_for(
    contract: EscrowContract, dispute: Dispute | None
) -> dict[DeadlineKind, datetime | None]:
    """Which deadlines should be armed for a contract in its current state."""
    status = contract.status
    sla = None
    if (
        dispute is not None
        and dispute.status == DisputeStatus.OPEN.value
        and dispute.escalated_at is None
    ):
        sla = dispute.sla_deadline
    return {
        DeadlineKind.PAYMENT: contract.payment_deadline
        if status == EscrowStatus.AWAITING_DEPOSIT.value
        else None,
        DeadlineKind.AUTO_RELEASE: contract.auto_release_deadline
        if status == EscrowStatus.HELD.value
        else None,
        DeadlineKind.DISPUTE_SLA: sla,
    }


async def _build_snapshot(
    contract: EscrowContract,
    disputes: DisputeRepository,
    accounts: AccountRepository,
) -> ContractSnapshot:
    dispute = None
    if contract.dispute_id is not None:
        dispute = await disputes.get_by_contract(contract.id)
    depositor = await accounts.get(contract.depositor_id, contract.currency)
    beneficiary = await accounts.get(contract.beneficiary_id, contract.currency)

    return ContractSnapshot(
        **{name: getattr(contract, name) for name in _CONTRACT_FIELDS},
        dispute=DisputeSnapshot.model_validate(dispute) if dispute else None,
        depositor_balance=BalanceSnapshot.model_validate(depositor) if depositor else None,
        beneficiary_balance=BalanceSnapshot.model_validate(beneficiary) if beneficiary else None,
        allowed_events=EscrowStateMachine(current_status=contract.status).get_allowed_events(),
    )
