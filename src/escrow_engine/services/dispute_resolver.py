"""DisputeResolver — dispute holds and arbiter resolutions.

The resolver owns the Dispute rows and the fund movement of a resolution.
The contract state transitions around it (HELD -> DISPUTE_HELD -> RESOLVED)
are fired by EscrowService, which calls in here while holding the contract
and account locks.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from escrow_engine.domain.enums import Bucket, DisputeOutcome, DisputeStatus, EscrowStatus
from escrow_engine.domain.exceptions import (
    DisputeAlreadyOpenError,
    DisputeNotOpenError,
    InvalidAmountError,
    InvalidStateTransitionError,
    UnauthorizedActionError,
)
from escrow_engine.domain.money import split_amount
from escrow_engine.infrastructure.database.orm_models import Dispute
from escrow_engine.infrastructure.database.repositories import DisputeRepository
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_engine.config import Settings
    from escrow_engine.infrastructure.database.orm_models import Account, EscrowContract
    from escrow_engine.services.ledger import AccountLedger

logger = get_logger(__name__)


class DisputeResolver:
    def __init__(self, session: AsyncSession, ledger: AccountLedger, settings: Settings) -> None:
        self._disputes = DisputeRepository(session)
        self._ledger = ledger
        self._settings = settings

    async def open(
        self,
        contract: EscrowContract,
        raised_by: str,
        evidence: list[str],
        reason: str | None,
        now: datetime,
    ) -> Dispute:
        """Create the dispute record for a HELD contract.

        Raises:
            DisputeAlreadyOpenError: The contract already has an open dispute.
            InvalidStateTransitionError: The contract is not HELD.
        """
        existing = await self._disputes.get_by_contract(contract.id)
        if existing is not None and existing.status == DisputeStatus.OPEN.value:
            raise DisputeAlreadyOpenError(str(contract.id))
        if contract.status != EscrowStatus.HELD.value:
            raise InvalidStateTransitionError(contract.status, "dispute_raised")

        against = (
            contract.beneficiary_id
            if raised_by == contract.depositor_id
            else contract.depositor_id
        )
        sla_deadline = None
        if self._settings.dispute_sla_hours > 0:
            sla_deadline = now + timedelta(hours=self._settings.dispute_sla_hours)

        dispute = await self._disputes.create(
            Dispute(
                contract_id=contract.id,
                raised_by=raised_by,
                against_party=against,
                reason=reason,
                evidence=list(evidence),
                status=DisputeStatus.OPEN.value,
                sla_deadline=sla_deadline,
                created_at=now,
            )
        )
        logger.info(
            "dispute.opened",
            dispute_id=str(dispute.id),
            raised_by=raised_by,
            evidence_count=len(dispute.evidence),
        )
        return dispute

    def authorize(self, dispute: Dispute, contract: EscrowContract, arbiter: str) -> None:
        """Check that ``dispute`` is open and ``arbiter`` may decide it."""
        if dispute.status != DisputeStatus.OPEN.value:
            raise DisputeNotOpenError(str(dispute.id))
        if arbiter in (contract.depositor_id, contract.beneficiary_id):
            raise UnauthorizedActionError(arbiter, "resolve a dispute", str(contract.id))
        allowed = self._settings.arbiter_id_list
        if allowed and arbiter not in allowed:
            raise UnauthorizedActionError(arbiter, "resolve a dispute", str(contract.id))

    @staticmethod
    def outcome_amounts(
        held: int, outcome: DisputeOutcome, fraction: Decimal | str | None
    ) -> tuple[int, int, Decimal | None]:
        """Return ``(release_amount, refund_amount, fraction)`` for an outcome."""
        if outcome == DisputeOutcome.RELEASE:
            return held, 0, None
        if outcome == DisputeOutcome.REFUND:
            return 0, held, None
        if fraction is None:
            raise InvalidAmountError("A split resolution needs a fraction in [0, 1]")
        if isinstance(fraction, float):
            raise InvalidAmountError("Split fractions must be Decimal or string, not float")
        try:
            share = Decimal(str(fraction))
        except InvalidOperation as err:
            raise InvalidAmountError(f"Not a decimal fraction: {fraction!r}") from err
        if not share.is_finite():
            raise InvalidAmountError(f"Split fraction must be finite, got {fraction!r}")
        release, refund = split_amount(held, share)
        return release, refund, share

    async def settle(
        self,
        dispute: Dispute,
        contract: EscrowContract,
        outcome: DisputeOutcome,
        fraction: Decimal | str | None,
        arbiter: str,
        depositor: Account,
        beneficiary: Account,
        now: datetime,
    ) -> Dispute:
        """Move the held funds per the outcome and close the dispute."""
        release, refund, share = self.outcome_amounts(contract.amount, outcome, fraction)

        if release:
            await self._ledger.transfer(
                depositor,
                Bucket.ESCROW,
                beneficiary,
                Bucket.AVAILABLE,
                release,
                contract_id=contract.id,
                memo=f"dispute {outcome.value}: release",
            )
        if refund:
            await self._ledger.move(
                depositor,
                Bucket.ESCROW,
                Bucket.AVAILABLE,
                refund,
                contract_id=contract.id,
                memo=f"dispute {outcome.value}: refund",
            )

        dispute.status = DisputeStatus.RESOLVED.value
        dispute.outcome = outcome.value
        dispute.split_fraction = share
        dispute.released_amount = release
        dispute.refunded_amount = refund
        dispute.arbiter_id = arbiter
        dispute.resolved_at = now
        await self._disputes.save(dispute)

        logger.info(
            "dispute.resolved",
            dispute_id=str(dispute.id),
            outcome=outcome.value,
            released=release,
            refunded=refund,
            arbiter=arbiter,
        )
        return dispute

    async def escalate(self, dispute: Dispute, now: datetime) -> bool:
        """Flag an open dispute whose SLA has passed. No funds move."""
        if dispute.status != DisputeStatus.OPEN.value or dispute.escalated_at is not None:
            return False
        if dispute.sla_deadline is None or dispute.sla_deadline > now:
            return False
        dispute.escalated_at = now
        await self._disputes.save(dispute)
        logger.warning(
            "dispute.sla_breached",
            dispute_id=str(dispute.id),
            sla_deadline=dispute.sla_deadline.isoformat(),
        )
        return True
