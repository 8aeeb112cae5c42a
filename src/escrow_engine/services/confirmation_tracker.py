"""ConfirmationTracker — ingest blockchain-watcher events for a contract.

The watcher is unreliable: it redelivers, reorders, and keeps reporting
after the contract has moved on. None of that is an error. An observation
is accepted only if its id is new for the contract and its height is above
the last recorded one; everything else is a silent no-op.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from escrow_engine.infrastructure.database.repositories import ObservationRepository
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_engine.infrastructure.database.orm_models import EscrowContract

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConfirmationResult:
    accepted: bool
    observed: int
    required: int
    threshold_crossed: bool

    @property
    def is_confirmed(self) -> bool:
        return self.observed >= self.required


class ConfirmationTracker:
    """Monotonic, deduplicating confirmation counter per contract."""

    def __init__(self, session: AsyncSession) -> None:
        self._observations = ObservationRepository(session)

    async def record_confirmation(
        self,
        contract: EscrowContract,
        observation_id: str,
        height: int,
    ) -> ConfirmationResult:
        """Record one observation against ``contract`` (caller holds its lock).

        ``threshold_crossed`` is True only for the single observation that
        takes the count from below the threshold to at or above it.
        """
        previous = contract.observed_confirmations
        required = contract.required_confirmations

        if await self._observations.exists(contract.id, observation_id):
            logger.debug(
                "confirmation.duplicate",
                observation_id=observation_id,
                height=height,
            )
            return ConfirmationResult(False, previous, required, False)

        if height <= previous:
            logger.debug(
                "confirmation.stale_height",
                observation_id=observation_id,
                height=height,
                last_height=previous,
            )
            return ConfirmationResult(False, previous, required, False)

        await self._observations.record(contract.id, observation_id, height)
        contract.observed_confirmations = height
        crossed = previous < required <= height

        logger.info(
            "confirmation.recorded",
            observation_id=observation_id,
            observed=height,
            required=required,
            threshold_crossed=crossed,
        )
        return ConfirmationResult(True, height, required, crossed)
