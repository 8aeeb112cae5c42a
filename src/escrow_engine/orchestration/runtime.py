"""EscrowRuntime — wires the service to its background machinery.

One runtime per process:
    - EscrowService (all business rules)
    - DeadlineScheduler (heap of deadlines, reloaded from the database)
    - TransitionWorkerPool (applies fired deadlines off the scheduler loop)
    - ReconciliationService (periodic ledger replay)

The FastAPI lifespan, the MCP server and simulation.py all build the engine
through this module so they share one wiring.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from escrow_engine.config import get_settings
from escrow_engine.logging_config import get_logger
from escrow_engine.orchestration.clock import SystemClock
from escrow_engine.orchestration.deadline_scheduler import DeadlineScheduler
from escrow_engine.orchestration.worker_pool import TransitionWorkerPool
from escrow_engine.services.escrow_service import EscrowService
from escrow_engine.services.reconciliation_service import ReconciliationService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.config import Settings
    from escrow_engine.orchestration.clock import Clock

logger = get_logger(__name__)


class EscrowRuntime:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        clock: Clock | None = None,
        *,
        use_worker_pool: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.service = EscrowService(session_factory, self.settings, self.clock)
        self.pool = (
            TransitionWorkerPool(self.settings.worker_pool_size) if use_worker_pool else None
        )
        self.scheduler = DeadlineScheduler(
            self.service.handle_deadline,
            self.clock,
            dispatcher=self.pool,
            max_sleep_seconds=self.settings.scheduler_max_sleep_seconds,
        )
        self.service.attach_scheduler(self.scheduler)
        self.reconciler = ReconciliationService(
            self.service, self.settings.reconciliation_interval_seconds
        )
        self._started = False

    async def reload_deadlines(self) -> int:
        """Rebuild the scheduler heap from persisted contracts and disputes."""
        pending = await self.service.pending_deadlines()
        for contract_id, kind, fires_at in pending:
            self.scheduler.schedule(contract_id, kind, fires_at)
        logger.info("runtime.deadlines_reloaded", count=len(pending))
        return len(pending)

    async def start(self, *, background: bool = True) -> None:
        """Reload deadlines and (optionally) start the background loops."""
        if self._started:
            return
        if self.pool is not None:
            self.pool.start()
        await self.reload_deadlines()
        if background:
            self.scheduler.start()
            self.reconciler.start()
        self._started = True
        logger.info("runtime.started", background=background)

    async def stop(self) -> None:
        if not self._started:
            return
        await self.scheduler.stop()
        await self.reconciler.stop()
        if self.pool is not None:
            await self.pool.stop()
        self._started = False
        logger.info("runtime.stopped")
