"""DeadlineScheduler — one time-ordered queue for every pending deadline.

Entries are ``(fires_at, contract_id, kind)`` held in a binary heap. Each
(contract, kind) pair has at most one live entry: ``schedule`` replaces it
and ``cancel`` forgets it. Replaced and cancelled entries stay in the heap
and are skipped when they surface.

The scheduler is only a wake-up mechanism. The handler it calls re-reads
persisted contract state and decides whether the deadline still applies,
so a cancellation that races with a firing is harmless. On restart the
queue is rebuilt from the database (see EscrowRuntime.reload_deadlines).
"""

from __future__ import annotations

import asyncio
import contextlib
import heapq
import itertools
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from escrow_engine.domain.enums import DeadlineKind
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from escrow_engine.orchestration.clock import Clock
    from escrow_engine.orchestration.worker_pool import TransitionWorkerPool

    DeadlineHandler = Callable[[uuid.UUID, DeadlineKind], Awaitable[Any]]

logger = get_logger(__name__)


@dataclass(frozen=True)
class ScheduledDeadline:
    contract_id: uuid.UUID
    kind: DeadlineKind
    fires_at: datetime


class DeadlineScheduler:
    """Heap of deadlines that dispatches due entries to a handler.

    With a ``dispatcher`` (TransitionWorkerPool) firing only enqueues;
    without one the handler is awaited inline, which is what tests and the
    simulation use.
    """

    def __init__(
        self,
        handler: DeadlineHandler,
        clock: Clock,
        *,
        dispatcher: TransitionWorkerPool | None = None,
        max_sleep_seconds: float = 30.0,
        retry_delay_seconds: float | None = None,
    ) -> None:
        self._handler = handler
        self._clock = clock
        self._dispatcher = dispatcher
        self._max_sleep = max_sleep_seconds
        self._retry_delay = timedelta(
            seconds=retry_delay_seconds if retry_delay_seconds is not None else max_sleep_seconds
        )
        self._heap: list[tuple[datetime, int, uuid.UUID, DeadlineKind]] = []
        self._live: dict[tuple[uuid.UUID, DeadlineKind], tuple[int, datetime]] = {}
        self._tokens = itertools.count()
        self._wakeup = asyncio.Event()
        self._running = False
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    def schedule(self, contract_id: uuid.UUID, kind: DeadlineKind, fires_at: datetime) -> None:
        """Arm (or move) the deadline of ``kind`` for a contract."""
        if fires_at.tzinfo is None:
            raise ValueError("Deadlines must be timezone-aware UTC timestamps")
        kind = DeadlineKind(kind)
        key = (contract_id, kind)
        current = self._live.get(key)
        if current is not None and current[1] == fires_at:
            return

        token = next(self._tokens)
        self._live[key] = (token, fires_at)
        heapq.heappush(self._heap, (fires_at, token, contract_id, kind))
        logger.debug(
            "scheduler.scheduled",
            contract_id=str(contract_id),
            kind=kind.value,
            fires_at=fires_at.isoformat(),
        )
        self._wakeup.set()

    def cancel(self, contract_id: uuid.UUID, kind: DeadlineKind) -> bool:
        removed = self._live.pop((contract_id, DeadlineKind(kind)), None)
        if removed is not None:
            logger.debug("scheduler.cancelled", contract_id=str(contract_id), kind=str(kind))
        return removed is not None

    def cancel_all(self, contract_id: uuid.UUID) -> int:
        return sum(self.cancel(contract_id, kind) for kind in DeadlineKind)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, contract_id: uuid.UUID, kind: DeadlineKind) -> datetime | None:
        entry = self._live.get((contract_id, DeadlineKind(kind)))
        return entry[1] if entry else None

    def entries(self) -> list[ScheduledDeadline]:
        return sorted(
            (
                ScheduledDeadline(contract_id, kind, fires_at)
                for (contract_id, kind), (_, fires_at) in self._live.items()
            ),
            key=lambda d: d.fires_at,
        )

    def next_fire_time(self) -> datetime | None:
        self._discard_dead_head()
        return self._heap[0][0] if self._heap else None

    def __len__(self) -> int:
        return len(self._live)

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    def pop_due(self, now: datetime) -> list[ScheduledDeadline]:
        """Remove and return every live entry with ``fires_at <= now``."""
        due: list[ScheduledDeadline] = []
        while self._heap and self._heap[0][0] <= now:
            fires_at, token, contract_id, kind = heapq.heappop(self._heap)
            live = self._live.get((contract_id, kind))
            if live is None or live[0] != token:
                continue
            del self._live[(contract_id, kind)]
            due.append(ScheduledDeadline(contract_id, kind, fires_at))
        return due

    async def fire_due(self, now: datetime | None = None) -> list[ScheduledDeadline]:
        """Dispatch every due entry; returns what was dispatched."""
        due = self.pop_due(now or self._clock.now())
        for deadline in due:
            logger.info(
                "scheduler.fired",
                contract_id=str(deadline.contract_id),
                kind=deadline.kind.value,
                fires_at=deadline.fires_at.isoformat(),
            )
            if self._dispatcher is not None:
                self._dispatcher.submit(lambda d=deadline: self._invoke(d))
            else:
                await self._invoke(deadline)
        return due

    async def _invoke(self, deadline: ScheduledDeadline) -> None:
        try:
            await self._handler(deadline.contract_id, deadline.kind)
        except Exception:
            logger.exception(
                "scheduler.handler_failed",
                contract_id=str(deadline.contract_id),
                kind=deadline.kind.value,
            )
            # Re-arm unless the handler already replaced the entry.
            if self.get(deadline.contract_id, deadline.kind) is None:
                self.schedule(
                    deadline.contract_id,
                    deadline.kind,
                    self._clock.now() + self._retry_delay,
                )

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Fire due entries, then sleep until the next one (or a wake-up)."""
        self._running = True
        logger.info("scheduler.started", entries=len(self))
        while self._running:
            await self.fire_due()
            self._wakeup.clear()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._sleep_seconds())
        logger.info("scheduler.stopped", entries=len(self))

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="deadline-scheduler")
        return self._task

    async def stop(self) -> None:
        self._running = False
        self._wakeup.set()
        if self._task is not None:
            await self._task
            self._task = None

    def _sleep_seconds(self) -> float:
        # Never sleep longer than max_sleep so wall-clock jumps are noticed.
        next_at = self.next_fire_time()
        if next_at is None:
            return self._max_sleep
        delay = (next_at - self._clock.now()).total_seconds()
        return min(max(delay, 0.0), self._max_sleep)

    def _discard_dead_head(self) -> None:
        while self._heap:
            _, token, contract_id, kind = self._heap[0]
            live = self._live.get((contract_id, kind))
            if live is not None and live[0] == token:
                return
            heapq.heappop(self._heap)
