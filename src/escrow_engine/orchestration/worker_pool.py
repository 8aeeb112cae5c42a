"""TransitionWorkerPool — asyncio workers that apply scheduler fire events.

The scheduler never runs a transition itself; it enqueues a job and moves
on. Jobs for different contracts run concurrently, and jobs for the same
contract are serialized by EscrowService's per-contract lock.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    Job = Callable[[], Awaitable[Any]]

logger = get_logger(__name__)


class TransitionWorkerPool:
    """Fixed-size pool of workers draining an unbounded asyncio.Queue."""

    def __init__(self, size: int = 4, name: str = "transition") -> None:
        if size < 1:
            raise ValueError("Worker pool needs at least one worker")
        self.size = size
        self.name = name
        self._queue: asyncio.Queue[Job | None] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._work(i), name=f"{self.name}-worker-{i}")
            for i in range(self.size)
        ]
        logger.info("worker_pool.started", pool=self.name, size=self.size)

    def submit(self, job: Job) -> None:
        """Enqueue a job without waiting for it."""
        if not self._workers:
            raise RuntimeError(f"Worker pool '{self.name}' is not running")
        self._queue.put_nowait(job)

    async def join(self) -> None:
        """Wait until every job submitted so far has finished."""
        await self._queue.join()

    async def stop(self) -> None:
        """Finish queued jobs, then shut the workers down."""
        if not self._workers:
            return
        for _ in self._workers:
            self._queue.put_nowait(None)
        await asyncio.gather(*self._workers)
        self._workers = []
        logger.info(
            "worker_pool.stopped",
            pool=self.name,
            processed=self.processed,
            failed=self.failed,
        )

    async def _work(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job is None:
                    return
                await job()
                self.processed += 1
            except Exception:
                self.failed += 1
                logger.exception("worker_pool.job_failed", pool=self.name, worker=index)
            finally:
                self._queue.task_done()
