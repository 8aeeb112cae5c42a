"""Tests for the TransitionWorkerPool."""

from __future__ import annotations

import asyncio

import pytest

from escrow_engine.orchestration.worker_pool import TransitionWorkerPool


class TestLifecycle:
    def test_needs_a_worker(self) -> None:
        with pytest.raises(ValueError):
            TransitionWorkerPool(size=0)

    def test_submit_before_start(self) -> None:
        pool = TransitionWorkerPool(size=1)

        async def job() -> None:
            return None

        with pytest.raises(RuntimeError, match="not running"):
            pool.submit(job)

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self) -> None:
        pool = TransitionWorkerPool(size=3)
        pool.start()
        pool.start()
        assert pool.running
        await pool.stop()
        assert not pool.running
        await pool.stop()


class TestJobs:
    @pytest.mark.asyncio
    async def test_runs_jobs_concurrently(self) -> None:
        pool = TransitionWorkerPool(size=3)
        pool.start()
        active = 0
        peak = 0

        async def job() -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        for _ in range(6):
            pool.submit(job)
        await pool.join()
        await pool.stop()

        assert pool.processed == 6
        assert peak == 3
        assert pool.backlog == 0

    @pytest.mark.asyncio
    async def test_failing_job_does_not_kill_worker(self) -> None:
        pool = TransitionWorkerPool(size=1)
        pool.start()
        done: list[str] = []

        async def boom() -> None:
            raise RuntimeError("boom")

        async def ok() -> None:
            done.append("ok")

        pool.submit(boom)
        pool.submit(ok)
        await pool.join()
        await pool.stop()

        assert (pool.failed, pool.processed) == (1, 1)
        assert done == ["ok"]

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self) -> None:
        pool = TransitionWorkerPool(size=2)
        pool.start()
        done: list[int] = []

        def make(i: int):
            async def job() -> None:
                await asyncio.sleep(0)
                done.append(i)

            return job

        for i in range(5):
            pool.submit(make(i))
        await pool.stop()

        assert sorted(done) == [0, 1, 2, 3, 4]
