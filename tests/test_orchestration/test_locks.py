"""Tests for KeyedLock."""

from __future__ import annotations

import asyncio

import pytest

from escrow_engine.orchestration.locks import KeyedLock


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_is_exclusive(self) -> None:
        locks = KeyedLock()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("contract-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_different_keys_run_together(self) -> None:
        locks = KeyedLock()
        async with locks.hold("a"):
            await asyncio.wait_for(_enter(locks, "b"), timeout=1)
            assert locks.locked("a")
            assert not locks.locked("b")

    @pytest.mark.asyncio
    async def test_forgets_idle_keys(self) -> None:
        locks = KeyedLock()
        async with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.locked("a")

    @pytest.mark.asyncio
    async def test_hold_many_in_sorted_order(self) -> None:
        locks = KeyedLock()
        finished: list[str] = []

        async def transfer(name: str, keys: list[str]) -> None:
            async with locks.hold_many(keys):
                await asyncio.sleep(0.01)
                finished.append(name)

        # Opposite orders would deadlock without sorting.
        await asyncio.wait_for(
            asyncio.gather(transfer("x", ["alice", "bob"]), transfer("y", ["bob", "alice"])),
            timeout=2,
        )
        assert sorted(finished) == ["x", "y"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self) -> None:
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold_many(["a", "b"]):
                raise RuntimeError("fail")
        assert len(locks) == 0


async def _enter(locks: KeyedLock, key: str) -> None:
    async with locks.hold(key):
        return None
