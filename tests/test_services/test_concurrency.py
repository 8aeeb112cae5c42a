"""Concurrent operations on the same contract and the same accounts.

Operations are serialized per contract and per account, so whatever order
asyncio happens to interleave them in, exactly one of two conflicting
requests wins and the ledger never goes negative.
"""

from __future__ import annotations

import asyncio

import pytest

from escrow_engine.domain.enums import EscrowStatus
from escrow_engine.domain.exceptions import InsufficientFundsError, InvalidStateTransitionError

BUYER = "buyer-1"
SELLER = "seller-1"
USDT = "USDT"
HUNDRED = 100_000_000
START = 10 * HUNDRED


class TestSameContract:
    @pytest.mark.asyncio
    async def test_release_races_dispute(self, funded, make_contract) -> None:
        contract_id = await make_contract(state="HELD")

        results = await asyncio.gather(
            funded.request_release(contract_id, BUYER),
            funded.raise_dispute(contract_id, SELLER, reason="not delivered"),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidStateTransitionError)

        snap = await funded.get_contract(contract_id)
        seller = await funded.get_balance(SELLER, USDT)
        buyer = await funded.get_balance(BUYER, USDT)
        if snap.status == EscrowStatus.RELEASED:
            assert (seller.available, buyer.escrow) == (HUNDRED, 0)
            assert snap.dispute is None
        else:
            assert snap.status == EscrowStatus.DISPUTE_HELD
            assert (seller.available, buyer.escrow) == (0, HUNDRED)

    @pytest.mark.asyncio
    async def test_double_release(self, funded, make_contract) -> None:
        contract_id = await make_contract(state="HELD")

        results = await asyncio.gather(
            funded.request_release(contract_id, BUYER),
            funded.request_release(contract_id, BUYER),
            return_exceptions=True,
        )

        assert sum(isinstance(r, InvalidStateTransitionError) for r in results) == 1
        assert (await funded.get_balance(SELLER, USDT)).available == HUNDRED

    @pytest.mark.asyncio
    async def test_auto_release_races_dispute(self, funded, make_contract, clock) -> None:
        contract_id = await make_contract(state="HELD", kind="milestone")
        clock.advance(hours=72)

        fired, dispute = await asyncio.gather(
            funded.handle_deadline(contract_id, "auto_release"),
            funded.raise_dispute(contract_id, BUYER),
            return_exceptions=True,
        )

        snap = await funded.get_contract(contract_id)
        if fired is True:
            assert isinstance(dispute, InvalidStateTransitionError)
            assert snap.status == EscrowStatus.RELEASED
        else:
            assert fired is False
            assert snap.status == EscrowStatus.DISPUTE_HELD
            assert (await funded.get_balance(SELLER, USDT)).available == 0

    @pytest.mark.asyncio
    async def test_cancel_races_deposit(self, funded, make_contract) -> None:
        contract_id = await make_contract()
        await funded.request_cancel(contract_id, SELLER)

        results = await asyncio.gather(
            funded.request_cancel(contract_id, BUYER),
            funded.notify_deposit(contract_id, HUNDRED),
            return_exceptions=True,
        )

        assert sum(isinstance(r, InvalidStateTransitionError) for r in results) == 1
        snap = await funded.get_contract(contract_id)
        buyer = await funded.get_balance(BUYER, USDT)
        if snap.status == EscrowStatus.CANCELLED:
            assert buyer.available == START
        else:
            assert snap.status == EscrowStatus.PENDING_CONFIRMATION
            assert buyer.pending == HUNDRED


class TestSharedAccount:
    @pytest.mark.asyncio
    async def test_parallel_deposits_never_overdraw(self, funded, make_contract) -> None:
        # Twelve contracts of 100 against a 1000 balance: exactly ten fund.
        contract_ids = [await make_contract() for _ in range(12)]

        results = await asyncio.gather(
            *(funded.notify_deposit(cid, HUNDRED) for cid in contract_ids),
            return_exceptions=True,
        )

        funded_count = sum(not isinstance(r, Exception) for r in results)
        rejected = [r for r in results if isinstance(r, Exception)]
        assert funded_count == 10
        assert len(rejected) == 2
        assert all(isinstance(r, InsufficientFundsError) for r in rejected)

        buyer = await funded.get_balance(BUYER, USDT)
        assert (buyer.available, buyer.pending) == (0, START)
        assert await funded.reconcile_account(BUYER, USDT, repair=False) is None

    @pytest.mark.asyncio
    async def test_parallel_releases_to_one_seller(self, funded, make_contract) -> None:
        contract_ids = [await make_contract(state="HELD") for _ in range(4)]

        await asyncio.gather(*(funded.request_release(cid, BUYER) for cid in contract_ids))

        seller = await funded.get_balance(SELLER, USDT)
        assert seller.available == 4 * HUNDRED
        entries = await funded.get_entries(SELLER, USDT)
        assert [e.sequence for e in entries] == [1, 2, 3, 4]
