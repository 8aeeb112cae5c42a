"""Tests for confirmation ingestion.

The watcher redelivers, reorders and keeps reporting after a contract has
moved on; all of that must be absorbed without errors or double counting.
"""

from __future__ import annotations

import pytest

from escrow_engine.domain.enums import EscrowStatus, EventType
from escrow_engine.infrastructure.database.orm_models import EscrowContract
from escrow_engine.services.confirmation_tracker import ConfirmationTracker

BUYER = "buyer-1"
USDT = "USDT"
HUNDRED = 100_000_000


class TestTracker:
    """Direct tests of the counter against an in-session contract row."""

    @pytest.mark.asyncio
    async def test_crosses_threshold_once(self, funded, make_contract, session_factory) -> None:
        contract_id = await make_contract()
        async with session_factory() as session, session.begin():
            contract = await session.get(EscrowContract, contract_id)
            tracker = ConfirmationTracker(session)

            first = await tracker.record_confirmation(contract, "a", 1)
            second = await tracker.record_confirmation(contract, "b", 2)
            third = await tracker.record_confirmation(contract, "c", 3)

        assert (first.accepted, first.threshold_crossed) == (True, False)
        assert (second.accepted, second.threshold_crossed) == (True, True)
        assert second.is_confirmed
        assert (third.accepted, third.threshold_crossed) == (True, False)

    @pytest.mark.asyncio
    async def test_duplicate_and_stale(self, funded, make_contract, session_factory) -> None:
        contract_id = await make_contract()
        async with session_factory() as session, session.begin():
            contract = await session.get(EscrowContract, contract_id)
            tracker = ConfirmationTracker(session)

            await tracker.record_confirmation(contract, "a", 5)
            duplicate = await tracker.record_confirmation(contract, "a", 9)
            stale = await tracker.record_confirmation(contract, "b", 4)
            same = await tracker.record_confirmation(contract, "c", 5)

        for result in (duplicate, stale, same):
            assert not result.accepted
            assert result.observed == 5
        assert contract.observed_confirmations == 5

    @pytest.mark.asyncio
    async def test_jump_past_threshold(self, funded, make_contract, session_factory) -> None:
        contract_id = await make_contract()
        async with session_factory() as session, session.begin():
            contract = await session.get(EscrowContract, contract_id)
            result = await ConfirmationTracker(session).record_confirmation(contract, "a", 12)
        assert result.threshold_crossed
        assert result.observed == 12


class TestThroughService:
    @pytest.mark.asyncio
    async def test_redelivery_is_harmless(self, funded, make_contract) -> None:
        contract_id = await make_contract(state="PENDING_CONFIRMATION")

        await funded.notify_confirmation(contract_id, "obs-1", 1)
        snap = await funded.notify_confirmation(contract_id, "obs-1", 1)
        assert snap.observed_confirmations == 1
        assert snap.status == EscrowStatus.PENDING_CONFIRMATION

    @pytest.mark.asyncio
    async def test_out_of_order_delivery(self, funded, make_contract) -> None:
        contract_id = await make_contract(state="PENDING_CONFIRMATION")

        snap = await funded.notify_confirmation(contract_id, "obs-2", 2)
        assert snap.status == EscrowStatus.HELD
        snap = await funded.notify_confirmation(contract_id, "obs-1", 1)
        assert snap.status == EscrowStatus.HELD
        assert snap.observed_confirmations == 2

    @pytest.mark.asyncio
    async def test_late_confirmations_after_release(self, funded, make_contract) -> None:
        contract_id = await make_contract(state="HELD")
        await funded.request_release(contract_id, BUYER)

        snap = await funded.notify_confirmation(contract_id, "obs-9", 9)
        assert snap.status == EscrowStatus.RELEASED
        bal = await funded.get_balance(BUYER, USDT)
        assert (bal.escrow, bal.pending) == (0, 0)

    @pytest.mark.asyncio
    async def test_confirmations_before_deposit(self, funded, make_contract) -> None:
        contract_id = await make_contract()

        snap = await funded.notify_confirmation(contract_id, "early", 3)
        assert snap.status == EscrowStatus.AWAITING_DEPOSIT

        snap = await funded.notify_deposit(contract_id, HUNDRED)
        assert snap.status == EscrowStatus.HELD
        bal = await funded.get_balance(BUYER, USDT)
        assert (bal.escrow, bal.pending) == (HUNDRED, 0)

    @pytest.mark.asyncio
    async def test_threshold_event_recorded_once(self, funded, make_contract) -> None:
        contract_id = await make_contract(state="PENDING_CONFIRMATION")
        for height in (1, 2, 3, 4):
            await funded.notify_confirmation(contract_id, f"obs-{height}", height)

        events = await funded.get_events(contract_id)
        met = [e for e in events if e.event_type == EventType.CONFIRMATION_THRESHOLD_MET]
        assert len(met) == 1
        assert met[0].metadata_json["observed"] == 2
