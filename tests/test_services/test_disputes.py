"""Tests for raising and resolving disputes."""

from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from escrow_engine.domain.enums import DisputeStatus, EscrowStatus, EventType
from escrow_engine.domain.exceptions import (
    DisputeAlreadyOpenError,
    DisputeNotFoundError,
    DisputeNotOpenError,
    EscrowEngineError,
    InvalidAmountError,
    InvalidStateTransitionError,
    UnauthorizedActionError,
)

BUYER = "buyer-1"
SELLER = "seller-1"
ARBITER = "arbiter-1"
USDT = "USDT"
HUNDRED = 100_000_000
START = 10 * HUNDRED


async def disputed(service, make_contract, amount: int = HUNDRED) -> tuple[uuid.UUID, uuid.UUID]:
    contract_id = await make_contract(amount=amount, state="HELD")
    snap = await service.raise_dispute(
        contract_id, SELLER, evidence=["chat-log.txt"], reason="goods delivered"
    )
    return contract_id, snap.dispute.id


class TestRaise:
    @pytest.mark.asyncio
    async def test_freezes_contract(self, funded, make_contract, clock) -> None:
        contract_id = await make_contract(state="HELD")
        snap = await funded.raise_dispute(contract_id, BUYER, evidence=["photo.jpg"])

        assert snap.status == EscrowStatus.DISPUTE_HELD
        assert snap.dispute.status == DisputeStatus.OPEN
        assert snap.dispute.raised_by == BUYER
        assert snap.dispute.against_party == SELLER
        assert snap.dispute.evidence == ["photo.jpg"]
        assert snap.dispute.sla_deadline == clock.now() + timedelta(hours=48)
        assert snap.auto_release_deadline is None
        # Funds stay in escrow while the dispute is open.
        bal = await funded.get_balance(BUYER, USDT)
        assert bal.escrow == HUNDRED

    @pytest.mark.asyncio
    async def test_only_parties_may_dispute(self, funded, make_contract) -> None:
        contract_id = await make_contract(state="HELD")
        with pytest.raises(UnauthorizedActionError):
            await funded.raise_dispute(contract_id, ARBITER)

    @pytest.mark.asyncio
    async def test_second_dispute_rejected(self, funded, make_contract) -> None:
        contract_id, _ = await disputed(funded, make_contract)
        with pytest.raises(DisputeAlreadyOpenError):
            await funded.raise_dispute(contract_id, BUYER)

    @pytest.mark.asyncio
    async def test_dispute_needs_held_funds(self, funded, make_contract) -> None:
        contract_id = await make_contract(state="PENDING_CONFIRMATION")
        with pytest.raises(InvalidStateTransitionError):
            await funded.raise_dispute(contract_id, BUYER)

    @pytest.mark.asyncio
    async def test_release_blocked_while_disputed(self, funded, make_contract) -> None:
        contract_id, _ = await disputed(funded, make_contract)
        with pytest.raises(InvalidStateTransitionError):
            await funded.request_release(contract_id, BUYER)
        with pytest.raises(InvalidStateTransitionError):
            await funded.request_refund(contract_id, SELLER)


class TestResolve:
    @pytest.mark.asyncio
    async def test_release_outcome(self, funded, make_contract) -> None:
        contract_id, dispute_id = await disputed(funded, make_contract)
        snap = await funded.resolve_dispute(dispute_id, "release", ARBITER)

        assert snap.status == EscrowStatus.RESOLVED
        assert snap.dispute.status == DisputeStatus.RESOLVED
        assert snap.dispute.arbiter_id == ARBITER
        assert (snap.dispute.released_amount, snap.dispute.refunded_amount) == (HUNDRED, 0)
        assert (await funded.get_balance(SELLER, USDT)).available == HUNDRED
        assert (await funded.get_balance(BUYER, USDT)).escrow == 0

    @pytest.mark.asyncio
    async def test_refund_outcome(self, funded, make_contract) -> None:
        _, dispute_id = await disputed(funded, make_contract)
        await funded.resolve_dispute(dispute_id, "refund", ARBITER)

        buyer = await funded.get_balance(BUYER, USDT)
        assert (buyer.available, buyer.escrow) == (START, 0)
        assert (await funded.get_balance(SELLER, USDT)).available == 0

    @pytest.mark.asyncio
    async def test_even_split(self, funded, make_contract) -> None:
        _, dispute_id = await disputed(funded, make_contract)
        snap = await funded.resolve_dispute(dispute_id, "split", ARBITER, fraction="0.5")

        half = HUNDRED // 2
        assert snap.dispute.split_fraction == Decimal("0.5")
        assert (await funded.get_balance(SELLER, USDT)).available == half
        buyer = await funded.get_balance(BUYER, USDT)
        assert (buyer.available, buyer.escrow) == (START - half, 0)

    @pytest.mark.asyncio
    async def test_odd_split_conserves_total(self, funded, make_contract) -> None:
        _, dispute_id = await disputed(funded, make_contract, amount=101)
        snap = await funded.resolve_dispute(
            dispute_id, "split", ARBITER, fraction=Decimal("0.333")
        )

        released = snap.dispute.released_amount
        refunded = snap.dispute.refunded_amount
        assert released + refunded == 101
        assert (await funded.get_balance(SELLER, USDT)).available == released
        assert (await funded.get_balance(BUYER, USDT)).available == START - 101 + refunded

    @pytest.mark.parametrize("party", [BUYER, SELLER])
    @pytest.mark.asyncio
    async def test_party_cannot_arbitrate(self, funded, make_contract, party) -> None:
        _, dispute_id = await disputed(funded, make_contract)
        with pytest.raises(UnauthorizedActionError):
            await funded.resolve_dispute(dispute_id, "release", party)

    @pytest.mark.asyncio
    async def test_arbiter_allow_list(self, funded, make_contract, settings) -> None:
        settings.arbiter_ids = "arbiter-9"
        _, dispute_id = await disputed(funded, make_contract)
        with pytest.raises(UnauthorizedActionError):
            await funded.resolve_dispute(dispute_id, "release", ARBITER)
        snap = await funded.resolve_dispute(dispute_id, "release", "arbiter-9")
        assert snap.status == EscrowStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_resolve_twice(self, funded, make_contract) -> None:
        _, dispute_id = await disputed(funded, make_contract)
        await funded.resolve_dispute(dispute_id, "refund", ARBITER)
        with pytest.raises(DisputeNotOpenError):
            await funded.resolve_dispute(dispute_id, "release", ARBITER)
        assert (await funded.get_balance(SELLER, USDT)).available == 0

    @pytest.mark.asyncio
    async def test_unknown_dispute(self, funded) -> None:
        with pytest.raises(DisputeNotFoundError):
            await funded.resolve_dispute(uuid.uuid4(), "release", ARBITER)

    @pytest.mark.asyncio
    async def test_unknown_outcome(self, funded, make_contract) -> None:
        _, dispute_id = await disputed(funded, make_contract)
        with pytest.raises(EscrowEngineError) as exc_info:
            await funded.resolve_dispute(dispute_id, "coin-flip", ARBITER)
        assert exc_info.value.code == "INVALID_OUTCOME"

    @pytest.mark.parametrize(
        "fraction", [None, 0.5, "1.5", "-0.1", "half", "NaN", "sNaN", "Infinity"]
    )
    @pytest.mark.asyncio
    async def test_bad_split_fraction(self, funded, make_contract, fraction) -> None:
        contract_id, dispute_id = await disputed(funded, make_contract)
        with pytest.raises(InvalidAmountError):
            await funded.resolve_dispute(dispute_id, "split", ARBITER, fraction=fraction)

        # Nothing moved and the dispute is still open.
        snap = await funded.get_contract(contract_id)
        assert snap.status == EscrowStatus.DISPUTE_HELD
        assert snap.depositor_balance.escrow == HUNDRED

    @pytest.mark.asyncio
    async def test_trail(self, funded, make_contract) -> None:
        contract_id, dispute_id = await disputed(funded, make_contract)
        await funded.resolve_dispute(dispute_id, "split", ARBITER, fraction="0.25")

        events = await funded.get_events(contract_id)
        assert [e.event_type for e in events][-2:] == [
            EventType.DISPUTE_RAISED,
            EventType.DISPUTE_RESOLVED,
        ]
        resolved = events[-1]
        assert resolved.actor == ARBITER
        assert resolved.metadata_json["outcome"] == "split"
        assert resolved.metadata_json["released_amount"] == HUNDRED // 4

    @pytest.mark.asyncio
    async def test_get_dispute(self, funded, make_contract) -> None:
        contract_id, dispute_id = await disputed(funded, make_contract)
        dispute = await funded.get_dispute(dispute_id)
        assert dispute.contract_id == contract_id
        assert dispute.reason == "goods delivered"
