"""Tests for AccountLedger: the only code path that changes a balance."""

from __future__ import annotations

import pytest
from sqlalchemy import update

from escrow_engine.domain.enums import Bucket
from escrow_engine.domain.exceptions import (
    AccountNotFoundError,
    CurrencyMismatchError,
    InsufficientFundsError,
    InvalidAmountError,
    LedgerContentionError,
)
from escrow_engine.infrastructure.database.orm_models import Account
from escrow_engine.services.ledger import AccountLedger


@pytest.fixture
def ledger_tx(session_factory, settings):
    """Run a callable against a fresh ledger inside one committed transaction."""

    async def _run(fn):
        async with session_factory() as session, session.begin():
            return await fn(AccountLedger(session, settings), session)

    return _run


async def _balances(session_factory, owner: str, currency: str = "USDT") -> tuple[int, int, int]:
    async with session_factory() as session:
        account = await AccountLedger(session).get_account(owner, currency)
        return account.available, account.escrow, account.pending


class TestAccounts:
    @pytest.mark.asyncio
    async def test_open_is_idempotent(self, ledger_tx) -> None:
        async def open_twice(ledger, _):
            first = await ledger.open_account("alice", "usdt")
            second = await ledger.open_account("alice", "USDT")
            return first, second

        first, second = await ledger_tx(open_twice)
        assert first.id == second.id
        assert first.currency == "USDT"
        assert (first.available, first.escrow, first.pending) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_missing_account(self, ledger_tx) -> None:
        async def lookup(ledger, _):
            await ledger.get_account("nobody", "USDT")

        with pytest.raises(AccountNotFoundError):
            await ledger_tx(lookup)


class TestMutations:
    @pytest.mark.asyncio
    async def test_credit_debit_and_sequences(self, ledger_tx) -> None:
        async def run(ledger, _):
            account = await ledger.open_account("alice", "USDT")
            await ledger.credit(account, Bucket.AVAILABLE, 500)
            await ledger.move(account, Bucket.AVAILABLE, Bucket.ESCROW, 200)
            await ledger.debit(account, Bucket.AVAILABLE, 100)
            return account, await ledger.entries(account)

        account, entries = await ledger_tx(run)
        assert (account.available, account.escrow, account.pending) == (200, 200, 0)
        assert [e.sequence for e in entries] == [1, 2, 3, 4]
        assert [(e.bucket, e.delta) for e in entries] == [
            ("available", 500),
            ("available", -200),
            ("escrow", 200),
            ("available", -100),
        ]
        assert account.last_sequence == 4

    @pytest.mark.asyncio
    async def test_every_write_bumps_version(self, ledger_tx) -> None:
        async def run(ledger, _):
            account = await ledger.open_account("alice", "USDT")
            start = account.version
            await ledger.credit(account, Bucket.AVAILABLE, 10)
            await ledger.credit(account, Bucket.AVAILABLE, 10)
            return start, account.version

        start, end = await ledger_tx(run)
        assert end == start + 2

    @pytest.mark.asyncio
    async def test_insufficient_funds_leaves_no_trace(
        self, ledger_tx, session_factory
    ) -> None:
        async def seed(ledger, _):
            account = await ledger.open_account("alice", "USDT")
            await ledger.credit(account, Bucket.AVAILABLE, 50)

        async def overdraw(ledger, _):
            account = await ledger.get_account("alice", "USDT")
            await ledger.move(account, Bucket.AVAILABLE, Bucket.ESCROW, 51)

        await ledger_tx(seed)
        with pytest.raises(InsufficientFundsError) as exc_info:
            await ledger_tx(overdraw)

        assert exc_info.value.required == 51
        assert exc_info.value.available == 50
        assert await _balances(session_factory, "alice") == (50, 0, 0)

    @pytest.mark.parametrize("amount", [0, -5, 1.5, True])
    @pytest.mark.asyncio
    async def test_invalid_amounts(self, ledger_tx, amount) -> None:
        async def run(ledger, _):
            account = await ledger.open_account("alice", "USDT")
            await ledger.credit(account, Bucket.AVAILABLE, amount)

        with pytest.raises(InvalidAmountError):
            await ledger_tx(run)

    @pytest.mark.asyncio
    async def test_move_to_same_bucket_rejected(self, ledger_tx) -> None:
        async def run(ledger, _):
            account = await ledger.open_account("alice", "USDT")
            await ledger.credit(account, Bucket.AVAILABLE, 10)
            await ledger.move(account, Bucket.AVAILABLE, Bucket.AVAILABLE, 5)

        with pytest.raises(InvalidAmountError):
            await ledger_tx(run)


class TestTransfer:
    @pytest.mark.asyncio
    async def test_transfer_between_accounts(self, ledger_tx, session_factory) -> None:
        async def run(ledger, _):
            alice = await ledger.open_account("alice", "USDT")
            bob = await ledger.open_account("bob", "USDT")
            await ledger.credit(alice, Bucket.ESCROW, 300)
            await ledger.transfer(alice, Bucket.ESCROW, bob, Bucket.AVAILABLE, 120)

        await ledger_tx(run)
        assert await _balances(session_factory, "alice") == (0, 180, 0)
        assert await _balances(session_factory, "bob") == (120, 0, 0)

    @pytest.mark.asyncio
    async def test_currency_mismatch(self, ledger_tx) -> None:
        async def run(ledger, _):
            alice = await ledger.open_account("alice", "USDT")
            bob = await ledger.open_account("bob", "BTC")
            await ledger.credit(alice, Bucket.AVAILABLE, 10)
            await ledger.transfer(alice, Bucket.AVAILABLE, bob, Bucket.AVAILABLE, 5)

        with pytest.raises(CurrencyMismatchError):
            await ledger_tx(run)

    @pytest.mark.asyncio
    async def test_failed_debit_leaves_target_untouched(
        self, ledger_tx, session_factory
    ) -> None:
        async def seed(ledger, _):
            await ledger.open_account("alice", "USDT")
            await ledger.open_account("bob", "USDT")

        async def run(ledger, _):
            alice = await ledger.get_account("alice", "USDT")
            bob = await ledger.get_account("bob", "USDT")
            await ledger.transfer(alice, Bucket.AVAILABLE, bob, Bucket.AVAILABLE, 5)

        await ledger_tx(seed)
        with pytest.raises(InsufficientFundsError):
            await ledger_tx(run)
        assert await _balances(session_factory, "bob") == (0, 0, 0)


class TestContention:
    @pytest.mark.asyncio
    async def test_conflict_is_retried(self, ledger_tx) -> None:
        async def run(ledger, _):
            account = await ledger.open_account("alice", "USDT")
            real = ledger._accounts.compare_and_set
            calls = []

            async def flaky(*args, **kwargs):
                calls.append(1)
                if len(calls) == 1:
                    return False
                return await real(*args, **kwargs)

            ledger._accounts.compare_and_set = flaky
            await ledger.credit(account, Bucket.AVAILABLE, 25)
            return account, len(calls), await ledger.entries(account)

        account, attempts, entries = await ledger_tx(run)
        assert attempts == 2
        assert account.available == 25
        assert [e.sequence for e in entries] == [1]

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise(self, ledger_tx) -> None:
        async def run(ledger, _):
            account = await ledger.open_account("alice", "USDT")

            async def always_lose(*args, **kwargs):
                return False

            ledger._accounts.compare_and_set = always_lose
            await ledger.credit(account, Bucket.AVAILABLE, 25)

        with pytest.raises(LedgerContentionError) as exc_info:
            await ledger_tx(run)
        assert exc_info.value.attempts == 3


class TestReplay:
    @pytest.mark.asyncio
    async def test_replay_matches_projection(self, ledger_tx) -> None:
        async def run(ledger, _):
            account = await ledger.open_account("alice", "USDT")
            await ledger.credit(account, Bucket.AVAILABLE, 1000)
            await ledger.move(account, Bucket.AVAILABLE, Bucket.PENDING, 400)
            await ledger.move(account, Bucket.PENDING, Bucket.ESCROW, 400)
            return await ledger.replay(account), await ledger.reconcile(account)

        replayed, drift = await ledger_tx(run)
        assert replayed == {Bucket.AVAILABLE: 600, Bucket.ESCROW: 400, Bucket.PENDING: 0}
        assert drift is None

    @pytest.mark.asyncio
    async def test_reconcile_repairs_corrupted_projection(
        self, ledger_tx, session_factory
    ) -> None:
        async def seed(ledger, _):
            account = await ledger.open_account("alice", "USDT")
            await ledger.credit(account, Bucket.AVAILABLE, 1000)

        async def corrupt(_, session):
            await session.execute(
                update(Account).where(Account.owner_id == "alice").values(available=7)
            )

        async def check(ledger, _):
            account = await ledger.get_account("alice", "USDT")
            return await ledger.reconcile(account, repair=True)

        await ledger_tx(seed)
        await ledger_tx(corrupt)
        drift = await ledger_tx(check)

        assert drift["projected"]["available"] == 7
        assert drift["replayed"]["available"] == 1000
        assert drift["repaired"] is True
        assert await _balances(session_factory, "alice") == (1000, 0, 0)
