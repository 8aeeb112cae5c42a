"""AccountLedger — the only code path that changes a balance.

Every mutation appends LedgerEntry rows and rewrites the Account projection
in the same transaction. The ledger works inside the caller's session and
never commits; callers hold the per-account KeyedLock until commit.

Each write:
    1. re-reads the account under ``SELECT ... FOR UPDATE``,
    2. checks that no bucket would go negative,
    3. issues ``UPDATE accounts ... WHERE version = :expected``.
A version conflict (another process wrote in between) is retried with
exponential backoff and surfaces as LedgerContentionError once the budget
is spent.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from escrow_engine.config import get_settings
from escrow_engine.domain.enums import Bucket
from escrow_engine.domain.exceptions import (
    AccountNotFoundError,
    CurrencyMismatchError,
    InsufficientFundsError,
    InvalidAmountError,
    LedgerContentionError,
)
from escrow_engine.infrastructure.database.orm_models import Account, LedgerEntry
from escrow_engine.infrastructure.database.repositories import (
    AccountRepository,
    LedgerEntryRepository,
)
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_engine.config import Settings

logger = get_logger(__name__)


class _VersionConflict(Exception):
    """Internal signal: the conditional UPDATE matched no row."""


class AccountLedger:
    """Append-only, reconciling store of per-owner, per-currency balances."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._session = session
        self._accounts = AccountRepository(session)
        self._entries = LedgerEntryRepository(session)
        self._max_attempts = max(1, settings.ledger_max_retries)
        self._min_wait = settings.ledger_retry_min_wait
        self._max_wait = settings.ledger_retry_max_wait

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def open_account(self, owner_id: str, currency: str) -> Account:
        """Return the owner's account in ``currency``, creating it if needed."""
        currency = currency.upper()
        account = await self._accounts.get(owner_id, currency)
        if account is not None:
            return account
        account = await self._accounts.create(Account(owner_id=owner_id, currency=currency))
        logger.info("ledger.account_opened", owner=owner_id, currency=currency)
        return account

    async def get_account(self, owner_id: str, currency: str) -> Account:
        account = await self._accounts.get(owner_id, currency.upper())
        if account is None:
            raise AccountNotFoundError(owner_id, currency.upper())
        return account

    async def entries(self, account: Account) -> list[LedgerEntry]:
        return await self._entries.get_by_account(account.id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def credit(
        self,
        account: Account,
        bucket: Bucket,
        amount: int,
        *,
        contract_id: uuid.UUID | None = None,
        memo: str | None = None,
    ) -> Account:
        _require_positive(amount)
        return await self._apply(account, [(bucket, amount)], contract_id, memo)

    async def debit(
        self,
        account: Account,
        bucket: Bucket,
        amount: int,
        *,
        contract_id: uuid.UUID | None = None,
        memo: str | None = None,
    ) -> Account:
        _require_positive(amount)
        return await self._apply(account, [(bucket, -amount)], contract_id, memo)

    async def move(
        self,
        account: Account,
        from_bucket: Bucket,
        to_bucket: Bucket,
        amount: int,
        *,
        contract_id: uuid.UUID | None = None,
        memo: str | None = None,
    ) -> Account:
        """Move funds between two buckets of one account (one entry pair)."""
        _require_positive(amount)
        if from_bucket == to_bucket:
            raise InvalidAmountError(f"Cannot move funds from {from_bucket} to itself")
        return await self._apply(
            account, [(from_bucket, -amount), (to_bucket, amount)], contract_id, memo
        )

    async def transfer(
        self,
        source: Account,
        source_bucket: Bucket,
        target: Account,
        target_bucket: Bucket,
        amount: int,
        *,
        contract_id: uuid.UUID | None = None,
        memo: str | None = None,
    ) -> tuple[Account, Account]:
        """Move funds between two accounts.

        Both legs run in the caller's transaction: if either fails the
        caller rolls back and neither is visible.
        """
        _require_positive(amount)
        if source.currency != target.currency:
            raise CurrencyMismatchError(source.currency, target.currency)
        if source.id == target.id:
            await self.move(
                source, source_bucket, target_bucket, amount, contract_id=contract_id, memo=memo
            )
            return source, target

        # Debit first so an InsufficientFunds leaves nothing to undo.
        await self._apply(source, [(source_bucket, -amount)], contract_id, memo)
        await self._apply(target, [(target_bucket, amount)], contract_id, memo)
        return source, target

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    async def replay(self, account: Account) -> dict[Bucket, int]:
        """Recompute bucket balances from the ledger alone."""
        sums = await self._entries.sum_by_bucket(account.id)
        return {bucket: sums.get(bucket.value, 0) for bucket in Bucket}

    async def reconcile(self, account: Account, *, repair: bool = False) -> dict | None:
        """Compare the projection with a replay.

        Returns None when they agree, otherwise a description of the drift.
        With ``repair=True`` the projection is reset to the replayed values.
        """
        replayed = await self.replay(account)
        projected = {
            Bucket.AVAILABLE: account.available,
            Bucket.ESCROW: account.escrow,
            Bucket.PENDING: account.pending,
        }
        if replayed == projected:
            return None

        drift = {
            "account": account.label,
            "projected": {b.value: v for b, v in projected.items()},
            "replayed": {b.value: v for b, v in replayed.items()},
            "repaired": repair,
        }
        logger.error("ledger.reconcile_mismatch", **drift)
        if repair:
            await self._accounts.overwrite_balances(
                account,
                available=replayed[Bucket.AVAILABLE],
                escrow=replayed[Bucket.ESCROW],
                pending=replayed[Bucket.PENDING],
            )
        return drift

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _apply(
        self,
        account: Account,
        changes: Sequence[tuple[Bucket, int]],
        contract_id: uuid.UUID | None,
        memo: str | None,
    ) -> Account:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(
                multiplier=self._min_wait, min=self._min_wait, max=self._max_wait
            ),
            retry=retry_if_exception_type(_VersionConflict),
            reraise=True,
        )
        try:
            return await retrying(self._apply_once, account, changes, contract_id, memo)
        except _VersionConflict as err:
            logger.warning(
                "ledger.contention_exhausted", account=account.label, attempts=self._max_attempts
            )
            raise LedgerContentionError(account.label, self._max_attempts) from err

    async def _apply_once(
        self,
        account: Account,
        changes: Sequence[tuple[Bucket, int]],
        contract_id: uuid.UUID | None,
        memo: str | None,
    ) -> Account:
        locked = await self._accounts.lock(account.id)
        if locked is None:
            raise AccountNotFoundError(account.owner_id, account.currency)

        balances = {
            Bucket.AVAILABLE: locked.available,
            Bucket.ESCROW: locked.escrow,
            Bucket.PENDING: locked.pending,
        }
        for bucket, delta in changes:
            if balances[bucket] + delta < 0:
                raise InsufficientFundsError(locked.label, bucket.value, -delta, balances[bucket])
            balances[bucket] += delta

        sequence = locked.last_sequence
        entries = []
        for bucket, delta in changes:
            sequence += 1
            entries.append(
                LedgerEntry(
                    account_id=locked.id,
                    sequence=sequence,
                    delta=delta,
                    bucket=bucket.value,
                    contract_id=contract_id,
                    memo=memo,
                )
            )

        written = await self._accounts.compare_and_set(
            locked,
            locked.version,
            available=balances[Bucket.AVAILABLE],
            escrow=balances[Bucket.ESCROW],
            pending=balances[Bucket.PENDING],
            last_sequence=sequence,
        )
        if not written:
            logger.debug("ledger.version_conflict", account=locked.label)
            raise _VersionConflict(locked.label)

        await self._entries.append(entries)
        logger.debug(
            "ledger.applied",
            account=locked.label,
            changes={bucket.value: delta for bucket, delta in changes},
            contract_id=str(contract_id) if contract_id else None,
        )
        return locked


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(f"Amounts are integer minor units, got {amount!r}")
    if amount <= 0:
        raise InvalidAmountError(f"Amount must be positive, got {amount}")
