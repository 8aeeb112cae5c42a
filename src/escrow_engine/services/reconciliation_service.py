"""ReconciliationService — background replay of the ledger.

Account balances are a projection of ledger_entries. This service
periodically replays every account and, when the projection has drifted,
logs an error and resets it to the replayed values. It never runs inside
a request path.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from escrow_engine.domain.exceptions import EscrowEngineError
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    from escrow_engine.services.escrow_service import EscrowService

logger = get_logger(__name__)


@dataclass
class ReconciliationReport:
    accounts_checked: int = 0
    mismatches: list[dict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not self.mismatches and not self.errors

    def summary(self) -> dict:
        return {
            "accounts_checked": self.accounts_checked,
            "mismatches": len(self.mismatches),
            "errors": len(self.errors),
        }


class ReconciliationService:
    """Replay-and-repair loop over all accounts."""

    def __init__(
        self,
        service: EscrowService,
        interval_seconds: float = 300.0,
        *,
        repair: bool = True,
    ) -> None:
        self._service = service
        self._interval = interval_seconds
        self._repair = repair
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.last_report: ReconciliationReport | None = None

    async def run_once(self) -> ReconciliationReport:
        report = ReconciliationReport()
        for account in await self._service.list_accounts():
            report.accounts_checked += 1
            try:
                drift = await self._service.reconcile_account(
                    account.owner_id, account.currency, repair=self._repair
                )
            except EscrowEngineError as exc:
                report.errors.append(f"{account.label}: {exc.message}")
                logger.error("reconciliation.account_failed", account=account.label, error=exc.code)
                continue
            if drift is not None:
                report.mismatches.append(drift)

        self.last_report = report
        log = logger.warning if report.mismatches else logger.info
        log("reconciliation.completed", **report.summary())
        return report

    async def run(self) -> None:
        logger.info("reconciliation.started", interval_seconds=self._interval)
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("reconciliation.run_failed")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
        logger.info("reconciliation.stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self.run(), name="ledger-reconciliation")
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
