#!/usr/bin/env python3
"""Escrow Settlement Engine — End-to-End Simulation.

Simulates three scenarios between a BuyerBot (depositor) and a SellerBot
(beneficiary), with a WatcherBot reporting blockchain confirmations and an
ArbiterBot settling disputes:

    Scenario 1: Confirmations
        - Buyer escrows 100 USDT requiring 2 confirmations
        - Deposit observed, 1 of 2 confirmations -> still PENDING_CONFIRMATION
        - 2nd confirmation -> HELD (pending -100, escrow +100)
        - Buyer releases -> RELEASED

    Scenario 2: Auto-Release
        - Milestone contract with a 72h auto-release window
        - Nobody acts; the clock moves past 72h
        - Deadline scheduler fires -> beneficiary paid automatically

    Scenario 3: Dispute Split
        - Seller disputes a HELD 100 USDT contract
        - Arbiter resolves with split 0.5 -> 50 USDT each

Time is driven by a ManualClock so the 72h window passes instantly.

Usage:
    # Option A: With Docker (PostgreSQL):
    docker compose up -d
    uv run python simulation.py

    # Option B: Without Docker (SQLite file in a temp dir):
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --sqlite --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
import tempfile
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from escrow_engine.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from escrow_engine.config import get_settings  # noqa: E402
from escrow_engine.domain.enums import ContractKind, DisputeOutcome  # noqa: E402
from escrow_engine.domain.money import from_minor_units, to_minor_units  # noqa: E402
from escrow_engine.infrastructure.database.engine import (  # noqa: E402
    build_engine,
    create_schema,
    make_session_factory,
)
from escrow_engine.orchestration.clock import ManualClock  # noqa: E402
from escrow_engine.orchestration.runtime import EscrowRuntime  # noqa: E402

CURRENCY = "USDT"
DECIMALS = get_settings().decimals_for(CURRENCY)


def usdt(amount: str) -> int:
    return to_minor_units(amount, DECIMALS)


# Module-level state
_engine = None
_tmpdir: tempfile.TemporaryDirectory | None = None


# ---------------------------------------------------------------------------
# Runtime lifecycle helpers
# ---------------------------------------------------------------------------
async def build_runtime(use_sqlite: bool = False) -> EscrowRuntime:
    """Create the schema and an EscrowRuntime driven by a ManualClock."""
    global _engine, _tmpdir
    settings = get_settings()
    if use_sqlite:
        _tmpdir = tempfile.TemporaryDirectory(prefix="escrow-sim-")
        url = f"sqlite+aiosqlite:///{Path(_tmpdir.name) / 'escrow.db'}"
    else:
        url = settings.database_url
    _engine = build_engine(url, settings)
    await create_schema(_engine)
    logger.info("database.initialized", backend="sqlite" if use_sqlite else "postgresql")

    runtime = EscrowRuntime(
        make_session_factory(_engine), settings, ManualClock(), use_worker_pool=False
    )
    # Deadlines are fired explicitly after advancing the clock.
    await runtime.start(background=False)
    return runtime


async def shutdown_runtime(runtime: EscrowRuntime) -> None:
    global _engine, _tmpdir
    await runtime.stop()
    if _engine is not None:
        await _engine.dispose()
        _engine = None
    if _tmpdir is not None:
        _tmpdir.cleanup()
        _tmpdir = None


# ---------------------------------------------------------------------------
# Bot Agents
# ---------------------------------------------------------------------------
@dataclass
class BuyerBot:
    """Simulated buyer that funds and releases escrows."""

    runtime: EscrowRuntime
    owner_id: str = field(default_factory=lambda: f"buyer-{uuid.uuid4().hex[:6]}")

    async def top_up(self, amount: str) -> None:
        svc = self.runtime.service
        await svc.open_account(self.owner_id, CURRENCY)
        await svc.deposit_external(self.owner_id, CURRENCY, usdt(amount), memo="top-up")
        logger.info("🔵 BUYER: Wallet topped up", owner=self.owner_id, amount=amount)

    async def create_escrow(
        self,
        seller: SellerBot,
        amount: str,
        kind: ContractKind = ContractKind.TRADE,
        required_confirmations: int | None = None,
    ) -> uuid.UUID:
        contract_id = await self.runtime.service.create_escrow(
            depositor_id=self.owner_id,
            beneficiary_id=seller.owner_id,
            currency=CURRENCY,
            amount=usdt(amount),
            kind=kind,
            required_confirmations=required_confirmations,
            description=f"{amount} {CURRENCY} simulated deal",
        )
        logger.info("🔵 BUYER: Escrow created", contract_id=str(contract_id), amount=amount)
        return contract_id

    async def pay(self, contract_id: uuid.UUID, amount: str) -> None:
        snap = await self.runtime.service.notify_deposit(contract_id, usdt(amount))
        logger.info("🔵 BUYER: Deposit observed", status=snap.status)

    async def release(self, contract_id: uuid.UUID) -> None:
        snap = await self.runtime.service.request_release(contract_id, self.owner_id)
        logger.info("🔵 BUYER: Funds released", status=snap.status)


@dataclass
class SellerBot:
    """Simulated seller; the beneficiary of every escrow."""

    runtime: EscrowRuntime
    owner_id: str = field(default_factory=lambda: f"seller-{uuid.uuid4().hex[:6]}")

    async def dispute(self, contract_id: uuid.UUID, reason: str) -> uuid.UUID:
        snap = await self.runtime.service.raise_dispute(
            contract_id, raised_by=self.owner_id, reason=reason, evidence=["chat-log-1"]
        )
        logger.info("🟢 SELLER: Dispute raised", status=snap.status)
        return snap.dispute.id


@dataclass
class WatcherBot:
    """Simulated blockchain watcher that reports confirmation heights."""

    runtime: EscrowRuntime

    async def confirm(self, contract_id: uuid.UUID, height: int) -> str:
        snap = await self.runtime.service.notify_confirmation(
            contract_id, observation_id=f"block-{height}", height=height
        )
        logger.info(
            "🟡 WATCHER: Confirmation reported",
            height=height,
            observed=snap.observed_confirmations,
            required=snap.required_confirmations,
            status=snap.status,
        )
        return snap.status


@dataclass
class ArbiterBot:
    runtime: EscrowRuntime
    owner_id: str = "arbiter-1"

    async def split(self, dispute_id: uuid.UUID, fraction: str) -> None:
        snap = await self.runtime.service.resolve_dispute(
            dispute_id, DisputeOutcome.SPLIT, self.owner_id, fraction=Decimal(fraction)
        )
        logger.info("🟣 ARBITER: Dispute resolved", status=snap.status, fraction=fraction)


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


async def print_balances(runtime: EscrowRuntime, *owners: str) -> None:
    for owner in owners:
        bal = await runtime.service.get_balance(owner, CURRENCY)
        print(
            f"  💰 {owner:<16} available={from_minor_units(bal.available, DECIMALS):>10} "
            f"escrow={from_minor_units(bal.escrow, DECIMALS):>10} "
            f"pending={from_minor_units(bal.pending, DECIMALS):>10}"
        )


async def print_audit_trail(runtime: EscrowRuntime, contract_id: uuid.UUID) -> None:
    """Print the full audit trail for a contract."""
    events = await runtime.service.get_events(contract_id)
    print("\n  📜 Audit Trail:")
    for evt in events:
        old = evt.old_status or "—"
        print(f"    {evt.sequence}. [{evt.event_type}] {old} → {evt.new_status} (by {evt.actor})")
    print()


# ===========================================================================
# Scenario 1: Confirmations
# ===========================================================================
async def scenario_1_confirmations(runtime: EscrowRuntime) -> None:
    """100 USDT held only once the second confirmation arrives."""
    banner("SCENARIO 1: Confirmations — 100 USDT, 2 confirmations required")
    buyer, seller, watcher = BuyerBot(runtime), SellerBot(runtime), WatcherBot(runtime)

    section("Step 1: Buyer tops up and creates escrow")
    await buyer.top_up("250")
    contract_id = await buyer.create_escrow(seller, "100", required_confirmations=2)

    section("Step 2: Deposit observed")
    await buyer.pay(contract_id, "100")
    await print_balances(runtime, buyer.owner_id)

    section("Step 3: First confirmation (1 of 2)")
    await watcher.confirm(contract_id, 1)
    await watcher.confirm(contract_id, 1)  # duplicate, ignored

    section("Step 4: Second confirmation (2 of 2)")
    await watcher.confirm(contract_id, 2)
    await print_balances(runtime, buyer.owner_id)

    section("Step 5: Buyer releases")
    await buyer.release(contract_id)
    await print_balances(runtime, buyer.owner_id, seller.owner_id)
    await print_audit_trail(runtime, contract_id)


# ===========================================================================
# Scenario 2: Auto-Release
# ===========================================================================
async def scenario_2_auto_release(runtime: EscrowRuntime) -> None:
    """Milestone escrow pays out by itself after 72 hours."""
    banner("SCENARIO 2: Auto-Release — 72h milestone window")
    buyer, seller = BuyerBot(runtime), SellerBot(runtime)
    clock: ManualClock = runtime.clock

    section("Step 1: Setup (Top-up -> Create -> Deposit)")
    await buyer.top_up("500")
    contract_id = await buyer.create_escrow(
        seller, "300", kind=ContractKind.MILESTONE, required_confirmations=0
    )
    await buyer.pay(contract_id, "300")
    snap = await runtime.service.get_contract(contract_id)
    print(f"  ⏰ Status {snap.status}, auto-release at {snap.auto_release_deadline}")

    section("Step 2: 71 hours pass, nothing fires")
    clock.advance(hours=71)
    fired = await runtime.scheduler.fire_due()
    print(f"  Deadlines fired: {len(fired)}")

    section("Step 3: 72 hours pass, auto-release fires")
    clock.advance(hours=1, seconds=1)
    fired = await runtime.scheduler.fire_due()
    print(f"  Deadlines fired: {len(fired)}")
    snap = await runtime.service.get_contract(contract_id)
    print(f"  🛡️  Contract final status: {snap.status}")
    await print_balances(runtime, buyer.owner_id, seller.owner_id)
    await print_audit_trail(runtime, contract_id)


# ===========================================================================
# Scenario 3: Dispute Split
# ===========================================================================
async def scenario_3_dispute_split(runtime: EscrowRuntime) -> None:
    """Seller disputes; arbiter splits 100 USDT down the middle."""
    banner("SCENARIO 3: Dispute — 50/50 split of 100 USDT")
    buyer, seller, arbiter = BuyerBot(runtime), SellerBot(runtime), ArbiterBot(runtime)

    section("Step 1: Setup (Top-up -> Create -> Deposit)")
    await buyer.top_up("100")
    contract_id = await buyer.create_escrow(seller, "100", required_confirmations=0)
    await buyer.pay(contract_id, "100")

    section("Step 2: Seller raises a dispute")
    dispute_id = await seller.dispute(contract_id, "Buyer claims item not received")
    await print_balances(runtime, buyer.owner_id, seller.owner_id)

    section("Step 3: Arbiter splits 0.5")
    await arbiter.split(dispute_id, "0.5")
    await print_balances(runtime, buyer.owner_id, seller.owner_id)
    await print_audit_trail(runtime, contract_id)


SCENARIOS = {
    1: scenario_1_confirmations,
    2: scenario_2_auto_release,
    3: scenario_3_dispute_split,
}


# ===========================================================================
# Main
# ===========================================================================
async def run(scenario: int = 0, use_sqlite: bool = False) -> None:
    """Run one scenario, or all of them sequentially when ``scenario`` is 0."""
    if scenario and scenario not in SCENARIOS:
        print(f"Unknown scenario {scenario}. Available: 1, 2, 3")
        return

    runtime = await build_runtime(use_sqlite=use_sqlite)
    try:
        print("\n" + "🚀" * 35)
        print("  ESCROW SETTLEMENT ENGINE — SIMULATION")
        print(f"  Database: {'SQLite (temp file)' if use_sqlite else 'PostgreSQL'}")
        print("🚀" * 35 + "\n")

        selected = [SCENARIOS[scenario]] if scenario else list(SCENARIOS.values())
        for fn in selected:
            await fn(runtime)

        report = await runtime.reconciler.run_once()
        print(f"  🔎 Reconciliation: {report.summary()}")

        print("\n" + "=" * 70)
        print("  ✅ SIMULATION COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")
    finally:
        await shutdown_runtime(runtime)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Escrow Settlement Engine Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1, 2, or 3). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use a temporary SQLite file instead of PostgreSQL (no Docker needed).",
    )
    args = parser.parse_args()
    asyncio.run(run(scenario=args.scenario, use_sqlite=args.sqlite))
