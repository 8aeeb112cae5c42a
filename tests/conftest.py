"""Shared test fixtures for the Escrow Settlement Engine test suite.

Provides:
    - A throwaway SQLite database per test (file-backed, so every session
      in a test sees the same data)
    - A ManualClock so deadlines fire when the test says so
    - An EscrowRuntime that is NOT started: the scheduler dispatches inline
      and tests call ``runtime.scheduler.fire_due()`` themselves
    - Factories for funded accounts and contracts in a given state
"""

from __future__ import annotations

import uuid

import pytest
import pytest_asyncio

from escrow_engine.config import Settings
from escrow_engine.infrastructure.database.engine import (
    build_engine,
    create_schema,
    make_session_factory,
)
from escrow_engine.orchestration.clock import ManualClock
from escrow_engine.orchestration.runtime import EscrowRuntime

BUYER = "buyer-1"
SELLER = "seller-1"
ARBITER = "arbiter-1"
USDT = "USDT"
HUNDRED = 100_000_000  # 100 USDT in minor units (6 decimals)


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_env="development",
        confirmation_thresholds={"USDT": 2, "BTC": 6},
        default_confirmation_threshold=3,
        currency_decimals={"USDT": 6, "BTC": 8},
        auto_release_hours={"trade": 0, "milestone": 72},
        dispute_sla_hours=48,
        arbiter_ids="",
        ledger_max_retries=3,
        ledger_retry_min_wait=0.0,
        ledger_retry_max_wait=0.0,
        worker_pool_size=2,
        scheduler_max_sleep_seconds=0.05,
        reconciliation_interval_seconds=3600,
    )


@pytest_asyncio.fixture
async def engine(tmp_path, settings):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}", settings)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def runtime(session_factory, settings, clock) -> EscrowRuntime:
    return EscrowRuntime(session_factory, settings, clock, use_worker_pool=False)


@pytest.fixture
def service(runtime):
    return runtime.service


@pytest.fixture
def scheduler(runtime):
    return runtime.scheduler


# ---------------------------------------------------------------------------
# Domain data
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def funded(service):
    """Buyer holds 1000 USDT available; seller has an empty account."""
    await service.open_account(BUYER, USDT)
    await service.deposit_external(BUYER, USDT, 10 * HUNDRED, memo="test top-up")
    await service.open_account(SELLER, USDT)
    return service


@pytest.fixture
def make_contract(funded):
    """Factory: create a BUYER -> SELLER contract and drive it to ``state``.

    ``state`` is one of AWAITING_DEPOSIT, PENDING_CONFIRMATION or HELD.
    """
    service = funded

    async def _make(
        amount: int = HUNDRED,
        state: str = "AWAITING_DEPOSIT",
        required_confirmations: int = 2,
        **kwargs,
    ) -> uuid.UUID:
        contract_id = await service.create_escrow(
            depositor_id=BUYER,
            beneficiary_id=SELLER,
            currency=USDT,
            amount=amount,
            required_confirmations=required_confirmations,
            **kwargs,
        )
        if state in ("PENDING_CONFIRMATION", "HELD"):
            await service.notify_deposit(contract_id, amount)
        if state == "HELD" and required_confirmations > 0:
            await service.notify_confirmation(
                contract_id, f"obs-{required_confirmations}", required_confirmations
            )
        return contract_id

    return _make
