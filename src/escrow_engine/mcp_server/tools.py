"""MCP Tool definitions for the Escrow Settlement Engine.

These tools expose the escrow engine via the Model Context Protocol, so
trading agents and bots can discover and call them programmatically.

Tools:
    - open_account: Open a ledger account for an owner and currency
    - fund_account: Credit an account's available balance
    - get_balance: Read an account's buckets
    - create_escrow: Create an escrow contract and open it for deposit
    - report_deposit: Record an observed deposit
    - report_confirmation: Record a blockchain confirmation
    - release_funds / refund_funds / cancel_escrow: Settle a contract
    - raise_dispute / resolve_dispute: Dispute workflow
    - check_status: Contract snapshot with allowed next actions

Amounts are taken as decimal strings in major units (``"100.5"`` USDT) and
converted to minor units using the currency's configured precision.

The MCP server is mounted into FastAPI at /mcp via app.mount(). Tools share
the process-wide EscrowRuntime bound by the application lifespan.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from mcp.server.fastmcp import FastMCP

from escrow_engine.config import get_settings
from escrow_engine.domain.exceptions import EscrowEngineError
from escrow_engine.domain.money import to_minor_units
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from pydantic import BaseModel

    from escrow_engine.orchestration.runtime import EscrowRuntime
    from escrow_engine.services.escrow_service import EscrowService

logger = get_logger(__name__)

# Initialize the MCP server
# This will be mounted into the FastAPI app in main.py
mcp = FastMCP(
    "Escrow Settlement Engine",
    json_response=True,
)

_runtime: EscrowRuntime | None = None


def bind_runtime(runtime: EscrowRuntime | None) -> None:
    """Attach (or detach) the runtime the tools operate on."""
    global _runtime
    _runtime = runtime


def _service() -> EscrowService:
    if _runtime is None:
        raise RuntimeError("Escrow runtime not initialized. Is the lifespan running?")
    return _runtime.service


def _minor(amount: str, currency: str) -> int:
    return to_minor_units(amount, get_settings().decimals_for(currency))


async def _call(tool: str, operation: Awaitable[BaseModel]) -> dict:
    """Await a service call and render its result or its error as a dict."""
    try:
        result = await operation
    except EscrowEngineError as exc:
        logger.warning(f"mcp.{tool}.rejected", code=exc.code, error=exc.message)
        return {"error": exc.code, "message": exc.message}
    except Exception as exc:
        logger.exception(f"mcp.{tool}.error")
        return {"error": "INTERNAL_ERROR", "message": str(exc)}
    return result.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@mcp.tool()
async def open_account(owner_id: str, currency: str) -> dict:
    """Open a ledger account. Opening an existing account is a no-op.

    Args:
        owner_id: Account owner (trader, bot, or merchant id).
        currency: Currency code, e.g. 'USDT'.
    """
    return await _call("open_account", _service().open_account(owner_id, currency))


@mcp.tool()
async def fund_account(owner_id: str, currency: str, amount: str) -> dict:
    """Credit an account's available balance from an external source.

    Args:
        owner_id: Account owner.
        currency: Currency code.
        amount: Decimal amount in major units, e.g. '250.00'.
    """
    try:
        minor = _minor(amount, currency)
    except EscrowEngineError as exc:
        return {"error": exc.code, "message": exc.message}
    return await _call(
        "fund_account", _service().deposit_external(owner_id, currency, minor)
    )


@mcp.tool()
async def get_balance(owner_id: str, currency: str) -> dict:
    """Read the available, escrow and pending buckets of an account."""
    return await _call("get_balance", _service().get_balance(owner_id, currency))


# ---------------------------------------------------------------------------
# Contract lifecycle
# ---------------------------------------------------------------------------


@mcp.tool()
async def create_escrow(
    depositor_id: str,
    beneficiary_id: str,
    currency: str,
    amount: str,
    kind: str = "trade",
    required_confirmations: int | None = None,
    payment_deadline_seconds: int | None = None,
    description: str = "",
) -> dict:
    """Create an escrow contract and open it for deposit.

    Args:
        depositor_id: Party whose funds are escrowed (the buyer).
        beneficiary_id: Party paid on release (the seller).
        currency: Currency code, e.g. 'USDT'.
        amount: Decimal amount in major units.
        kind: 'trade' or 'milestone'. Milestones auto-release after 72h.
        required_confirmations: Override the currency's confirmation threshold.
        payment_deadline_seconds: Seconds from now the depositor has to pay.
        description: Free-text terms of the deal.

    Returns:
        Contract snapshot including the contract id needed for later calls.
    """
    from datetime import timedelta

    svc = _service()
    try:
        minor = _minor(amount, currency)
        deadline = (
            svc.clock.now() + timedelta(seconds=payment_deadline_seconds)
            if payment_deadline_seconds
            else None
        )
        contract_id = await svc.create_escrow(
            depositor_id=depositor_id,
            beneficiary_id=beneficiary_id,
            currency=currency,
            amount=minor,
            required_confirmations=required_confirmations,
            payment_deadline=deadline,
            kind=kind,
            description=description or None,
        )
    except EscrowEngineError as exc:
        logger.warning("mcp.create_escrow.rejected", code=exc.code, error=exc.message)
        return {"error": exc.code, "message": exc.message}
    except Exception as exc:
        logger.exception("mcp.create_escrow.error")
        return {"error": "INTERNAL_ERROR", "message": str(exc)}
    return await _call("create_escrow", svc.get_contract(contract_id))


@mcp.tool()
async def report_deposit(contract_id: str, observed_amount: str, currency: str) -> dict:
    """Record a deposit observed on-chain for a contract.

    Args:
        contract_id: UUID of the escrow contract.
        observed_amount: Decimal amount received, in major units.
        currency: Currency code of the contract.
    """
    try:
        minor = _minor(observed_amount, currency)
    except EscrowEngineError as exc:
        return {"error": exc.code, "message": exc.message}
    return await _call(
        "report_deposit", _service().notify_deposit(uuid.UUID(contract_id), minor)
    )


@mcp.tool()
async def report_confirmation(contract_id: str, observation_id: str, height: int) -> dict:
    """Record a blockchain confirmation. Duplicates are ignored.

    Args:
        contract_id: UUID of the escrow contract.
        observation_id: Unique id of this observation (e.g. tx hash + block).
        height: Confirmation depth observed.
    """
    return await _call(
        "report_confirmation",
        _service().notify_confirmation(uuid.UUID(contract_id), observation_id, height),
    )


@mcp.tool()
async def release_funds(contract_id: str, requested_by: str) -> dict:
    """Release held funds to the beneficiary. Only the depositor may release."""
    return await _call(
        "release_funds", _service().request_release(uuid.UUID(contract_id), requested_by)
    )


@mcp.tool()
async def refund_funds(contract_id: str, requested_by: str) -> dict:
    """Refund funds to the depositor."""
    return await _call(
        "refund_funds", _service().request_refund(uuid.UUID(contract_id), requested_by)
    )


@mcp.tool()
async def cancel_escrow(contract_id: str, requested_by: str) -> dict:
    """Consent to cancel before any deposit; cancels once both parties agree."""
    return await _call(
        "cancel_escrow", _service().request_cancel(uuid.UUID(contract_id), requested_by)
    )


@mcp.tool()
async def check_status(contract_id: str) -> dict:
    """Check the current status of an escrow contract.

    Returns:
        State, version, deadlines, open dispute, balances and allowed next actions.
    """
    return await _call("check_status", _service().get_contract(uuid.UUID(contract_id)))


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


@mcp.tool()
async def raise_dispute(
    contract_id: str,
    raised_by: str,
    reason: str = "",
    evidence: list[str] | None = None,
) -> dict:
    """Raise a dispute on a HELD contract. Freezes funds until an arbiter rules.

    Args:
        contract_id: UUID of the escrow contract.
        raised_by: Depositor or beneficiary id.
        reason: Detailed explanation of the dispute.
        evidence: References to supporting evidence (URLs, hashes).
    """
    return await _call(
        "raise_dispute",
        _service().raise_dispute(
            uuid.UUID(contract_id),
            raised_by=raised_by,
            evidence=evidence,
            reason=reason or None,
        ),
    )


@mcp.tool()
async def resolve_dispute(
    dispute_id: str,
    outcome: str,
    arbiter_id: str,
    fraction: str = "",
) -> dict:
    """Apply an arbiter's decision to an open dispute.

    Args:
        dispute_id: UUID of the dispute.
        outcome: 'release', 'refund', or 'split'.
        arbiter_id: The arbiter making the decision.
        fraction: Beneficiary share for 'split', as a decimal string, e.g. '0.5'.
    """
    return await _call(
        "resolve_dispute",
        _service().resolve_dispute(
            uuid.UUID(dispute_id),
            outcome=outcome,
            arbiter=arbiter_id,
            fraction=fraction or None,
        ),
    )
