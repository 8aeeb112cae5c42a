"""FastAPI dependency injection providers.

The EscrowRuntime is built once in the application lifespan and stored on
``app.state``; route handlers reach the service through these providers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

from escrow_engine.config import Settings, get_settings

if TYPE_CHECKING:
    from escrow_engine.orchestration.runtime import EscrowRuntime
    from escrow_engine.services.escrow_service import EscrowService


def get_runtime(request: Request) -> EscrowRuntime:
    """Provide the process-wide EscrowRuntime."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("Escrow runtime not initialized. Is the lifespan running?")
    return runtime


def get_escrow_service(request: Request) -> EscrowService:
    """Provide the EscrowService bound to the runtime's session factory."""
    return get_runtime(request).service


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()
