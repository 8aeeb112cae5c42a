"""FastAPI application entry point for the Escrow Settlement Engine.

Lifecycle:
    1. Startup: Initialize logging, database, Redis, create tables (dev mode),
       build the EscrowRuntime and reload pending deadlines.
    2. Running: Serve REST API + MCP tools on a single Uvicorn process while
       the deadline scheduler and reconciliation loop run in the background.
    3. Shutdown: Stop the runtime, close database and Redis connections.

The MCP server is mounted at /mcp so agents can discover tools alongside
the REST API at /api/v1/*.

Run with:
    uv run uvicorn escrow_engine.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from redis.exceptions import RedisError

from escrow_engine.config import get_settings
from escrow_engine.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from escrow_engine.orchestration.runtime import EscrowRuntime


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
    )

    # 2. Initialize database
    from escrow_engine.infrastructure.database.engine import (
        close_db,
        get_session_factory,
        init_db,
    )

    await init_db()

    # 3. Initialize Redis
    from escrow_engine.infrastructure.redis_client import close_redis, init_redis

    try:
        await init_redis()
    except (RedisError, OSError) as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    # 4. Build the runtime and start the background loops
    from escrow_engine.mcp_server.tools import bind_runtime
    from escrow_engine.orchestration.runtime import EscrowRuntime

    runtime = EscrowRuntime(get_session_factory(), settings)
    await runtime.start()
    app.state.runtime = runtime
    bind_runtime(runtime)

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    bind_runtime(None)
    await runtime.stop()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app(runtime: EscrowRuntime | None = None) -> FastAPI:
    """Application factory — creates and configures the FastAPI app.

    Passing a ready ``runtime`` skips the lifespan; the caller owns its
    startup and shutdown. Tests use this to run against SQLite.
    """
    settings = get_settings()

    app = FastAPI(
        title="Escrow Settlement Engine",
        description=(
            "Escrow and settlement for P2P trades and milestone payments. "
            "Funds move only through the ledger."
        ),
        version="0.1.0",
        lifespan=lifespan if runtime is None else None,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )
    if runtime is not None:
        from escrow_engine.mcp_server.tools import bind_runtime

        app.state.runtime = runtime
        bind_runtime(runtime)

    # --- Middleware ---
    from escrow_engine.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from escrow_engine.api.routes.accounts import router as accounts_router
    from escrow_engine.api.routes.disputes import router as disputes_router
    from escrow_engine.api.routes.escrow import router as escrow_router
    from escrow_engine.api.routes.health import router as health_router

    app.include_router(health_router)
    app.include_router(escrow_router)
    app.include_router(disputes_router)
    app.include_router(accounts_router)

    # --- MCP Server (mounted as sub-application) ---
    from escrow_engine.mcp_server.tools import mcp

    mcp_app = mcp.sse_app()
    app.mount("/mcp", mcp_app)

    return app


# The app instance used by Uvicorn
app = create_app()
