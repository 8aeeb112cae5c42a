"""Health check endpoint.

Verifies connectivity to the database and Redis, returns structured status.
Used by Docker healthchecks, load balancers, and monitoring systems.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from escrow_engine.api.deps import get_runtime
from escrow_engine.infrastructure import redis_client
from escrow_engine.logging_config import get_logger
from escrow_engine.orchestration.runtime import EscrowRuntime
from escrow_engine.schemas.escrow import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check(runtime: EscrowRuntime = Depends(get_runtime)) -> HealthResponse:
    """Check connectivity to the database and Redis."""
    db_status = "unknown"
    redis_status = "not configured"

    try:
        async with runtime.session_factory() as session:
            await session.execute(text("SELECT 1"))
        db_status = "healthy"
    except SQLAlchemyError as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    if redis_client.is_redis_ready():
        try:
            await redis_client.get_redis().ping()
            redis_status = "healthy"
        except RedisError as exc:
            redis_status = f"unhealthy: {exc}"
            logger.error("health.redis_check_failed", error=str(exc))

    overall = "ok"
    if db_status != "healthy" or redis_status.startswith("unhealthy"):
        overall = "degraded"

    return HealthResponse(
        status=overall,
        version="0.1.0",
        database=db_status,
        redis=redis_status,
        scheduled_deadlines=len(runtime.scheduler),
    )
