"""Health check endpoint.

Verifies connectivity to the database and Redis and reports whether the
background scheduler is running. Used by Docker healthchecks and load
balancers.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from multisig_escrow.infrastructure import redis_client
from multisig_escrow.infrastructure.database.engine import get_engine
from multisig_escrow.logging_config import get_logger
from multisig_escrow.schemas.deals import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check(request: Request) -> HealthResponse:
    db_status = "unknown"
    redis_status = "unavailable"

    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "healthy"
    except (SQLAlchemyError, OSError) as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    if redis_client.redis_available():
        try:
            await redis_client.get_redis().ping()
            redis_status = "healthy"
        except (RedisError, OSError) as exc:
            redis_status = f"unhealthy: {exc}"
            logger.error("health.redis_check_failed", error=str(exc))

    scheduler = getattr(request.app.state, "scheduler", None)
    scheduler_status = "running" if scheduler is not None and scheduler.scheduler.running else "disabled"

    # Redis is optional; the engine keeps working without it.
    overall = "ok" if db_status == "healthy" else "degraded"

    return HealthResponse(
        status=overall,
        version="0.1.0",
        database=db_status,
        redis=redis_status,
        scheduler=scheduler_status,
    )
