"""Health check endpoints for load balancers and monitoring."""

from datetime import datetime, timezone

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from partner_portal.config import settings
from partner_portal.database import engine
from partner_portal.utils.redis_client import get_redis

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Lightweight liveness check (no DB/Redis check)."""
    return {
        "status": "ok",
        "service": "partner-portal",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.environment,
    }


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: database always, Redis only when the phase guard uses it."""
    checks = {
        "service": "ok",
        "database": "unknown",
    }
    overall_healthy = True

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except SQLAlchemyError as e:
        checks["database"] = f"error: {str(e)[:100]}"
        overall_healthy = False

    if settings.transition_guard == "redis":
        try:
            redis_client = await get_redis()
            await redis_client.ping()
            checks["redis"] = "ok"
        except RedisError as e:
            checks["redis"] = f"error: {str(e)[:100]}"
            overall_healthy = False

    return JSONResponse(
        status_code=status.HTTP_200_OK if overall_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if overall_healthy else "unhealthy",
            "service": "partner-portal",
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
