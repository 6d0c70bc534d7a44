"""Health check endpoints for load balancers and monitoring."""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.config import settings
from app.database import engine
from app.utils.cache import get_redis
from app.utils.time import utcnow

SERVICE_NAME = "boutique-pos"

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Lightweight liveness check (no DB/Redis check).

    Returns 200 OK if the process is serving requests.
    """
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "timestamp": utcnow().isoformat(),
        "environment": settings.environment,
    }


@router.get("/health/ready")
async def readiness_check():
    """Readiness check including the database and Redis.

    Returns 200 only if the database answers. Redis is reported but,
    since caching and rate limiting fail open, an unreachable Redis only
    degrades the status.
    """
    checks = {
        "service": "ok",
        "database": "unknown",
        "redis": "unknown",
    }
    database_ok = True

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {str(e)[:100]}"
        database_ok = False

    redis_ok = True
    try:
        redis_client = await get_redis()
        await redis_client.ping()
        checks["redis"] = "ok"
    except Exception as e:
        checks["redis"] = f"error: {str(e)[:100]}"
        redis_ok = False

    if not database_ok:
        overall = "unhealthy"
    elif not redis_ok:
        overall = "degraded"
    else:
        overall = "healthy"

    return JSONResponse(
        status_code=status.HTTP_200_OK if database_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": overall,
            "service": SERVICE_NAME,
            "checks": checks,
            "timestamp": utcnow().isoformat(),
        },
    )
