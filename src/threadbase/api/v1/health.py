"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness checks
the database and the Redis lookup cache; a missing enrichment provider is
reported but does not make the service unready.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.threadbase.config import get_settings
from src.threadbase.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    checks: dict = {"database": "ok", "redis": "ok", "enrichment": "ok"}

    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    redis = getattr(request.app.state, "redis", None)
    if redis is None:
        checks["redis"] = "disabled"
    else:
        try:
            if not await redis.ping():
                checks["redis"] = "error"
                checks["redis_error"] = "PING did not return PONG"
        except Exception as e:
            checks["redis"] = "error"
            checks["redis_error"] = str(e)

    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None or pipeline.provider is None:
        checks["enrichment"] = "not_configured"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 when the database and cache are reachable, else 503."""
    checks = await _check_dependencies(request)
    healthy = checks["database"] == "ok" and checks["redis"] in ("ok", "disabled")
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if healthy else "degraded", "checks": checks},
    )
