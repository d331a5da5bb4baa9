"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness checks
the database, Redis and whether an inference provider key is configured.
"""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.revsignal.config import get_settings
from src.revsignal.core.database import get_engine
from src.revsignal.core.redis import get_redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies() -> dict:
    """Check database, Redis and LLM configuration. Returns check results dict."""
    checks: dict = {"database": "ok", "redis": "ok", "llm": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    try:
        redis = get_redis_pool()
        pong = await redis.ping()
        if not pong:
            checks["redis"] = "error"
            checks["redis_error"] = "PING did not return PONG"
    except Exception as e:
        checks["redis"] = "error"
        checks["redis_error"] = str(e)

    settings = get_settings()
    if not (settings.OPENAI_API_KEY or settings.ANTHROPIC_API_KEY):
        checks["llm"] = "no_keys"

    return checks


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: 200 if the database and Redis respond, 503 otherwise."""
    checks = await _check_dependencies()
    healthy = checks["database"] == "ok" and checks["redis"] == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if healthy else "degraded",
            "checks": checks,
        },
    )
